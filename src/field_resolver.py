"""
Per-source field resolution: business keyword in the question -> column expression.

Longest keyword wins, so 充电电费 is chosen over 电费 and 充电费用 over 费用. When the
question names no keyword the source's default metric is used.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Tuple

from catalog_models import FieldMapping, SourceDefinition
from errors import NoFieldResolved
from sql_builder import Case, Cast, Compare, Expr, Func, IsNotNull, Literal, Raw

logger = logging.getLogger(__name__)

DEFAULT_KEYWORDS = ('收入', '金额')


def _keywords_longest_first(source: SourceDefinition) -> List[str]:
    return sorted(source.fields, key=lambda k: (-len(k), k))


def matched_keyword(source: SourceDefinition, text: str, exclude: Iterable[str] = ()) -> Optional[str]:
    skip = set(exclude)
    for keyword in _keywords_longest_first(source):
        if keyword in skip:
            continue
        if keyword in (text or ''):
            return keyword
    return None


def resolve_field(source: SourceDefinition, text: str, exclude: Iterable[str] = ()) -> Tuple[str, FieldMapping]:
    """(keyword, mapping) for the metric the question asks about on this source."""
    keyword = matched_keyword(source, text, exclude)
    if keyword is None:
        keyword = field_keyword_or_default(source, None)
    if keyword is None:
        raise NoFieldResolved(
            f"no field of {source.id} matches the question",
            source=source.id,
            keywords=_keywords_longest_first(source),
        )
    return keyword, source.fields[keyword]


def field_keyword_or_default(source: SourceDefinition, keyword: Optional[str]) -> Optional[str]:
    if keyword and keyword in source.fields:
        return keyword
    for candidate in (source.default_metric,) + DEFAULT_KEYWORDS:
        if candidate in source.fields:
            return candidate
    return None


def field_for(source: SourceDefinition, keyword: str, strict: bool = False) -> Tuple[str, FieldMapping]:
    """Mapping for a keyword chosen by a formula; falls back to the default metric unless strict."""
    if keyword in source.fields:
        return keyword, source.fields[keyword]
    if strict:
        raise NoFieldResolved(f"{source.id} has no field {keyword}", source=source.id, keyword=keyword)
    fallback = field_keyword_or_default(source, None)
    if fallback is None:
        raise NoFieldResolved(f"{source.id} has no field {keyword}", source=source.id, keyword=keyword)
    return fallback, source.fields[fallback]


def question_metric_keyword(sources: Iterable[SourceDefinition], text: str, exclude: Iterable[str] = ()) -> Optional[str]:
    """Longest field keyword named in the text across all sources."""
    best: Optional[str] = None
    for source in sources:
        k = matched_keyword(source, text, exclude)
        if k and (best is None or len(k) > len(best)):
            best = k
    return best


def _trimmed(expression: str) -> Expr:
    return Func('LTRIM', (Func('RTRIM', (Raw(expression),)),))


def value_expression(mapping: FieldMapping) -> Expr:
    """The numeric value of one row for this mapping."""
    if mapping.kind == 'numericString':
        trimmed = _trimmed(mapping.expression)
        return Case(((Compare(Func('ISNUMERIC', (trimmed,)), '=', Literal(1)), Cast(trimmed, 'FLOAT')),))
    if mapping.kind == 'computed':
        expr = mapping.expression
        if not (expr.startswith('(') and expr.endswith(')')):
            expr = f"({expr})"
        return Raw(expr)
    return Raw(mapping.expression)


def guard_predicates(mapping: FieldMapping) -> Tuple[Expr, ...]:
    """Row guards: non-null, and > 0 for value columns."""
    if mapping.kind == 'count':
        return (IsNotNull(Raw(mapping.expression)),)
    if mapping.kind == 'numericString':
        return (IsNotNull(Raw(mapping.expression)), Compare(value_expression(mapping), '>', Literal(0)))
    if mapping.kind == 'computed':
        if not mapping.positive_only:
            return ()
        return (Compare(value_expression(mapping), '>', Literal(0)),)
    col = Raw(mapping.expression)
    return (IsNotNull(col), Compare(col, '>', Literal(0)))
