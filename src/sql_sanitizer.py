"""
Cleanup of SQL before execution.

Applies to rule-built SQL and model output alike. Each rule is a small named class
so the log shows which repairs fired. Rules operate on sqlparse statements where
clause structure matters (WHERE groups, the top-level select list) and on plain
text for lexical fixes (fences, table-name suffixes).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Tuple

import sqlparse
from sqlparse import sql as S
from sqlparse import tokens as T

from errors import StoreExecutionFailed
from llm_utils import strip_code_fences
from source_catalog import SourceCatalog, get_catalog

logger = logging.getLogger(__name__)

_AGG_RE = re.compile(r"\b(SUM|COUNT|AVG|MAX|MIN)\s*\(", re.IGNORECASE)
_MONTH_BREAKDOWN_CUES = ('每月', '每个月', '按月', '各月', '逐月', '哪个月', '月度')


@dataclass
class SanitizeContext:
    question: str
    catalog: SourceCatalog
    applied: List[str] = field(default_factory=list)


class SanitizeRule:
    name = 'rule'

    def apply(self, sql: str, ctx: SanitizeContext) -> str:
        raise NotImplementedError


def _from_table(sql: str, ctx: SanitizeContext) -> Optional[str]:
    for m in re.finditer(r"\bFROM\s+\[([^\]]+)\]", sql, re.IGNORECASE):
        if ctx.catalog.has(m.group(1)):
            return m.group(1)
    return None


def _time_column(table: Optional[str], ctx: SanitizeContext) -> Optional[str]:
    if not table:
        return None
    return ctx.catalog.get(table).time_field


class FenceStripRule(SanitizeRule):
    name = 'strip_fences'

    def apply(self, sql: str, ctx: SanitizeContext) -> str:
        return strip_code_fences(sql)


class SingleSelectRule(SanitizeRule):
    """Keep the first SELECT (or WITH ... SELECT) statement; drop everything else."""

    name = 'single_select'

    def apply(self, sql: str, ctx: SanitizeContext) -> str:
        statements = [s for s in sqlparse.split(sql) if s.strip()]
        for text in statements:
            stmt = sqlparse.parse(text)[0]
            if stmt.get_type() == 'SELECT':
                if len(statements) > 1:
                    logger.warning(f"Dropped {len(statements) - 1} extra statement(s) from generated SQL")
                return text.strip().rstrip(';').strip()
        raise StoreExecutionFailed(
            'generated SQL contains no SELECT statement',
            stage='sanitize',
            sql=sql,
        )


class ReadOnlyRule(SanitizeRule):
    """Reject statements that write, even when they ride inside a single SELECT."""

    name = 'read_only'
    FORBIDDEN = frozenset({
        'DROP', 'DELETE', 'TRUNCATE', 'INSERT', 'UPDATE', 'ALTER', 'CREATE',
        'EXEC', 'EXECUTE', 'MERGE', 'INTO', 'GRANT', 'REVOKE',
    })

    def apply(self, sql: str, ctx: SanitizeContext) -> str:
        for stmt in sqlparse.parse(sql):
            for tok in stmt.flatten():
                if tok.ttype in T.Keyword and tok.normalized in self.FORBIDDEN:
                    raise StoreExecutionFailed(
                        f"generated SQL contains forbidden keyword {tok.normalized}",
                        stage='sanitize',
                        sql=sql,
                    )
        return sql


class TableSuffixRule(SanitizeRule):
    """[特来电表] -> [特来电] for catalog tables."""

    name = 'table_suffix'

    def apply(self, sql: str, ctx: SanitizeContext) -> str:
        def bracketed(m: re.Match) -> str:
            name = m.group(1)
            return f"[{name}]" if ctx.catalog.has(name) else m.group(0)

        def bare(m: re.Match) -> str:
            name = m.group(2)
            return f"{m.group(1)} [{name}]" if ctx.catalog.has(name) else m.group(0)

        sql = re.sub(r"\[([^\]]+?)表\]", bracketed, sql)
        return re.sub(r"\b(FROM|JOIN)\s+([^\s\[\(,;]+?)表(?=[\s),;]|$)", bare, sql, flags=re.IGNORECASE)


class EmptyConvertArgumentRule(SanitizeRule):
    """CONVERT(VARCHAR(7), , 120) -> CONVERT(VARCHAR(7), [time column], 120)."""

    name = 'empty_convert_argument'
    _pattern = re.compile(r"CONVERT\(\s*(N?VARCHAR\(\d+\))\s*,\s*,\s*(\d+)\s*\)", re.IGNORECASE)

    def apply(self, sql: str, ctx: SanitizeContext) -> str:
        if not self._pattern.search(sql):
            return sql
        col = _time_column(_from_table(sql, ctx), ctx)
        if not col:
            return sql
        return self._pattern.sub(lambda m: f"CONVERT({m.group(1)}, [{col}], {m.group(2)})", sql)


def _split_top_level(text: str) -> List[str]:
    items, depth, current = [], 0, []
    for ch in text:
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
        if ch == ',' and depth == 0:
            items.append(''.join(current))
            current = []
            continue
        current.append(ch)
    items.append(''.join(current))
    return items


def _top_level_keyword(stmt: S.Statement, value: str) -> Optional[int]:
    for i, tok in enumerate(stmt.tokens):
        if tok.ttype in T.Keyword and tok.normalized == value:
            return i
    return None


class StrayTimeColumnRule(SanitizeRule):
    """A bare time column next to aggregates without GROUP BY is invalid in T-SQL.

    For monthly breakdown questions it becomes a month key with GROUP BY; otherwise it
    is dropped from the select list.
    """

    name = 'stray_time_column'

    def apply(self, sql: str, ctx: SanitizeContext) -> str:
        stmt = sqlparse.parse(sql)[0]
        sel_idx = next((i for i, t in enumerate(stmt.tokens) if t.ttype is T.DML and t.normalized == 'SELECT'), None)
        from_idx = _top_level_keyword(stmt, 'FROM')
        if sel_idx is None or from_idx is None or _top_level_keyword(stmt, 'GROUP BY') is not None:
            return sql
        table = _from_table(sql, ctx)
        col = _time_column(table, ctx)
        if not col:
            return sql

        select_text = ''.join(str(t) for t in stmt.tokens[sel_idx + 1:from_idx])
        top = re.match(r"\s*TOP\s+\(?\d+\)?\s*", select_text, re.IGNORECASE)
        prefix = top.group(0) if top else ' '
        items = [i.strip() for i in _split_top_level(select_text[len(prefix):] if top else select_text)]
        if not any(_AGG_RE.search(i) for i in items):
            return sql
        stray = [i for i in items if re.fullmatch(rf"\[{re.escape(col)}\](\s+AS\s+\S+)?", i, re.IGNORECASE)]
        if not stray:
            return sql

        before = ''.join(str(t) for t in stmt.tokens[:sel_idx + 1])
        after_tokens = stmt.tokens[from_idx:]
        if any(c in ctx.question for c in _MONTH_BREAKDOWN_CUES):
            key = (f"CAST(YEAR([{col}]) AS VARCHAR(4)) + '-' + "
                   f"RIGHT('0' + CAST(MONTH([{col}]) AS VARCHAR(2)), 2)")
            items = [f"{key} AS [月份]" if i in stray else i for i in items]
            order_idx = next((i for i, t in enumerate(after_tokens)
                              if t.ttype in T.Keyword and t.normalized == 'ORDER BY'), None)
            if order_idx is None:
                rest = ''.join(str(t) for t in after_tokens).rstrip() + f" GROUP BY {key}"
            else:
                head = ''.join(str(t) for t in after_tokens[:order_idx]).rstrip()
                tail = ''.join(str(t) for t in after_tokens[order_idx:])
                rest = f"{head} GROUP BY {key} {tail}"
        else:
            items = [i for i in items if i not in stray]
            rest = ''.join(str(t) for t in after_tokens)
        return f"{before}{prefix}{', '.join(items)} {rest.lstrip()}"


def _year_range(y1: int, y2: int) -> Tuple[date, date]:
    return date(y1, 1, 1), date(y2 + 1, 1, 1)


def _month_range(y: int, m: int) -> Tuple[date, date]:
    start = date(y, m, 1)
    end = date(y + 1, 1, 1) if m == 12 else date(y, m + 1, 1)
    return start, end


def _range_text(col: str, start: date, end: date) -> str:
    return f"{col} >= '{start.isoformat()}' AND {col} < '{end.isoformat()}'"


class TimeFunctionPredicateRule(SanitizeRule):
    """YEAR()/MONTH() comparisons in WHERE clauses become index-friendly range predicates."""

    name = 'time_function_predicate'

    _col = r"(\[[^\]]+\])"
    _year_month = re.compile(rf"YEAR\({_col}\)\s*=\s*(\d{{4}})\s+AND\s+MONTH\(\1\)\s*=\s*(\d{{1,2}})", re.IGNORECASE)
    _month_year = re.compile(rf"MONTH\({_col}\)\s*=\s*(\d{{1,2}})\s+AND\s+YEAR\(\1\)\s*=\s*(\d{{4}})", re.IGNORECASE)
    _year_between = re.compile(rf"YEAR\({_col}\)\s+BETWEEN\s+(\d{{4}})\s+AND\s+(\d{{4}})", re.IGNORECASE)
    _year_in = re.compile(rf"YEAR\({_col}\)\s+IN\s*\(\s*(\d{{4}}(?:\s*,\s*\d{{4}})*)\s*\)", re.IGNORECASE)
    _year_eq = re.compile(rf"YEAR\({_col}\)\s*=\s*(\d{{4}})", re.IGNORECASE)
    _cast_date = re.compile(rf"CAST\({_col}\s+AS\s+DATE\)\s*=\s*'(\d{{4}})-(\d{{2}})-(\d{{2}})'", re.IGNORECASE)

    def _rewrite(self, text: str) -> str:
        text = self._year_month.sub(lambda m: _range_text(m.group(1), *_month_range(int(m.group(2)), int(m.group(3)))), text)
        text = self._month_year.sub(lambda m: _range_text(m.group(1), *_month_range(int(m.group(3)), int(m.group(2)))), text)
        text = self._year_between.sub(lambda m: _range_text(m.group(1), *_year_range(int(m.group(2)), int(m.group(3)))), text)

        def year_in(m: re.Match) -> str:
            years = sorted({int(y) for y in re.findall(r"\d{4}", m.group(2))})
            if years != list(range(years[0], years[-1] + 1)):
                return m.group(0)
            return _range_text(m.group(1), *_year_range(years[0], years[-1]))

        text = self._year_in.sub(year_in, text)
        text = self._year_eq.sub(lambda m: _range_text(m.group(1), *_year_range(int(m.group(2)), int(m.group(2)))), text)

        def one_day(m: re.Match) -> str:
            d = date(int(m.group(2)), int(m.group(3)), int(m.group(4)))
            return _range_text(m.group(1), d, date.fromordinal(d.toordinal() + 1))

        return self._cast_date.sub(one_day, text)

    def _walk(self, token_list: S.TokenList) -> int:
        changed = 0
        for tok in token_list.tokens:
            if isinstance(tok, S.Where):
                old = str(tok)
                new = self._rewrite(old)
                if new != old:
                    tok.tokens = [sqlparse.sql.Token(T.Text, new)]
                    changed += 1
                    continue
            if tok.is_group:
                changed += self._walk(tok)
        return changed

    def apply(self, sql: str, ctx: SanitizeContext) -> str:
        stmt = sqlparse.parse(sql)[0]
        if not self._walk(stmt):
            return sql
        return str(stmt)


DEFAULT_RULES: Tuple[SanitizeRule, ...] = (
    FenceStripRule(),
    SingleSelectRule(),
    ReadOnlyRule(),
    TableSuffixRule(),
    EmptyConvertArgumentRule(),
    StrayTimeColumnRule(),
    TimeFunctionPredicateRule(),
)


class QuerySanitizer:
    def __init__(self, catalog: Optional[SourceCatalog] = None, rules: Tuple[SanitizeRule, ...] = DEFAULT_RULES):
        self.catalog = catalog or get_catalog()
        self.rules = rules

    def sanitize(self, sql: str, question: str = '') -> str:
        ctx = SanitizeContext(question=question or '', catalog=self.catalog)
        out = sql or ''
        for rule in self.rules:
            new = rule.apply(out, ctx)
            if new != out:
                ctx.applied.append(rule.name)
            out = new
        if not out.strip():
            raise StoreExecutionFailed('empty SQL after sanitizing', stage='sanitize', sql=sql)
        if ctx.applied:
            logger.info(f"Sanitizer rules applied: {ctx.applied}")
        return out
