"""
Question text -> set of store sources.

Resolution is an ordered list of named rules; the first rule whose predicate matches
and that yields at least one source wins. After the cascade:

- sources whose display name or alias appears in the text are appended;
- sources that do not exist at the named site are dropped;
- the connector rule runs: questions about guns/terminals drop charging sources that
  have no connector key, and add a connector-capable charging source that the time
  range could include.

The connector rule is exposed separately so the query system can re-run it after the
availability filter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from availability import ValidityWindow
from ir_models import TimeRange
from source_catalog import SourceCatalog, get_catalog
from time_phrases import parse_time_range

logger = logging.getLogger(__name__)

CONNECTOR_CUES = ('枪', '终端', '充电桩', '桩号')

# Words that mark a question as being about the business data even when no source
# keyword is present.
DATA_CUES = (
    '收入', '营收', '金额', '费用', '订单', '电量', '电费', '毛利', '损耗', '效率', '客单价',
    '总额', '统计', '排名', '最高', '最低', '最多', '最少', '平均',
)


@dataclass(frozen=True)
class ResolverContext:
    text: str
    today: date
    catalog: SourceCatalog
    site: Optional[str]
    time_range: TimeRange


@dataclass(frozen=True)
class ResolutionRule:
    name: str
    predicate: Callable[[ResolverContext], bool]
    resolve: Callable[[ResolverContext], List[str]]


@dataclass(frozen=True)
class SourceResolution:
    sources: Tuple[str, ...]
    site: Optional[str] = None
    rule: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_sources(self, sources) -> 'SourceResolution':
        return replace(self, sources=tuple(sources))


# Predicates and resolvers

def _exact_names(ctx: ResolverContext) -> List[str]:
    return [sid for sid in ctx.catalog.ids() if sid in ctx.text]


def _compound_phrase(ctx: ResolverContext):
    for phrase in ctx.catalog.compound_phrases:
        if any(p in ctx.text for p in phrase.phrases):
            return phrase
    return None


def _resolve_compound(ctx: ResolverContext) -> List[str]:
    phrase = _compound_phrase(ctx)
    return list(phrase.sources_for(ctx.site)) if phrase else []


def _alias_matches(ctx: ResolverContext) -> List[str]:
    out: List[str] = []
    for source in ctx.catalog.sources():
        if any(alias and alias in ctx.text for alias in source.aliases):
            out.append(source.id)
    return out


def _matched_categories(ctx: ResolverContext, exclude: Tuple[str, ...] = ()) -> List[str]:
    names: List[str] = []
    for cat in ctx.catalog.categories():
        if cat.name in exclude:
            continue
        if any(k in ctx.text for k in cat.keywords):
            names.append(cat.name)
    return names


def _narrow_by_field(ctx: ResolverContext, members: List[str]) -> List[str]:
    """Keep only the members that know the longest field keyword named in the text."""
    if len(members) < 2:
        return members
    best = ''
    for sid in members:
        for keyword in ctx.catalog.get(sid).fields:
            if keyword in ctx.text and len(keyword) > len(best):
                best = keyword
    if not best:
        return members
    narrowed = [sid for sid in members if best in ctx.catalog.get(sid).fields]
    if narrowed and len(narrowed) < len(members):
        logger.debug(f"Narrowed {members} to {narrowed} by field keyword {best!r}")
        return narrowed
    return members


def _union_in_order(groups: List[Tuple[str, ...]]) -> List[str]:
    seen: List[str] = []
    for group in groups:
        for sid in group:
            if sid not in seen:
                seen.append(sid)
    return seen


def _location_applies(ctx: ResolverContext) -> bool:
    if not ctx.site:
        return False
    if _alias_matches(ctx):
        return False
    return not _matched_categories(ctx, exclude=('charging', 'utility'))


def _resolve_location(ctx: ResolverContext) -> List[str]:
    return _narrow_by_field(ctx, list(ctx.catalog.charging_sources()))


def _resolve_categories(ctx: ResolverContext) -> List[str]:
    groups = [ctx.catalog.members(name) for name in _matched_categories(ctx)]
    return _narrow_by_field(ctx, _union_in_order(groups))


def _charging_fallback_applies(ctx: ResolverContext) -> bool:
    return any(k in ctx.text for k in ctx.catalog.charging_fallback_keywords)


def _resolve_charging_fallback(ctx: ResolverContext) -> List[str]:
    return _narrow_by_field(ctx, list(ctx.catalog.charging_sources()))


RESOLUTION_RULES: Tuple[ResolutionRule, ...] = (
    ResolutionRule('exact_source_name', lambda ctx: bool(_exact_names(ctx)), _exact_names),
    ResolutionRule('compound_phrase', lambda ctx: _compound_phrase(ctx) is not None, _resolve_compound),
    ResolutionRule('location', _location_applies, _resolve_location),
    ResolutionRule('source_alias', lambda ctx: bool(_alias_matches(ctx)), _alias_matches),
    ResolutionRule('category_keyword', lambda ctx: bool(_matched_categories(ctx)), _resolve_categories),
    ResolutionRule('charging_fallback', _charging_fallback_applies, _resolve_charging_fallback),
)

# Rules whose result is a fixed set chosen by the user; the connector rule never adds to them.
_EXPLICIT_RULES = ('exact_source_name', 'source_alias')


def references_connector(text: str) -> bool:
    return any(cue in (text or '') for cue in CONNECTOR_CUES)


def apply_connector_rule(
    resolution: SourceResolution,
    text: str,
    catalog: SourceCatalog,
    is_available: Optional[Callable[[str], bool]] = None,
) -> SourceResolution:
    """Drop charging sources without connector keys; add connector-capable ones the period allows."""
    if not references_connector(text):
        return resolution
    charging = set(catalog.charging_sources())
    sources = [sid for sid in resolution.sources if sid not in charging or catalog.get(sid).connector is not None]
    touches_charging = any(sid in charging for sid in resolution.sources)
    if touches_charging and resolution.rule not in _EXPLICIT_RULES:
        for sid in catalog.charging_sources():
            s = catalog.get(sid)
            if sid in sources or s.connector is None or not s.exists_at(resolution.site):
                continue
            if is_available is None or is_available(sid):
                sources.append(sid)
    sources = catalog.in_catalog_order(sources)
    if tuple(sources) != resolution.sources:
        logger.debug(f"Connector rule: {list(resolution.sources)} -> {sources}")
    return resolution.with_sources(sources)


def _site_metadata(catalog: SourceCatalog, site: Optional[str]) -> Dict[str, Any]:
    meta: Dict[str, Any] = {'site': site}
    for s in catalog.sites:
        meta[f"is_{s}"] = site == s
    return meta


def resolve_sources(
    text: str,
    today: Optional[date] = None,
    catalog: Optional[SourceCatalog] = None,
    time_range: Optional[TimeRange] = None,
) -> SourceResolution:
    """Resolve the sources a question refers to. Pure given (text, today)."""
    catalog = catalog or get_catalog()
    today = today or date.today()
    text = (text or '').strip()
    tr = time_range or parse_time_range(text, today)
    ctx = ResolverContext(text=text, today=today, catalog=catalog, site=catalog.site_in(text), time_range=tr)

    sources: List[str] = []
    rule_name: Optional[str] = None
    for rule in RESOLUTION_RULES:
        if not rule.predicate(ctx):
            continue
        sources = rule.resolve(ctx)
        if sources:
            rule_name = rule.name
            break

    if rule_name is not None:
        for source in catalog.sources():
            if source.id in sources:
                continue
            if source.name in text or any(a in text for a in source.aliases):
                sources.append(source.id)

    sources = [sid for sid in sources if catalog.get(sid).exists_at(ctx.site)]

    def statically_available(sid: str) -> bool:
        s = catalog.get(sid)
        return ValidityWindow(s.valid_from, s.valid_until).overlaps(tr)

    resolution = SourceResolution(
        sources=tuple(catalog.in_catalog_order(sources)),
        site=ctx.site,
        rule=rule_name,
        metadata=_site_metadata(catalog, ctx.site),
    )
    resolution = apply_connector_rule(resolution, text, catalog, statically_available)
    logger.debug(f"Resolved sources via {rule_name}: {list(resolution.sources)} (site={ctx.site})")
    return resolution


def is_database_question(text: str, catalog: Optional[SourceCatalog] = None) -> bool:
    """True when the text mentions a source, site, category, metric or other data cue."""
    catalog = catalog or get_catalog()
    s = text or ''
    if catalog.site_in(s):
        return True
    for source in catalog.sources():
        if source.id in s or any(a in s for a in source.aliases):
            return True
        if any(keyword in s for keyword in source.fields):
            return True
    for cat in catalog.categories():
        if any(k in s for k in cat.keywords):
            return True
    for phrase in catalog.compound_phrases:
        if any(p in s for p in phrase.phrases):
            return True
    if any(k in s for k in catalog.charging_fallback_keywords):
        return True
    return any(cue in s for cue in DATA_CUES)
