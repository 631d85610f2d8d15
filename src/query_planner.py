"""
Plain (non-formula) plans: detect the aggregation and grouping a question asks for,
and render a ResolvedPlan into one SQL statement.

Multi-source questions aggregate every source on its own and combine the per-source
results in an outer query; sources are never joined row-by-row.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from catalog_models import FieldMapping, SourceDefinition
from errors import FormulaNotApplicable, NoSourceResolved
from field_resolver import guard_predicates, question_metric_keyword, resolve_field, value_expression
from ir_models import ResolvedPlan, TimeRange
from source_catalog import SourceCatalog, get_catalog
from source_resolver import SourceResolution
from sql_builder import (
    Agg,
    Cast,
    Coalesce,
    Column,
    Expr,
    OrderItem,
    Raw,
    Select,
    SelectItem,
    Subquery,
    Table,
    UnionAll,
    composite_month_key,
    concat_key,
    date_range_predicate,
    day_key,
    month_key,
    year_key,
    year_month_predicate,
)
from time_phrases import extract_top_n, extract_top_n_unit

logger = logging.getLogger(__name__)

VALUE_ALIASES = {'sum': '总计', 'avg': '平均值', 'max': '最大值', 'min': '最小值', 'count': '次数'}
DIMENSION_ALIASES = {'date': '日期', 'month': '月份', 'year': '年份', 'deviceId': '终端', 'plate': '车牌'}

GROUP_CUES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ('deviceId', ('哪把枪', '哪个枪', '哪个终端', '哪台', '每把枪', '各枪', '按枪', '各终端', '按终端', '哪个充电桩')),
    ('plate', ('哪个车', '哪辆车', '哪个车牌', '车牌', '哪位车主')),
    ('date', ('哪一天', '哪天', '每天', '每日', '按天', '按日', '逐日', '各天')),
    ('month', ('哪个月', '哪一个月', '哪月', '每月', '每个月', '按月', '各月', '逐月')),
    ('year', ('哪一年', '哪年', '每年', '按年', '各年')),
)
RANKING_CUES = ('排名', '排行', '最多', '最少', '最高', '最低', '最大', '最小')
ASCENDING_CUES = ('最少', '最低', '最小')
RANKING_UNITS = {
    '天': 'date', '日': 'date', '个月': 'month', '月': 'month', '年': 'year',
    '终端': 'deviceId', '把枪': 'deviceId', '枪': 'deviceId', '桩': 'deviceId', '台': 'deviceId',
    '车牌': 'plate', '辆车': 'plate', '辆': 'plate', '车': 'plate',
}
CONNECTOR_WORDS = ('终端', '枪', '桩')
PLATE_WORDS = ('车牌', '车辆')

AGGREGATION_CUES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ('count', ('多少笔', '多少单', '几笔', '几单', '笔数', '单数', '次数', '多少次', '订单数')),
    ('avg', ('平均', '均值')),
    ('max', ('最大', '最高', '最多')),
    ('min', ('最小', '最低', '最少')),
)


def detect_group_dimension(text: str) -> Optional[str]:
    s = text or ''
    for dim, cues in GROUP_CUES:
        if any(c in s for c in cues):
            return dim
    return None


def is_descending(text: str) -> bool:
    return not any(c in (text or '') for c in ASCENDING_CUES)


def ranking_dimension(text: str) -> str:
    """Dimension of a bare ranking count (前5, 最多的3天) when no group cue names one.

    The unit word after the count decides; without one, connector words mean terminals,
    plate words mean vehicles, and anything else ranks days.
    """
    s = text or ''
    unit = extract_top_n_unit(s)
    if unit:
        return RANKING_UNITS[unit]
    if any(w in s for w in CONNECTOR_WORDS):
        return 'deviceId'
    if any(w in s for w in PLATE_WORDS):
        return 'plate'
    return 'date'


def detect_aggregation(text: str) -> Tuple[str, Optional[str], Optional[int]]:
    """(aggregation, group dimension, top n).

    A group cue or a ranking count makes the question a grouped ranking; count > avg >
    max > min > sum otherwise.
    """
    s = text or ''
    dim = detect_group_dimension(s)
    top_n = extract_top_n(s)
    if dim is None and top_n is not None:
        dim = ranking_dimension(s)
    if dim:
        if top_n is None and any(c in s for c in RANKING_CUES):
            top_n = 1
        return 'groupTopN', dim, top_n
    for agg, cues in AGGREGATION_CUES:
        if any(c in s for c in cues):
            return agg, None, None
    return 'sum', None, None


# Per-source building blocks shared with the formula library

def time_predicates(source: SourceDefinition, time_range: TimeRange) -> Tuple[Expr, ...]:
    if not time_range.has_time:
        return ()
    if source.time_fields is not None:
        lo, hi = time_range.year_month_bounds()
        return (year_month_predicate(source.time_fields.year_field, source.time_fields.month_field, lo, hi),)
    return date_range_predicate(source.time_field, time_range.start, time_range.end_exclusive)


def source_where(
    source: SourceDefinition,
    mappings: Tuple[FieldMapping, ...],
    time_range: TimeRange,
    site: Optional[str],
) -> Tuple[Expr, ...]:
    preds: List[Expr] = []
    for mapping in mappings:
        for g in guard_predicates(mapping):
            if g not in preds:
                preds.append(g)
    preds.extend(Raw(f) for f in source.filters_for_site(site))
    preds.extend(time_predicates(source, time_range))
    return tuple(preds)


def dimension_key(source: SourceDefinition, dim: str) -> Optional[Expr]:
    """Group key expression for a dimension, or None when the source cannot provide it."""
    if dim == 'deviceId':
        if source.connector is None:
            return None
        return concat_key((source.connector.station, source.connector.terminal))
    if dim == 'plate':
        return Column(source.plate_field) if source.plate_field else None
    if source.time_fields is not None:
        tf = source.time_fields
        if dim == 'year':
            return Column(tf.year_field)
        # Monthly store: day keys degrade to month keys.
        return composite_month_key(tf.year_field, tf.month_field)
    if dim == 'date':
        return day_key(source.time_field)
    if dim == 'month':
        return month_key(source.time_field)
    if dim == 'year':
        return year_key(source.time_field)
    return None


def aggregate_value(agg: str, mapping: FieldMapping) -> Expr:
    value = value_expression(mapping)
    if agg == 'count':
        return Agg('COUNT', value if mapping.kind == 'count' else None)
    if agg == 'avg':
        return Agg('AVG', Cast(value, 'FLOAT'))
    if agg in ('max', 'min'):
        return Agg(agg.upper(), value)
    return Coalesce(Agg('SUM', value))


def combine(selects: List[Select], outer_items: Tuple[SelectItem, ...], alias: str = 'combined', **kw) -> Select:
    """Outer query over the UNION ALL of per-source selects."""
    return Select(items=outer_items, from_=Subquery(UnionAll(tuple(selects)), alias), **kw)


class QueryPlanner:
    """Builds and renders plain plans for resolved sources."""

    def __init__(self, catalog: Optional[SourceCatalog] = None):
        self.catalog = catalog or get_catalog()

    def build_plan(
        self,
        question: str,
        resolution: SourceResolution,
        sources: List[str],
        time_range: TimeRange,
    ) -> ResolvedPlan:
        if not sources:
            raise NoSourceResolved(
                'no source has data for the requested period',
                resolved=list(resolution.sources),
                time=time_range.label,
            )
        agg, dim, top_n = detect_aggregation(question)
        defs = [self.catalog.get(s) for s in sources]
        metric = question_metric_keyword(defs, question)
        if agg == 'sum' and metric and all(d.fields[metric].kind == 'count' for d in defs if metric in d.fields):
            agg = 'count'
        if dim == 'plate':
            with_plate = [s for s in sources if self.catalog.get(s).plate_field]
            if not with_plate:
                raise FormulaNotApplicable('no resolved source records plates', sources=sources)
            sources = with_plate
        if dim == 'deviceId':
            with_connector = [s for s in sources if self.catalog.get(s).connector]
            if not with_connector:
                raise FormulaNotApplicable('no resolved source has connector keys', sources=sources)
            sources = with_connector
        meta = dict(resolution.metadata)
        meta['resolver_rule'] = resolution.rule
        if time_range.weekday_only or time_range.weekend_only:
            meta['weekday_filter_ignored'] = True
        return ResolvedPlan(
            sources=list(sources),
            metric_keyword=metric,
            aggregation=agg,
            group_dimension=dim,
            top_n=top_n,
            descending=is_descending(question),
            time_range=time_range,
            site=resolution.site,
            metadata=meta,
        )

    def render(self, plan: ResolvedPlan, question: str) -> str:
        if plan.aggregation == 'groupTopN':
            sql = self._render_grouped(plan, question)
        else:
            sql = self._render_scalar(plan, question)
        logger.debug(f"Rendered plan {plan.summary()}: {sql}")
        return sql

    def _render_scalar(self, plan: ResolvedPlan, question: str) -> str:
        agg = plan.aggregation
        alias = VALUE_ALIASES[agg]
        selects: List[Select] = []
        for sid in plan.sources:
            source = self.catalog.get(sid)
            mapping = resolve_field(source, question)[1]
            selects.append(Select(
                items=(SelectItem(aggregate_value(agg, mapping), alias),),
                from_=Table(source.id),
                where=source_where(source, (mapping,), plan.time_range, plan.site),
            ))
        if len(selects) == 1:
            return selects[0].render()
        col = Column(alias)
        outer = {
            'sum': Coalesce(Agg('SUM', col)),
            'count': Coalesce(Agg('SUM', col)),
            'avg': Agg('AVG', col),
            'max': Agg('MAX', col),
            'min': Agg('MIN', col),
        }[agg]
        return combine(selects, (SelectItem(outer, alias),)).render()

    def _render_grouped(self, plan: ResolvedPlan, question: str) -> str:
        dim = plan.group_dimension
        dim_alias = DIMENSION_ALIASES[dim]
        inner_agg = 'count' if plan.metric_keyword and self._all_count(plan) else 'sum'
        value_alias = VALUE_ALIASES[inner_agg]
        selects: List[Select] = []
        for sid in plan.sources:
            source = self.catalog.get(sid)
            key = dimension_key(source, dim)
            if key is None:
                logger.info(f"Source {sid} cannot be grouped by {dim}; skipped")
                continue
            mapping = resolve_field(source, question)[1]
            where = source_where(source, (mapping,), plan.time_range, plan.site)
            if dim == 'plate':
                where = where + (Raw(f"{key.render()} IS NOT NULL"), Raw(f"{key.render()} <> ''"))
            selects.append(Select(
                items=(SelectItem(key, dim_alias), SelectItem(aggregate_value(inner_agg, mapping), value_alias)),
                from_=Table(source.id),
                where=where,
                group_by=(key,),
            ))
        if not selects:
            raise FormulaNotApplicable(f"no source can be grouped by {dim}", sources=plan.sources)

        if plan.top_n is not None:
            order = (OrderItem(Column(value_alias), plan.descending),)
        else:
            order = (OrderItem(Column(dim_alias), False),)

        if len(selects) == 1:
            only = selects[0]
            return Select(
                items=only.items, from_=only.from_, where=only.where, group_by=only.group_by,
                order_by=order, top=plan.top_n,
            ).render()
        outer_value = Coalesce(Agg('SUM', Column(value_alias)))
        return combine(
            selects,
            (SelectItem(Column(dim_alias)), SelectItem(outer_value, value_alias)),
            group_by=(Column(dim_alias),),
            order_by=order,
            top=plan.top_n,
        ).render()

    def _all_count(self, plan: ResolvedPlan) -> bool:
        kinds = []
        for sid in plan.sources:
            mapping = self.catalog.get(sid).fields.get(plan.metric_keyword)
            if mapping is not None:
                kinds.append(mapping.kind)
        return bool(kinds) and all(k == 'count' for k in kinds)
