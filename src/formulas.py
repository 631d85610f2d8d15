"""
Fixed SQL templates for derived business metrics.

Each formula is detected from cue words (first signature wins) and built from catalog
field mappings, so the same question always renders the same SQL. A builder raises
FormulaNotApplicable when the question does not fit its template; the query system
then hands the question to the model fallback.

Formulas:
- per_unit_average: metric / days (or months, years) / installed gun count
- per_kwh_average: metric / charged energy, one combined scan per source
- gross_margin, gross_margin_rate: charging revenue vs utility electricity cost
- energy_loss, loss_rate, efficiency: utility metered energy vs charged energy
- period_comparison, growth_rate: two periods, delta or percentage
- monthly_average, daily_average, average_order_value
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from availability import SourceAvailability
from catalog_models import FieldMapping, SourceDefinition
from errors import FormulaNotApplicable, NoFieldResolved
from field_resolver import field_for, question_metric_keyword, resolve_field, value_expression
from ir_models import FormulaId, TimeRange
from query_planner import combine, dimension_key, source_where
from source_catalog import SourceCatalog, get_catalog
from sql_builder import (
    Agg,
    BinOp,
    Cast,
    Coalesce,
    Column,
    CrossJoin,
    Expr,
    Literal,
    NullIf,
    OrderItem,
    Raw,
    Select,
    SelectItem,
    Subquery,
    Table,
    days_in_month_of_key,
)
from time_phrases import extract_periods, extract_top_n, previous_period, same_period_last_year

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FormulaSignature:
    formula: FormulaId
    cues: Tuple[str, ...]


FORMULA_SIGNATURES: Tuple[FormulaSignature, ...] = (
    FormulaSignature(FormulaId.PER_UNIT_AVERAGE, ('每把枪', '每枪', '单枪', '枪均', '每个终端', '每终端')),
    FormulaSignature(FormulaId.PER_KWH_AVERAGE, ('每度电', '每千瓦时', '度电')),
    FormulaSignature(FormulaId.GROSS_MARGIN_RATE, ('毛利率',)),
    FormulaSignature(FormulaId.GROSS_MARGIN, ('毛利',)),
    FormulaSignature(FormulaId.LOSS_RATE, ('损耗率', '线损率', '损耗比')),
    FormulaSignature(FormulaId.ENERGY_LOSS, ('损耗', '线损', '电损', '损失电量')),
    FormulaSignature(FormulaId.EFFICIENCY, ('充电效率', '用电效率', '效率')),
    FormulaSignature(FormulaId.GROWTH_RATE, ('增长率', '增幅', '同比', '环比', '增速')),
    FormulaSignature(FormulaId.PERIOD_COMPARISON, ('对比', '相比', '比较', '相较')),
    FormulaSignature(FormulaId.MONTHLY_AVERAGE, ('平均每月', '平均每个月', '月均', '每月平均')),
    FormulaSignature(FormulaId.DAILY_AVERAGE, ('平均每天', '平均每日', '日均', '每天平均')),
    FormulaSignature(FormulaId.AVERAGE_ORDER_VALUE, ('客单价', '平均每单', '每单平均', '单均')),
)

# Formulas that pick their own sources from the catalog when the question names none.
SELF_SOURCING = frozenset({
    FormulaId.PER_UNIT_AVERAGE,
    FormulaId.PER_KWH_AVERAGE,
    FormulaId.GROSS_MARGIN,
    FormulaId.GROSS_MARGIN_RATE,
    FormulaId.ENERGY_LOSS,
    FormulaId.LOSS_RATE,
    FormulaId.EFFICIENCY,
})

_SHAPE_CUES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ('avg_day', ('平均每天', '平均每日', '日均', '每天平均')),
    ('avg_month', ('平均每月', '平均每个月', '月均', '每月平均')),
    ('per_day', ('每天', '每日', '按天', '哪一天', '哪天', '逐日')),
    ('per_month', ('每月', '每个月', '按月', '各月', '哪个月', '哪一个月', '逐月')),
    ('per_year', ('每年', '按年', '各年', '哪一年', '哪年')),
)


def detect_formula(text: str) -> Optional[FormulaId]:
    s = text or ''
    for sig in FORMULA_SIGNATURES:
        if any(c in s for c in sig.cues):
            return sig.formula
    return None


def breakdown_shape(text: str) -> str:
    s = text or ''
    for shape, cues in _SHAPE_CUES:
        if any(c in s for c in cues):
            return shape
    return 'total'


@dataclass(frozen=True)
class FormulaContext:
    question: str
    now: date
    time_range: TimeRange
    site: Optional[str] = None
    sources: Tuple[str, ...] = ()
    resolved: Tuple[str, ...] = ()


@dataclass
class FormulaResult:
    formula: FormulaId
    sql: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _TwoSided:
    """left and right totals and how the result column combines them."""

    left_alias: str
    right_alias: str
    result_alias: str
    result: Callable[[Expr, Expr], Expr]
    additive: bool = True


def _difference(left: Expr, right: Expr) -> Expr:
    return BinOp(left, '-', right)


def _percent_of_left(numerator: Callable[[Expr, Expr], Expr]) -> Callable[[Expr, Expr], Expr]:
    def build(left: Expr, right: Expr) -> Expr:
        return BinOp(BinOp(numerator(left, right), '*', Literal(100.0)), '/', NullIf(left))
    return build


def _per(value: Expr, divisor) -> Expr:
    return BinOp(BinOp(value, '*', Literal(1.0)), '/', divisor if isinstance(divisor, Expr) else Literal(divisor))


class FormulaLibrary:
    def __init__(self, catalog: Optional[SourceCatalog] = None, availability: Optional[SourceAvailability] = None):
        self.catalog = catalog or get_catalog()
        self.availability = availability or SourceAvailability(self.catalog)
        self._builders: Dict[FormulaId, Callable[[FormulaContext], FormulaResult]] = {
            FormulaId.PER_UNIT_AVERAGE: self._per_unit_average,
            FormulaId.PER_KWH_AVERAGE: self._per_kwh_average,
            FormulaId.GROSS_MARGIN: self._gross_margin,
            FormulaId.GROSS_MARGIN_RATE: self._gross_margin_rate,
            FormulaId.ENERGY_LOSS: self._energy_loss,
            FormulaId.LOSS_RATE: self._loss_rate,
            FormulaId.EFFICIENCY: self._efficiency,
            FormulaId.PERIOD_COMPARISON: self._period_comparison,
            FormulaId.GROWTH_RATE: self._growth_rate,
            FormulaId.MONTHLY_AVERAGE: self._monthly_average,
            FormulaId.DAILY_AVERAGE: self._daily_average,
            FormulaId.AVERAGE_ORDER_VALUE: self._average_order_value,
        }

    def detect(self, text: str) -> Optional[FormulaId]:
        return detect_formula(text)

    def is_self_sourcing(self, formula: FormulaId) -> bool:
        return formula in SELF_SOURCING

    def build(self, formula: FormulaId, ctx: FormulaContext) -> FormulaResult:
        result = self._builders[formula](ctx)
        logger.debug(f"Formula {formula.value}: {result.sql}")
        return result

    # Source selection

    def _charging(self, ctx: FormulaContext) -> List[SourceDefinition]:
        tr = ctx.time_range
        charging = self.catalog.charging_sources()
        chosen = [sid for sid in ctx.sources if sid in charging]
        if not chosen:
            chosen = [sid for sid in charging if self.catalog.get(sid).exists_at(ctx.site)]
            chosen = self.availability.filter(chosen, tr)
        if not chosen:
            raise FormulaNotApplicable('no charging source has data for the period', time=tr.label)
        return [self.catalog.get(sid) for sid in chosen]

    def _utility(self, ctx: FormulaContext) -> SourceDefinition:
        utility = self.catalog.utility_source()
        if utility is None or not self.availability.is_available(utility.id, ctx.time_range):
            raise FormulaNotApplicable('utility billing source is not available for the period')
        return utility

    def _pairs(self, sources: List[SourceDefinition], keyword: str) -> List[Tuple[SourceDefinition, FieldMapping]]:
        pairs = []
        for s in sources:
            try:
                pairs.append((s, field_for(s, keyword, strict=True)[1]))
            except NoFieldResolved:
                logger.info(f"Source {s.id} has no {keyword}; left out of the formula")
        if not pairs:
            raise FormulaNotApplicable(f"no source provides {keyword}")
        return pairs

    # Shared SQL pieces

    def _sum_select(self, source: SourceDefinition, mapping: FieldMapping, tr: TimeRange, site: Optional[str],
                    alias: str = '总计', key: Optional[Expr] = None, key_alias: Optional[str] = None) -> Select:
        items: Tuple[SelectItem, ...] = ()
        if key is not None:
            items += (SelectItem(key, key_alias),)
        items += (SelectItem(Coalesce(Agg('SUM', value_expression(mapping))), alias),)
        return Select(
            items=items,
            from_=Table(source.id),
            where=source_where(source, (mapping,), tr, site),
            group_by=(key,) if key is not None else (),
        )

    def _total(self, pairs, tr: TimeRange, site: Optional[str], alias: str) -> Select:
        inner = [self._sum_select(s, m, tr, site, alias='金额') for s, m in pairs]
        return combine(inner, (SelectItem(Coalesce(Agg('SUM', Column('金额'))), alias),), alias='parts')

    def _period_key(self, source: SourceDefinition, period: str) -> Expr:
        key = dimension_key(source, 'year' if period == 'year' else 'month')
        if period == 'year':
            return Cast(key, 'INT')
        return key

    # Two-sided formulas (charging vs utility)

    def _two_sided(self, ctx: FormulaContext, formula: FormulaId, sides: _TwoSided,
                   left_pairs, right_pairs) -> FormulaResult:
        shape = breakdown_shape(ctx.question)
        if not sides.additive and shape in ('avg_day', 'avg_month', 'per_day'):
            shape = 'total' if shape != 'per_day' else 'per_month'
        tr, site = ctx.time_range, ctx.site
        params: Dict[str, Any] = {'shape': shape, 'site': site}
        res = sides.result_alias

        if shape in ('total', 'avg_day'):
            left = Subquery(self._total(left_pairs, tr, site, sides.left_alias), 'l')
            right = Subquery(self._total(right_pairs, tr, site, sides.right_alias), 'r')
            lc, rc = Column(sides.left_alias, 'l'), Column(sides.right_alias, 'r')
            total = Select(
                items=(SelectItem(lc, sides.left_alias), SelectItem(rc, sides.right_alias),
                       SelectItem(sides.result(lc, rc), res)),
                from_=CrossJoin(left, right),
            )
            if shape == 'total':
                return FormulaResult(formula, total.render(), params)
            days = tr.day_count(clamp_to=ctx.now)
            if not days:
                raise FormulaNotApplicable('a daily average needs a time range', formula=formula.value)
            params['divisor'] = days
            sql = Select(items=(SelectItem(_per(Column(res), days), f"日均{res}"),), from_=Subquery(total, 't'))
            return FormulaResult(formula, sql.render(), params)

        period = 'year' if shape == 'per_year' else 'month'
        key_alias = '年份' if period == 'year' else '月份'
        inner: List[Select] = []
        for pairs, is_left in ((left_pairs, True), (right_pairs, False)):
            for s, m in pairs:
                key = self._period_key(s, period)
                total = Coalesce(Agg('SUM', value_expression(m)))
                # UNION ALL matches columns by position: key, left, right in every branch.
                values = (total, Literal(0)) if is_left else (Literal(0), total)
                inner.append(Select(
                    items=(SelectItem(key, key_alias), SelectItem(values[0], sides.left_alias),
                           SelectItem(values[1], sides.right_alias)),
                    from_=Table(s.id),
                    where=source_where(s, (m,), tr, site),
                    group_by=(key,),
                ))
        l_sum, r_sum = Agg('SUM', Column(sides.left_alias)), Agg('SUM', Column(sides.right_alias))
        per_period_items = (
            SelectItem(Column(key_alias)),
            SelectItem(l_sum, sides.left_alias),
            SelectItem(r_sum, sides.right_alias),
            SelectItem(sides.result(l_sum, r_sum), res),
        )
        unordered = combine(inner, per_period_items, alias='periods', group_by=(Column(key_alias),))

        if shape == 'avg_month':
            sql = Select(
                items=(SelectItem(_per(Coalesce(Agg('SUM', Column(res))), NullIf(Agg('COUNT'))), f"月均{res}"),),
                from_=Subquery(unordered, 'm'),
            )
            return FormulaResult(formula, sql.render(), params)

        if shape == 'per_day':
            params['degraded_to_month'] = True
            sql = Select(
                items=(SelectItem(Column(key_alias)),
                       SelectItem(_per(Column(res), days_in_month_of_key(Column(key_alias))), f"日均{res}")),
                from_=Subquery(unordered, 'm'),
                order_by=(OrderItem(Column(key_alias)),),
            )
            return FormulaResult(formula, sql.render(), params)

        top_n = extract_top_n(ctx.question)
        if top_n is None and any(c in ctx.question for c in ('最高', '最低', '最多', '最少', '哪个月', '哪一年', '哪年')):
            top_n = 1
        if top_n is not None:
            descending = not any(c in ctx.question for c in ('最低', '最少', '最小'))
            order = (OrderItem(Column(res), descending),)
            params['top_n'] = top_n
        else:
            order = (OrderItem(Column(key_alias)),)
        sql = Select(items=unordered.items, from_=unordered.from_, group_by=unordered.group_by,
                     order_by=order, top=top_n)
        return FormulaResult(formula, sql.render(), params)

    def _margin_sides(self, ctx: FormulaContext):
        revenue = self._pairs(self._charging(ctx), '充电费用')
        cost = self._pairs([self._utility(ctx)], '总电费')
        return revenue, cost

    def _energy_sides(self, ctx: FormulaContext):
        metered = self._pairs([self._utility(ctx)], '抄见电量')
        charged = self._pairs(self._charging(ctx), '充电电量')
        return metered, charged

    def _gross_margin(self, ctx: FormulaContext) -> FormulaResult:
        revenue, cost = self._margin_sides(ctx)
        sides = _TwoSided('充电收入', '电费成本', '毛利', _difference)
        return self._two_sided(ctx, FormulaId.GROSS_MARGIN, sides, revenue, cost)

    def _gross_margin_rate(self, ctx: FormulaContext) -> FormulaResult:
        revenue, cost = self._margin_sides(ctx)
        sides = _TwoSided('充电收入', '电费成本', '毛利率', _percent_of_left(_difference), additive=False)
        return self._two_sided(ctx, FormulaId.GROSS_MARGIN_RATE, sides, revenue, cost)

    def _energy_loss(self, ctx: FormulaContext) -> FormulaResult:
        metered, charged = self._energy_sides(ctx)
        sides = _TwoSided('抄见电量', '充电电量', '损耗电量', _difference)
        return self._two_sided(ctx, FormulaId.ENERGY_LOSS, sides, metered, charged)

    def _loss_rate(self, ctx: FormulaContext) -> FormulaResult:
        metered, charged = self._energy_sides(ctx)
        sides = _TwoSided('抄见电量', '充电电量', '损耗率', _percent_of_left(_difference), additive=False)
        return self._two_sided(ctx, FormulaId.LOSS_RATE, sides, metered, charged)

    def _efficiency(self, ctx: FormulaContext) -> FormulaResult:
        metered, charged = self._energy_sides(ctx)
        sides = _TwoSided('抄见电量', '充电电量', '充电效率', _percent_of_left(lambda left, right: right), additive=False)
        return self._two_sided(ctx, FormulaId.EFFICIENCY, sides, metered, charged)

    # Per-unit and per-kWh

    def _per_unit_average(self, ctx: FormulaContext) -> FormulaResult:
        tr = ctx.time_range
        if not tr.has_time:
            raise FormulaNotApplicable('a per-gun average needs a time range')
        sources = self._charging(ctx)
        keyword = question_metric_keyword(sources, ctx.question) or '充电电量'
        pairs = self._pairs(sources, keyword)

        q = ctx.question
        if any(c in q for c in ('每月', '每个月', '月均')):
            unit_label, divisor = '每月', tr.month_count(clamp_to=ctx.now)
        elif any(c in q for c in ('每年', '年均')):
            unit_label, divisor = '每年', tr.year_count(clamp_to=ctx.now)
        else:
            unit_label, divisor = '每日', tr.day_count(clamp_to=ctx.now)
        if not divisor:
            raise FormulaNotApplicable('the requested period has not started yet', time=tr.label)

        year = min(tr.end, ctx.now).year
        counts = self.catalog.unit_counts
        sites = [ctx.site] if ctx.site else list(self.catalog.sites)
        units = sum(counts.count_for(site, year) or 0 for site in sites)
        if not units:
            raise FormulaNotApplicable('no installed unit count on record', year=year, sites=sites)

        alias = f"平均每{counts.unit}{unit_label}{keyword}"
        inner = [self._sum_select(s, m, tr, ctx.site) for s, m in pairs]
        value = BinOp(_per(Coalesce(Agg('SUM', Column('总计'))), divisor), '/', Literal(units))
        sql = combine(inner, (SelectItem(value, alias),)).render()
        return FormulaResult(FormulaId.PER_UNIT_AVERAGE, sql, {
            'divisor': divisor, 'divisor_unit': unit_label, 'unit_count': units, 'unit_year': year,
            'metric': keyword, 'site': ctx.site,
        })

    def _per_kwh_average(self, ctx: FormulaContext) -> FormulaResult:
        sources = self._charging(ctx)
        keyword = question_metric_keyword(sources, ctx.question, exclude=('电量', '充电电量', '电费')) or '收入'
        inner: List[Select] = []
        for s in sources:
            try:
                _, num = field_for(s, keyword, strict=True)
                _, energy = field_for(s, '充电电量', strict=True)
            except NoFieldResolved:
                continue
            inner.append(Select(
                items=(SelectItem(Coalesce(Agg('SUM', value_expression(num))), '分子'),
                       SelectItem(Coalesce(Agg('SUM', value_expression(energy))), '电量')),
                from_=Table(s.id),
                where=source_where(s, (num, energy), ctx.time_range, ctx.site),
            ))
        if not inner:
            raise FormulaNotApplicable(f"no charging source provides both {keyword} and energy")
        alias = f"平均每度电{keyword}"
        value = _per(Agg('SUM', Column('分子')), NullIf(Agg('SUM', Column('电量'))))
        sql = combine(inner, (SelectItem(value, alias),)).render()
        return FormulaResult(FormulaId.PER_KWH_AVERAGE, sql, {'metric': keyword, 'site': ctx.site})

    # Period comparisons

    def _periods(self, ctx: FormulaContext) -> Tuple[TimeRange, TimeRange]:
        periods = extract_periods(ctx.question, ctx.now)
        if len(periods) >= 2:
            return periods[0], periods[1]
        base = periods[0] if periods else ctx.time_range
        if base.has_time and '同比' in ctx.question:
            return base, same_period_last_year(base)
        if base.has_time and '环比' in ctx.question:
            return base, previous_period(base)
        raise FormulaNotApplicable('a comparison needs two periods', periods=len(periods))

    def _period_total(self, ctx: FormulaContext, tr: TimeRange) -> Select:
        candidates = list(ctx.resolved or ctx.sources)
        available = self.availability.filter(candidates, tr)
        inner = []
        for sid in available:
            s = self.catalog.get(sid)
            _, mapping = resolve_field(s, ctx.question)
            inner.append(self._sum_select(s, mapping, tr, ctx.site))
        if not inner:
            return Select(items=(SelectItem(Literal(0), '总计'),))
        return combine(inner, (SelectItem(Coalesce(Agg('SUM', Column('总计'))), '总计'),))

    def _comparison_parts(self, ctx: FormulaContext):
        if not (ctx.resolved or ctx.sources):
            raise FormulaNotApplicable('a comparison needs at least one source')
        p1, p2 = self._periods(ctx)
        a = Subquery(self._period_total(ctx, p1), 'p1')
        b = Subquery(self._period_total(ctx, p2), 'p2')
        params = {'periods': [[p1.start.isoformat(), p1.end.isoformat()], [p2.start.isoformat(), p2.end.isoformat()]]}
        return a, b, params

    def _period_comparison(self, ctx: FormulaContext) -> FormulaResult:
        a, b, params = self._comparison_parts(ctx)
        delta = BinOp(Column('总计', 'p1'), '-', Column('总计', 'p2'))
        sql = Select(items=(SelectItem(delta, '增减量'),), from_=CrossJoin(a, b))
        return FormulaResult(FormulaId.PERIOD_COMPARISON, sql.render(), params)

    def _growth_rate(self, ctx: FormulaContext) -> FormulaResult:
        a, b, params = self._comparison_parts(ctx)
        p1, p2 = Column('总计', 'p1'), Column('总计', 'p2')
        rate = BinOp(BinOp(BinOp(p1, '-', p2), '*', Literal(100.0)), '/', NullIf(p2))
        sql = Select(items=(SelectItem(BinOp(p1, '-', p2), '增减量'), SelectItem(rate, '增长率')),
                     from_=CrossJoin(a, b))
        return FormulaResult(FormulaId.GROWTH_RATE, sql.render(), params)

    # Averages

    def _resolved_pairs(self, ctx: FormulaContext) -> List[Tuple[SourceDefinition, FieldMapping]]:
        if not ctx.sources:
            raise FormulaNotApplicable('no source has data for the period')
        return [(self.catalog.get(sid), resolve_field(self.catalog.get(sid), ctx.question)[1]) for sid in ctx.sources]

    def _monthly_average(self, ctx: FormulaContext) -> FormulaResult:
        pairs = self._resolved_pairs(ctx)
        inner = [self._sum_select(s, m, ctx.time_range, ctx.site, key=dimension_key(s, 'month'), key_alias='月份')
                 for s, m in pairs]
        value = _per(Coalesce(Agg('SUM', Column('总计'))), NullIf(Agg('COUNT', Column('月份'), distinct=True)))
        sql = combine(inner, (SelectItem(value, '月均值'),)).render()
        return FormulaResult(FormulaId.MONTHLY_AVERAGE, sql, {'site': ctx.site})

    def _daily_average(self, ctx: FormulaContext) -> FormulaResult:
        pairs = self._resolved_pairs(ctx)
        tr = ctx.time_range
        days = tr.day_count(clamp_to=ctx.now)
        if days:
            inner = [self._sum_select(s, m, tr, ctx.site) for s, m in pairs]
            value = _per(Coalesce(Agg('SUM', Column('总计'))), days)
            params: Dict[str, Any] = {'divisor': days, 'site': ctx.site}
        else:
            inner = [self._sum_select(s, m, tr, ctx.site, key=dimension_key(s, 'date'), key_alias='日期')
                     for s, m in pairs]
            value = _per(Coalesce(Agg('SUM', Column('总计'))), NullIf(Agg('COUNT', Column('日期'), distinct=True)))
            params = {'divisor': 'distinct_days', 'site': ctx.site}
        sql = combine(inner, (SelectItem(value, '日均值'),)).render()
        return FormulaResult(FormulaId.DAILY_AVERAGE, sql, params)

    def _average_order_value(self, ctx: FormulaContext) -> FormulaResult:
        inner: List[Select] = []
        for sid in ctx.sources:
            s = self.catalog.get(sid)
            orders = next((m for m in s.fields.values() if m.kind == 'count'), None)
            if orders is None:
                continue
            keyword = question_metric_keyword([s], ctx.question, exclude=('订单数', '订单数量')) or '收入'
            _, revenue = field_for(s, keyword)
            inner.append(Select(
                items=(SelectItem(Coalesce(Agg('SUM', value_expression(revenue))), '金额'),
                       SelectItem(Agg('COUNT', Raw(orders.expression)), '订单数')),
                from_=Table(s.id),
                where=source_where(s, (revenue, orders), ctx.time_range, ctx.site),
            ))
        if not inner:
            raise FormulaNotApplicable('no resolved source records orders', sources=list(ctx.sources))
        value = _per(Agg('SUM', Column('金额')), NullIf(Agg('SUM', Column('订单数'))))
        sql = combine(inner, (SelectItem(value, '客单价'),)).render()
        return FormulaResult(FormulaId.AVERAGE_ORDER_VALUE, sql, {'site': ctx.site})
