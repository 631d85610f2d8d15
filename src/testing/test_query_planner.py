from datetime import date

import pytest

from availability import SourceAvailability
from errors import FormulaNotApplicable, NoSourceResolved
from query_planner import QueryPlanner, detect_aggregation
from source_catalog import get_catalog
from source_resolver import resolve_sources
from time_phrases import parse_time_range


TODAY = date(2026, 3, 15)


def plan_for(question):
    cat = get_catalog()
    tr = parse_time_range(question, TODAY)
    resolution = resolve_sources(question, TODAY, cat, tr)
    sources = SourceAvailability(cat).filter(resolution.sources, tr)
    planner = QueryPlanner(cat)
    plan = planner.build_plan(question, resolution, sources, tr)
    return plan, planner.render(plan, question)


def test_detect_aggregation():
    assert detect_aggregation("充电电量是多少") == ('sum', None, None)
    assert detect_aggregation("平均充电电量") == ('avg', None, None)
    assert detect_aggregation("单笔最高充电费用") == ('max', None, None)
    assert detect_aggregation("最低的一笔") == ('min', None, None)
    assert detect_aggregation("平均订单数") == ('count', None, None)
    assert detect_aggregation("哪一天充电电量最多") == ('groupTopN', 'date', 1)
    assert detect_aggregation("各终端充电量前5") == ('groupTopN', 'deviceId', 5)
    assert detect_aggregation("每月充电电量") == ('groupTopN', 'month', None)


def test_ranking_count_implies_grouping():
    assert detect_aggregation("2025年特来电充电电量最多的3天") == ('groupTopN', 'date', 3)
    assert detect_aggregation("2025年1月1日至1月31日充电量最多的3天") == ('groupTopN', 'date', 3)
    assert detect_aggregation("2025年特来电充电电量前5的终端") == ('groupTopN', 'deviceId', 5)
    assert detect_aggregation("特来电充电电量前3个月") == ('groupTopN', 'month', 3)
    assert detect_aggregation("充电枪充电量前5") == ('groupTopN', 'deviceId', 5)
    assert detect_aggregation("充电量前5") == ('groupTopN', 'date', 5)


def test_single_source_sum():
    plan, sql = plan_for("特来电2024年充电电量")
    assert plan.sources == ['特来电']
    assert plan.aggregation == 'sum'
    assert plan.metric_keyword == '充电电量'
    assert sql == (
        "SELECT COALESCE(SUM([充电电量(度)]), 0) AS [总计] FROM [特来电] "
        "WHERE [充电电量(度)] IS NOT NULL AND [充电电量(度)] > 0 "
        "AND [充电结束时间] >= '2024-01-01' AND [充电结束时间] < '2025-01-01'"
    )


def test_multi_source_sum_is_sum_of_sums():
    plan, sql = plan_for("2024年四方坪充电电量是多少")
    assert plan.sources == ['特来电', '能科']
    assert sql.startswith("SELECT COALESCE(SUM([总计]), 0) AS [总计] FROM (SELECT COALESCE(SUM(")
    assert sql.endswith(") AS combined")
    assert ' UNION ALL ' in sql
    assert 'JOIN' not in sql
    assert '[滴滴]' not in sql
    assert "NOT LIKE '%华为飞狐特来电高岭超充站%'" in sql


def test_count_metric():
    plan, sql = plan_for("特来电2024年订单数量")
    assert plan.aggregation == 'count'
    assert 'COUNT([订单编号]) AS [次数]' in sql


def test_grouped_ranking_across_sources():
    plan, sql = plan_for("2025年12月四方坪哪一天充电电量最多")
    assert plan.sources == ['特来电', '滴滴']
    assert (plan.group_dimension, plan.top_n, plan.descending) == ('date', 1, True)
    assert sql.startswith("SELECT TOP 1 [日期], COALESCE(SUM([总计]), 0) AS [总计] FROM (")
    assert sql.endswith("GROUP BY [日期] ORDER BY [总计] DESC")
    assert "CONVERT(VARCHAR(10), [充电完成时间], 120)" in sql


def test_top_days_ranking():
    plan, sql = plan_for("2025年特来电充电电量最多的3天")
    assert plan.sources == ['特来电']
    assert (plan.group_dimension, plan.top_n, plan.descending) == ('date', 3, True)
    assert sql.startswith("SELECT TOP 3 CONVERT(VARCHAR(10), [充电结束时间], 120) AS [日期], ")
    assert sql.endswith("ORDER BY [总计] DESC")


def test_top_terminals_ranking():
    plan, sql = plan_for("2025年特来电充电电量前5的终端")
    assert (plan.group_dimension, plan.top_n) == ('deviceId', 5)
    assert sql.startswith("SELECT TOP 5 ")
    assert "+ '|' +" in sql


def test_ascending_ranking():
    plan, _ = plan_for("特来电2025年哪个月充电电量最少")
    assert plan.descending is False
    assert plan.top_n == 1


def test_breakdown_without_ranking_orders_by_key():
    _, sql = plan_for("2025年特来电每月充电电量")
    assert sql.endswith("ORDER BY [月份] ASC")
    assert "CONVERT(VARCHAR(7), [充电结束时间], 120) AS [月份]" in sql


def test_device_key_is_composite():
    _, sql = plan_for("特来电2025年哪个终端充电电量最多")
    assert "CAST([电站名称] AS NVARCHAR(100)) + '|' + CAST([终端名称] AS NVARCHAR(100))" in sql


def test_plate_ranking():
    plan, sql = plan_for("特来电哪个车充电电量最多")
    assert plan.group_dimension == 'plate'
    assert "[判定车牌号] <> ''" in sql


def test_plate_ranking_needs_plate_column():
    with pytest.raises(FormulaNotApplicable):
        plan_for("能科哪个车充电电量最多")


def test_monthly_store_uses_composite_keys():
    _, sql = plan_for("2024年电力局每月电费")
    assert "([年份] * 100 + [月份]) BETWEEN 202401 AND 202412" in sql
    assert "GROUP BY CAST([年份] AS VARCHAR(4)) + '-' + RIGHT('0' + CAST([月份] AS VARCHAR(2)), 2)" in sql


def test_nothing_available_is_no_source():
    with pytest.raises(NoSourceResolved):
        plan_for("能科2025年充电电量")


def test_weekday_modifier_is_flagged_not_applied():
    plan, sql = plan_for("2025年特来电工作日充电电量")
    assert plan.metadata['weekday_filter_ignored'] is True
    assert 'DATEPART' not in sql
