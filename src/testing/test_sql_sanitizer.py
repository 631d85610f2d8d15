import pytest

from errors import StoreExecutionFailed
from sql_sanitizer import (
    EmptyConvertArgumentRule,
    QuerySanitizer,
    ReadOnlyRule,
    SanitizeContext,
    SingleSelectRule,
    StrayTimeColumnRule,
    TableSuffixRule,
    TimeFunctionPredicateRule,
)
from source_catalog import get_catalog


def ctx(question=''):
    return SanitizeContext(question=question, catalog=get_catalog())


def test_fenced_reply_is_unwrapped():
    out = QuerySanitizer().sanitize("```sql\nSELECT SUM([交易金额]) FROM [红门缴费];\n```")
    assert out == "SELECT SUM([交易金额]) FROM [红门缴费]"


def test_only_the_first_select_survives():
    rule = SingleSelectRule()
    assert rule.apply("DROP TABLE [特来电]; SELECT 1; SELECT 2", ctx()) == "SELECT 1"
    with pytest.raises(StoreExecutionFailed) as exc:
        rule.apply("DELETE FROM [特来电]", ctx())
    assert exc.value.details['stage'] == 'sanitize'


@pytest.mark.parametrize("sql", [
    "SELECT SUM([充电电量(度)]) AS [总计] FROM [特来电] DROP TABLE [特来电]",
    "SELECT * INTO [备份] FROM [特来电]",
    "SELECT [订单编号] FROM [特来电] DELETE FROM [特来电]",
])
def test_writes_are_rejected_even_inside_one_statement(sql):
    with pytest.raises(StoreExecutionFailed) as exc:
        QuerySanitizer().sanitize(sql)
    assert exc.value.details['stage'] == 'sanitize'
    assert exc.value.message.startswith('generated SQL contains forbidden keyword')


def test_read_only_rule_keeps_plain_selects():
    sql = "SELECT COUNT(*) AS [次数] FROM [特来电] WHERE [终端名称] = 'DROP'"
    assert ReadOnlyRule().apply(sql, ctx()) == sql


def test_table_suffix_removed_for_catalog_tables():
    rule = TableSuffixRule()
    assert rule.apply("SELECT SUM([交易金额]) FROM [红门缴费表]", ctx()) == "SELECT SUM([交易金额]) FROM [红门缴费]"
    assert rule.apply("SELECT COUNT(*) FROM 特来电表 WHERE 1 = 1", ctx()) == "SELECT COUNT(*) FROM [特来电] WHERE 1 = 1"
    assert rule.apply("SELECT * FROM [明细表]", ctx()) == "SELECT * FROM [明细表]"


def test_empty_convert_argument_gets_time_column():
    sql = ("SELECT CONVERT(VARCHAR(7), , 120) AS [月份], SUM([交易金额]) AS [总计] FROM [红门缴费] "
           "GROUP BY CONVERT(VARCHAR(7), , 120)")
    out = EmptyConvertArgumentRule().apply(sql, ctx())
    assert out.count("CONVERT(VARCHAR(7), [缴费时间], 120)") == 2


def test_stray_time_column_is_dropped():
    sql = ("SELECT [充电结束时间], SUM([充电电量(度)]) AS [总计] FROM [特来电] "
           "WHERE [充电结束时间] >= '2024-01-01'")
    out = StrayTimeColumnRule().apply(sql, ctx("特来电2024年充电电量"))
    assert out == "SELECT SUM([充电电量(度)]) AS [总计] FROM [特来电] WHERE [充电结束时间] >= '2024-01-01'"


def test_stray_time_column_becomes_month_key_for_monthly_questions():
    sql = "SELECT [充电结束时间], SUM([充电电量(度)]) AS [总计] FROM [特来电]"
    out = StrayTimeColumnRule().apply(sql, ctx("特来电2024年每月充电电量"))
    key = ("CAST(YEAR([充电结束时间]) AS VARCHAR(4)) + '-' + "
           "RIGHT('0' + CAST(MONTH([充电结束时间]) AS VARCHAR(2)), 2)")
    assert out.startswith(f"SELECT {key} AS [月份], SUM(")
    assert out.endswith(f"GROUP BY {key}")


def test_grouped_or_aggregate_free_selects_are_left_alone():
    rule = StrayTimeColumnRule()
    grouped = "SELECT [充电结束时间], SUM([充电电量(度)]) FROM [特来电] GROUP BY [充电结束时间]"
    assert rule.apply(grouped, ctx()) == grouped
    plain = "SELECT [充电结束时间], [充电电量(度)] FROM [特来电]"
    assert rule.apply(plain, ctx()) == plain


@pytest.mark.parametrize('where, expected', [
    ("YEAR([缴费时间]) = 2024 AND MONTH([缴费时间]) = 3",
     "[缴费时间] >= '2024-03-01' AND [缴费时间] < '2024-04-01'"),
    ("MONTH([缴费时间]) = 12 AND YEAR([缴费时间]) = 2024",
     "[缴费时间] >= '2024-12-01' AND [缴费时间] < '2025-01-01'"),
    ("YEAR([缴费时间]) BETWEEN 2023 AND 2024",
     "[缴费时间] >= '2023-01-01' AND [缴费时间] < '2025-01-01'"),
    ("YEAR([缴费时间]) IN (2023, 2024)",
     "[缴费时间] >= '2023-01-01' AND [缴费时间] < '2025-01-01'"),
    ("YEAR([缴费时间]) = 2024",
     "[缴费时间] >= '2024-01-01' AND [缴费时间] < '2025-01-01'"),
    ("CAST([缴费时间] AS DATE) = '2024-02-29'",
     "[缴费时间] >= '2024-02-29' AND [缴费时间] < '2024-03-01'"),
])
def test_time_functions_in_where_become_ranges(where, expected):
    sql = f"SELECT SUM([交易金额]) FROM [红门缴费] WHERE {where}"
    out = TimeFunctionPredicateRule().apply(sql, ctx())
    assert out == f"SELECT SUM([交易金额]) FROM [红门缴费] WHERE {expected}"


def test_non_consecutive_years_are_kept():
    sql = "SELECT SUM([交易金额]) FROM [红门缴费] WHERE YEAR([缴费时间]) IN (2022, 2024)"
    assert TimeFunctionPredicateRule().apply(sql, ctx()) == sql


def test_time_functions_outside_where_are_kept():
    sql = ("SELECT YEAR([缴费时间]) AS [年], SUM([交易金额]) AS [总计] FROM [红门缴费] "
           "WHERE YEAR([缴费时间]) = 2024 GROUP BY YEAR([缴费时间])")
    out = TimeFunctionPredicateRule().apply(sql, ctx())
    assert out.startswith("SELECT YEAR([缴费时间]) AS [年]")
    assert "[缴费时间] >= '2024-01-01' AND [缴费时间] < '2025-01-01'" in out
    assert out.endswith("GROUP BY YEAR([缴费时间])")


def test_rule_built_sql_passes_unchanged():
    sql = ("SELECT COALESCE(SUM([充电电量(度)]), 0) AS [总计] FROM [特来电] "
           "WHERE [充电电量(度)] IS NOT NULL AND [充电电量(度)] > 0 "
           "AND [充电结束时间] >= '2024-01-01' AND [充电结束时间] < '2025-01-01'")
    assert QuerySanitizer().sanitize(sql, "特来电2024年充电电量") == sql


def test_empty_input_is_an_error():
    with pytest.raises(StoreExecutionFailed):
        QuerySanitizer().sanitize("   ")
