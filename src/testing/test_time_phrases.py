from datetime import date

from time_phrases import (
    cn_to_int,
    extract_periods,
    extract_top_n,
    extract_top_n_unit,
    parse_time_range,
    previous_period,
    same_period_last_year,
)


TODAY = date(2026, 3, 15)  # a Sunday


def test_iso_range_takes_priority_over_other_tokens():
    tr = parse_time_range("2025-01-01 至 2025-01-31 期间2024年的充电量", TODAY)
    assert tr.start == date(2025, 1, 1)
    assert tr.end == date(2025, 1, 31)
    assert tr.policy_id == 'explicit.iso_range'
    assert tr.day_count() == 31
    assert tr.month_count() == 1


def test_chinese_day_range_inherits_year_and_month():
    tr = parse_time_range("2025年1月5日到20日的洗车收入", TODAY)
    assert tr.start == date(2025, 1, 5)
    assert tr.end == date(2025, 1, 20)
    assert tr.granularity == 'range'


def test_chinese_month_range():
    tr = parse_time_range("2024年11月至2025年2月充电电量", TODAY)
    assert tr.start == date(2024, 11, 1)
    assert tr.end == date(2025, 2, 28)


def test_year_month_day_literals():
    assert parse_time_range("2024年收入", TODAY).end == date(2024, 12, 31)
    month = parse_time_range("2024年2月收入", TODAY)
    assert (month.start, month.end, month.granularity) == (date(2024, 2, 1), date(2024, 2, 29), 'month')
    day = parse_time_range("2024年3月5日收入", TODAY)
    assert day.start == day.end == date(2024, 3, 5)


def test_lone_month_uses_current_year_and_relative_year_word():
    assert parse_time_range("3月充电量", TODAY).start == date(2026, 3, 1)
    tr = parse_time_range("去年5月充电量", TODAY)
    assert tr.start == date(2025, 5, 1)
    assert tr.end == date(2025, 5, 31)


def test_several_years_span():
    tr = parse_time_range("2023年和2024年的电费", TODAY)
    assert tr.start == date(2023, 1, 1)
    assert tr.end == date(2024, 12, 31)


def test_relative_words():
    assert parse_time_range("去年", TODAY).start == date(2025, 1, 1)
    assert parse_time_range("前年", TODAY).end == date(2024, 12, 31)
    last_month = parse_time_range("上个月收入", TODAY)
    assert (last_month.start, last_month.end) == (date(2026, 2, 1), date(2026, 2, 28))
    this_month = parse_time_range("本月收入", TODAY)
    assert (this_month.start, this_month.end) == (date(2026, 3, 1), date(2026, 3, 31))
    assert parse_time_range("今天的订单数", TODAY).start == TODAY


def test_quarters():
    tr = parse_time_range("2024年第二季度充电量", TODAY)
    assert (tr.start, tr.end) == (date(2024, 4, 1), date(2024, 6, 30))
    q = parse_time_range("Q4收入", TODAY)
    assert (q.start, q.end) == (date(2026, 10, 1), date(2026, 12, 31))
    ly = parse_time_range("去年第一季度收入", TODAY)
    assert (ly.start, ly.end) == (date(2025, 1, 1), date(2025, 3, 31))


def test_weeks_start_on_monday():
    tr = parse_time_range("本周收入", TODAY)
    assert (tr.start, tr.end) == (date(2026, 3, 9), date(2026, 3, 15))
    last = parse_time_range("上周收入", TODAY)
    assert (last.start, last.end) == (date(2026, 3, 2), date(2026, 3, 8))


def test_rolling_windows():
    days = parse_time_range("近7天充电量", TODAY)
    assert (days.start, days.end) == (date(2026, 3, 8), TODAY)
    months = parse_time_range("最近三个月充电量", TODAY)
    assert months.start == date(2025, 12, 1)
    years = parse_time_range("过去1年充电量", TODAY)
    assert years.start == date(2025, 3, 15)


def test_no_time_is_unbounded():
    tr = parse_time_range("特来电充电量", TODAY)
    assert tr.has_time is False
    assert tr.start is None and tr.end is None
    assert tr.year_month_bounds() is None


def test_weekday_flags_do_not_narrow_dates():
    tr = parse_time_range("2025年3月工作日充电量", TODAY)
    assert tr.weekday_only is True
    assert (tr.start, tr.end) == (date(2025, 3, 1), date(2025, 3, 31))
    assert parse_time_range("周末充电量", TODAY).weekend_only is True


def test_top_n_ignores_day_tokens():
    assert extract_top_n("2025年1月1日至1月31日每天充电量") is None
    assert extract_top_n("2025年1月1日至1月31日充电量最多的3天") == 3
    assert extract_top_n("充电量前5的终端") == 5
    assert extract_top_n("top 3 车牌") == 3
    assert extract_top_n("前年充电量") is None


def test_top_n_unit_word():
    assert extract_top_n_unit("2025年1月1日至1月31日充电量最多的3天") == '天'
    assert extract_top_n_unit("充电量前5的终端") == '终端'
    assert extract_top_n_unit("top 3 车牌") == '车牌'
    assert extract_top_n_unit("前3个月充电量") == '月'
    assert extract_top_n_unit("充电量前5") is None
    assert extract_top_n_unit("充电量是多少") is None


def test_extract_periods_in_order():
    periods = extract_periods("2025年对比2024年四方坪充电电量", TODAY)
    assert [p.start.year for p in periods] == [2025, 2024]
    months = extract_periods("2025年3月对比2月收入", TODAY)
    assert [(p.start.year, p.start.month) for p in months] == [(2025, 3), (2025, 2)]


def test_derived_periods():
    march = parse_time_range("2025年3月", TODAY)
    feb = previous_period(march)
    assert (feb.start, feb.end) == (date(2025, 2, 1), date(2025, 2, 28))
    leap_feb = parse_time_range("2024年2月", TODAY)
    prior = same_period_last_year(leap_feb)
    assert (prior.start, prior.end) == (date(2023, 2, 1), date(2023, 2, 28))
    q = previous_period(parse_time_range("2025年第一季度", TODAY))
    assert (q.start, q.end) == (date(2024, 10, 1), date(2024, 12, 31))


def test_cn_to_int():
    assert cn_to_int('十二') == 12
    assert cn_to_int('三十') == 30
    assert cn_to_int('两') == 2
    assert cn_to_int('7') == 7
    assert cn_to_int('几') is None
