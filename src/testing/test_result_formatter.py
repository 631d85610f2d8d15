from decimal import Decimal

from result_formatter import FRIENDLY_ERRORS, NO_DATA_MESSAGE, format_rows, format_value, friendly_error


def test_empty_and_null_results_are_no_data():
    assert format_rows([]) == NO_DATA_MESSAGE
    assert format_rows([{'总计': None}]) == NO_DATA_MESSAGE


def test_single_value():
    assert format_rows([{'总计': 1234.5}]) == '总计: 1234.50'
    assert format_rows([{'次数': 42}]) == '次数: 42'
    assert format_rows([{'总计': Decimal('3.456')}]) == '总计: 3.46'


def test_calendar_columns_have_no_decimals():
    assert format_value('年份', 2024.0) == '2024'
    assert format_value('月份', 3.0) == '3'
    assert format_value('总计', 3.0) == '3.00'
    assert format_value('日期', None) == '无'


def test_table_is_truncated():
    rows = [{'日期': f"2025-12-{d:02d}", '总计': float(d)} for d in range(1, 26)]
    text = format_rows(rows, max_rows=20)
    lines = text.split('\n')
    assert lines[0] == '日期 | 总计'
    assert lines[1] == '--- | ---'
    assert lines[2] == '2025-12-01 | 1.00'
    assert len(lines) == 23
    assert lines[-1] == '... 还有 5 条记录'


def test_friendly_errors():
    assert friendly_error('no_source_resolved').startswith('没有找到')
    assert friendly_error('store_execution_failed', 'timeout') == FRIENDLY_ERRORS['store_execution_failed'] + '（timeout）'
    assert friendly_error('made_up') == FRIENDLY_ERRORS['unknown_error']
