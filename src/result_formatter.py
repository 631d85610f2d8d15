"""
Render query rows and errors as short Chinese text answers.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

NO_DATA_MESSAGE = '未找到相关数据。'

# Columns that hold calendar parts and must not be shown with decimals
INTEGER_COLUMNS = ('年份', '月份', '年', '月', 'year', 'month')

FRIENDLY_ERRORS: Dict[str, str] = {
    'no_source_resolved': (
        '没有找到与问题相关的数据表。请在问题中写明业务或数据来源，例如：'
        '“2024年四方坪充电电量是多少”、“上个月车颜知己洗车收入”、“今年红门缴费总额”。'
    ),
    'no_field_resolved': (
        '已找到数据表，但没有识别出要统计的指标。请写明指标，例如：'
        '“充电电量”、“服务费”、“充电费用”、“订单数量”。'
    ),
    'store_execution_failed': '查询执行失败，请稍后重试或换一种问法。',
    'model_unavailable': '智能查询服务暂时不可用，请稍后重试。',
    'unknown_error': '处理问题时发生未知错误，请稍后重试。',
}


def format_value(key: str, value: Any) -> str:
    if value is None:
        return '无'
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (int, float, Decimal)):
        if key in INTEGER_COLUMNS:
            return str(int(value))
        if isinstance(value, int):
            return str(value)
        return f"{float(value):.2f}"
    return str(value)


def format_rows(rows: List[Dict[str, Any]], max_rows: int = 20) -> str:
    """Empty -> no-data message; one cell -> "key: value"; otherwise a pipe table."""
    if not rows:
        return NO_DATA_MESSAGE
    if len(rows) == 1 and len(rows[0]) == 1:
        key, value = next(iter(rows[0].items()))
        if value is None:
            return NO_DATA_MESSAGE
        return f"{key}: {format_value(key, value)}"

    columns = list(rows[0].keys())
    lines = [' | '.join(columns), ' | '.join('---' for _ in columns)]
    for row in rows[:max_rows]:
        lines.append(' | '.join(format_value(c, row.get(c)) for c in columns))
    if len(rows) > max_rows:
        lines.append(f"... 还有 {len(rows) - max_rows} 条记录")
    return '\n'.join(lines)


def friendly_error(code: str, detail: Optional[str] = None) -> str:
    """User-facing message for an error code; store errors keep the engine detail."""
    message = FRIENDLY_ERRORS.get(code, FRIENDLY_ERRORS['unknown_error'])
    if code == 'store_execution_failed' and detail:
        return f"{message}（{detail}）"
    return message
