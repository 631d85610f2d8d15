"""
Time phrase interpreter for Chinese business questions.

Policy (first match wins):
- Explicit ranges:
  * "YYYY-MM-DD 至/到/~ YYYY-MM-DD" => that inclusive range.
  * "YYYY年M月D日 至 [YYYY年][M月]D日" => that inclusive range; missing parts inherit from the start.
  * "YYYY年M月 至 [YYYY年]M月" => first day of the first month to last day of the end month.
- Literal dates: "YYYY年", "YYYY年M月", "YYYY年M月D日". A relative year word (今年/去年/前年)
  supplies the year when no literal year is present; a lone month uses the current year.
  Several distinct literal years without a month span min..max. A quarter next to a year
  narrows to that quarter.
- Relative words: 今天/今日, 昨天/昨日, 上个月/上月, 本月/这个月, 今年, 去年, 前年.
  Months and years are whole calendar periods.
- Quarters: "第N季度" / "QN" of the current year.
- Weeks: 本周/这周, 上周 (Monday -> Sunday).
- Rolling windows: 近/最近/过去 N 天|个月|年 ending today (inclusive).
- 工作日 / 周末 set weekday_only / weekend_only on the result; they do not change the dates.

Ranking counts (前N, 最多的N天) are extracted by `extract_top_n`, which strips date
literals first so that "2025年1月1日至1月31日" never reads as "top 31".
"""

from __future__ import annotations

import calendar
import re
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple

from ir_models import TimeRange


_CN_DIGITS = {'零': 0, '一': 1, '二': 2, '两': 2, '三': 3, '四': 4, '五': 5, '六': 6, '七': 7, '八': 8, '九': 9}
_NUM = r"(\d+|[零一二两三四五六七八九十百]+)"
_SEP = r"\s*(?:至|到|~|～|-{1,2}(?=\s*\d{4}[年-])|—)\s*"


def cn_to_int(token: str) -> Optional[int]:
    """Parse an Arabic or simple Chinese numeral (up to 999)."""
    token = (token or '').strip()
    if not token:
        return None
    if token.isdigit():
        return int(token)
    total = 0
    current = 0
    for ch in token:
        if ch in _CN_DIGITS:
            current = _CN_DIGITS[ch]
        elif ch == '十':
            total += (current or 1) * 10
            current = 0
        elif ch == '百':
            total += (current or 1) * 100
            current = 0
        else:
            return None
    return total + current


def _as_date(d: date | datetime) -> date:
    return d.date() if isinstance(d, datetime) else d


def _end_of_month(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _month_range(year: int, month: int) -> Tuple[date, date]:
    return date(year, month, 1), _end_of_month(year, month)


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    idx = year * 12 + (month - 1) + delta
    return idx // 12, idx % 12 + 1


def _quarter_start_end(year: int, quarter: int) -> Tuple[date, date]:
    start_month = (quarter - 1) * 3 + 1
    return date(year, start_month, 1), _end_of_month(year, start_month + 2)


def _week_range(today: date, weeks_back: int = 0) -> Tuple[date, date]:
    monday = today - timedelta(days=today.weekday()) - timedelta(weeks=weeks_back)
    return monday, monday + timedelta(days=6)


def _safe_date(y: int, m: int, d: int) -> Optional[date]:
    try:
        return date(y, m, d)
    except ValueError:
        return None


def _tr(start: date, end: date, granularity: str, label: str, policy_id: str, flags: Tuple[bool, bool]) -> TimeRange:
    if start > end:
        start, end = end, start
    return TimeRange(
        start=start,
        end=end,
        has_time=True,
        granularity=granularity,
        label=label,
        policy_id=policy_id,
        weekday_only=flags[0],
        weekend_only=flags[1],
    )


_ISO_RANGE_RE = re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2})" + _SEP + r"(\d{4})-(\d{1,2})-(\d{1,2})")
_CN_DAY_RANGE_RE = re.compile(
    r"(\d{4})年(\d{1,2})月(\d{1,2})[日号]" + _SEP + r"(?:(\d{4})年)?(?:(\d{1,2})月)?(\d{1,2})[日号]"
)
_CN_MONTH_RANGE_RE = re.compile(r"(\d{4})年(\d{1,2})月份?" + _SEP + r"(?:(\d{4})年)?(\d{1,2})月份?")

_YEAR_RE = re.compile(r"(?<!\d)(\d{4})\s*年")
_MONTH_RE = re.compile(r"(?<![\d近去前第])(\d{1,2})\s*月")
_DAY_RE = re.compile(r"(?<![\d近去前第])(\d{1,2})\s*[日号]")
_QUARTER_RE = re.compile(r"第\s*([1-4一二三四])\s*季度|(?<![A-Za-z])[Qq]([1-4])(?!\d)|(?<!第)([1-4一二三四])季度")
_ROLLING_RE = re.compile(r"(?:最近|近|过去)\s*" + _NUM + r"\s*(个月|天|日|周|年)")

_RELATIVE_YEARS = (('前年', -2), ('去年', -1), ('上一年', -1), ('今年', 0), ('本年', 0))


def _flags(text: str) -> Tuple[bool, bool]:
    return ('工作日' in text, '周末' in text)


def _relative_year(text: str, today: date) -> Optional[int]:
    for word, delta in _RELATIVE_YEARS:
        if word in text:
            return today.year + delta
    return None


def _quarter_in(text: str) -> Optional[int]:
    m = _QUARTER_RE.search(text)
    if not m:
        return None
    return cn_to_int(m.group(1) or m.group(2) or m.group(3))


def _explicit_range(text: str, flags: Tuple[bool, bool]) -> Optional[TimeRange]:
    m = _ISO_RANGE_RE.search(text)
    if m:
        start = _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        end = _safe_date(int(m.group(4)), int(m.group(5)), int(m.group(6)))
        if start and end:
            return _tr(start, end, 'range', f"{start}~{end}", 'explicit.iso_range', flags)

    m = _CN_DAY_RANGE_RE.search(text)
    if m:
        y1, m1, d1 = int(m.group(1)), int(m.group(2)), int(m.group(3))
        y2 = int(m.group(4)) if m.group(4) else y1
        m2 = int(m.group(5)) if m.group(5) else m1
        d2 = int(m.group(6))
        start, end = _safe_date(y1, m1, d1), _safe_date(y2, m2, d2)
        if start and end:
            return _tr(start, end, 'range', f"{start}~{end}", 'explicit.cn_day_range', flags)

    m = _CN_MONTH_RANGE_RE.search(text)
    if m:
        y1, m1 = int(m.group(1)), int(m.group(2))
        y2 = int(m.group(3)) if m.group(3) else y1
        m2 = int(m.group(4))
        if 1 <= m1 <= 12 and 1 <= m2 <= 12:
            start = date(y1, m1, 1)
            end = _end_of_month(y2, m2)
            return _tr(start, end, 'range', f"{y1}-{m1:02d}~{y2}-{m2:02d}", 'explicit.cn_month_range', flags)
    return None


def _literal_dates(text: str, today: date, flags: Tuple[bool, bool]) -> Optional[TimeRange]:
    years = [int(y) for y in _YEAR_RE.findall(text)]
    months = [int(mo) for mo in _MONTH_RE.findall(text) if 1 <= int(mo) <= 12]
    days = [int(d) for d in _DAY_RE.findall(text) if 1 <= int(d) <= 31]
    if not years and not months:
        return None

    distinct_years = sorted(set(years))
    if len(distinct_years) > 1 and not months:
        lo, hi = distinct_years[0], distinct_years[-1]
        return _tr(date(lo, 1, 1), date(hi, 12, 31), 'range', f"{lo}~{hi}", 'literal.year_span', flags)

    year = years[0] if years else (_relative_year(text, today) or today.year)
    quarter = _quarter_in(text)
    if quarter and not months:
        start, end = _quarter_start_end(year, quarter)
        return _tr(start, end, 'quarter', f"{year}Q{quarter}", 'literal.quarter', flags)
    if months:
        month = months[0]
        if days:
            d = _safe_date(year, month, days[0])
            if d:
                return _tr(d, d, 'day', d.isoformat(), 'literal.day', flags)
        start, end = _month_range(year, month)
        return _tr(start, end, 'month', f"{year}-{month:02d}", 'literal.month', flags)
    return _tr(date(year, 1, 1), date(year, 12, 31), 'year', str(year), 'literal.year', flags)


def _relative_words(text: str, today: date, flags: Tuple[bool, bool]) -> Optional[TimeRange]:
    if '今天' in text or '今日' in text:
        return _tr(today, today, 'day', today.isoformat(), 'relative.today', flags)
    if '昨天' in text or '昨日' in text:
        y = today - timedelta(days=1)
        return _tr(y, y, 'day', y.isoformat(), 'relative.yesterday', flags)
    if '上个月' in text or '上月' in text:
        yy, mm = _shift_month(today.year, today.month, -1)
        start, end = _month_range(yy, mm)
        return _tr(start, end, 'month', f"{yy}-{mm:02d}", 'relative.last_month', flags)
    if '本月' in text or '这个月' in text or '当月' in text:
        start, end = _month_range(today.year, today.month)
        return _tr(start, end, 'month', f"{today.year}-{today.month:02d}", 'relative.this_month', flags)
    year = _relative_year(text, today)
    if year is not None:
        quarter = _quarter_in(text)
        if quarter:
            start, end = _quarter_start_end(year, quarter)
            return _tr(start, end, 'quarter', f"{year}Q{quarter}", 'relative.year_quarter', flags)
        return _tr(date(year, 1, 1), date(year, 12, 31), 'year', str(year), 'relative.year', flags)
    return None


def _rolling(text: str, today: date, flags: Tuple[bool, bool]) -> Optional[TimeRange]:
    m = _ROLLING_RE.search(text)
    if not m:
        return None
    n = cn_to_int(m.group(1))
    if not n:
        return None
    unit = m.group(2)
    if unit in ('天', '日'):
        start = today - timedelta(days=n)
        return _tr(start, today, 'range', f"近{n}天", 'rolling.days', flags)
    if unit == '周':
        start = today - timedelta(weeks=n)
        return _tr(start, today, 'range', f"近{n}周", 'rolling.weeks', flags)
    if unit == '个月':
        yy, mm = _shift_month(today.year, today.month, -n)
        start = date(yy, mm, 1)
        return _tr(start, today, 'range', f"近{n}个月", 'rolling.months', flags)
    start = _safe_date(today.year - n, today.month, today.day) or date(today.year - n, today.month, 28)
    return _tr(start, today, 'range', f"近{n}年", 'rolling.years', flags)


def parse_time_range(text: str, today: Optional[date | datetime] = None) -> TimeRange:
    """Parse the period a question refers to; returns an unbounded range when none is named."""
    tz = _as_date(today) if today else date.today()
    s = (text or '').strip()
    flags = _flags(s)

    res = _explicit_range(s, flags)
    if res:
        return res
    res = _literal_dates(s, tz, flags)
    if res:
        return res
    res = _relative_words(s, tz, flags)
    if res:
        return res

    quarter = _quarter_in(s)
    if quarter:
        start, end = _quarter_start_end(tz.year, quarter)
        return _tr(start, end, 'quarter', f"{tz.year}Q{quarter}", 'calendar.quarter', flags)

    if '本周' in s or '这周' in s or '这个星期' in s:
        start, end = _week_range(tz)
        return _tr(start, end, 'week', '本周', 'calendar.this_week', flags)
    if '上周' in s or '上个星期' in s:
        start, end = _week_range(tz, 1)
        return _tr(start, end, 'week', '上周', 'calendar.last_week', flags)

    res = _rolling(s, tz, flags)
    if res:
        return res
    return TimeRange.unbounded(*flags)


# Periods named in comparison questions, in order of appearance.
_PERIOD_TOKEN_RE = re.compile(
    r"(\d{4})\s*年(?:\s*(\d{1,2})\s*月)?"
    r"|(?<![\d近去前第])(\d{1,2})\s*月"
    r"|(今年|去年|前年|本月|这个月|上个月|上月|本周|这周|上周|今天|昨天)"
)


def extract_periods(text: str, today: Optional[date | datetime] = None) -> List[TimeRange]:
    """Every distinct period mentioned in the text, in order of appearance.

    A bare month inherits the year of the previous period token ("2025年3月对比2月").
    """
    tz = _as_date(today) if today else date.today()
    s = text or ''
    flags = _flags(s)
    periods: List[TimeRange] = []
    last_year: Optional[int] = None
    for m in _PERIOD_TOKEN_RE.finditer(s):
        tr: Optional[TimeRange] = None
        if m.group(1):
            year = int(m.group(1))
            last_year = year
            month = int(m.group(2)) if m.group(2) else None
            if month and 1 <= month <= 12:
                start, end = _month_range(year, month)
                tr = _tr(start, end, 'month', f"{year}-{month:02d}", 'period.month', flags)
            else:
                tr = _tr(date(year, 1, 1), date(year, 12, 31), 'year', str(year), 'period.year', flags)
        elif m.group(3):
            month = int(m.group(3))
            if 1 <= month <= 12:
                year = last_year or tz.year
                start, end = _month_range(year, month)
                tr = _tr(start, end, 'month', f"{year}-{month:02d}", 'period.month', flags)
        else:
            tr = _relative_words(m.group(4), tz, flags) or parse_time_range(m.group(4), tz)
            if tr.has_time and tr.granularity == 'year':
                last_year = tr.start.year
        if tr is not None and tr.has_time and all((p.start, p.end) != (tr.start, tr.end) for p in periods):
            periods.append(tr)
    return periods


def previous_period(tr: TimeRange) -> TimeRange:
    """The adjacent preceding period of the same length (环比)."""
    if not tr.has_time:
        return tr
    flags = (tr.weekday_only, tr.weekend_only)
    if tr.granularity == 'year':
        y = tr.start.year - 1
        return _tr(date(y, 1, 1), date(y, 12, 31), 'year', str(y), 'derived.previous_year', flags)
    if tr.granularity == 'quarter':
        yy, mm = _shift_month(tr.start.year, tr.start.month, -3)
        start, end = _quarter_start_end(yy, (mm - 1) // 3 + 1)
        return _tr(start, end, 'quarter', f"{yy}Q{(mm - 1) // 3 + 1}", 'derived.previous_quarter', flags)
    if tr.granularity == 'month':
        yy, mm = _shift_month(tr.start.year, tr.start.month, -1)
        start, end = _month_range(yy, mm)
        return _tr(start, end, 'month', f"{yy}-{mm:02d}", 'derived.previous_month', flags)
    if tr.is_whole_month():
        n = tr.month_count()
        yy, mm = _shift_month(tr.start.year, tr.start.month, -n)
        start = date(yy, mm, 1)
        end = tr.start - timedelta(days=1)
        return _tr(start, end, 'range', f"{start}~{end}", 'derived.previous_months', flags)
    span = (tr.end - tr.start).days + 1
    end = tr.start - timedelta(days=1)
    start = end - timedelta(days=span - 1)
    return _tr(start, end, tr.granularity or 'range', f"{start}~{end}", 'derived.previous_span', flags)


def same_period_last_year(tr: TimeRange) -> TimeRange:
    """The same calendar period one year earlier (同比)."""
    if not tr.has_time:
        return tr
    flags = (tr.weekday_only, tr.weekend_only)

    def back(d: date, is_end: bool) -> date:
        shifted = _safe_date(d.year - 1, d.month, d.day)
        if shifted:
            return shifted
        # 29 Feb
        return _end_of_month(d.year - 1, d.month) if is_end else date(d.year - 1, d.month, 28)

    start, end = back(tr.start, False), back(tr.end, True)
    if tr.is_whole_month():
        end = _end_of_month(end.year, end.month)
    return _tr(start, end, tr.granularity or 'range', f"{start}~{end}", 'derived.same_period_last_year', flags)


_TOP_PREFIX_RE = re.compile(r"(?:前|[Tt][Oo][Pp]\s*)" + _NUM + r"(?!\s*年)")
_TOP_SUFFIX_RE = re.compile(
    r"(?:最多|最少|最高|最低|最大|最小)的?\s*" + _NUM + r"\s*(?:天|日|个月|月|年|把|个|名|辆|位|台|条)"
)
_TOP_UNIT_RE = re.compile(r"\s*(?:的|个|名|位)?\s*(个月|天|日|月|年|终端|把枪|枪|桩|台|车牌|辆车|辆|车)")


def _strip_dates(text: str) -> str:
    s = _ISO_RANGE_RE.sub(' ', text)
    s = _CN_DAY_RANGE_RE.sub(' ', s)
    s = _CN_MONTH_RANGE_RE.sub(' ', s)
    s = re.sub(r"\d{4}-\d{1,2}-\d{1,2}", ' ', s)
    s = re.sub(r"\d{4}\s*年", ' ', s)
    s = re.sub(r"(?<![前近])\d{1,2}\s*月份?", ' ', s)
    s = re.sub(r"(?<![前近])\d{1,2}\s*[日号]", ' ', s)
    s = _ROLLING_RE.sub(' ', s)
    return s


def extract_top_n(text: str) -> Optional[int]:
    """Ranking count such as 前5 / top 3 / 最多的3天; None when the question asks for no count."""
    s = _strip_dates(text or '')
    for pattern in (_TOP_PREFIX_RE, _TOP_SUFFIX_RE):
        m = pattern.search(s)
        if m:
            n = cn_to_int(m.group(1))
            if n:
                return n
    return None


def extract_top_n_unit(text: str) -> Optional[str]:
    """Unit word right after the ranking count: 天 in 最多的3天, 终端 in 前5的终端."""
    s = _strip_dates(text or '')
    for pattern in (_TOP_PREFIX_RE, _TOP_SUFFIX_RE):
        m = pattern.search(s)
        if m and cn_to_int(m.group(1)):
            unit = _TOP_UNIT_RE.match(s, m.end(1))
            return unit.group(1) if unit else None
    return None
