from __future__ import annotations

import calendar
from datetime import date, timedelta
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


Granularity = Literal['day', 'week', 'month', 'quarter', 'year', 'range']
Aggregation = Literal['sum', 'avg', 'max', 'min', 'count', 'groupTopN']
GroupDimension = Literal['date', 'month', 'year', 'deviceId', 'plate']


class TimeRange(BaseModel):
    """Inclusive calendar-date range parsed from a question.

    `has_time` is False when the question names no period; start/end are then None
    and no time predicate is emitted.
    """

    model_config = ConfigDict(frozen=True)

    start: Optional[date] = None
    end: Optional[date] = None
    has_time: bool = False
    granularity: Optional[Granularity] = None
    label: Optional[str] = None
    policy_id: str = 'none'
    weekday_only: bool = False
    weekend_only: bool = False

    @model_validator(mode='after')
    def _check(self) -> 'TimeRange':
        if self.has_time:
            if self.start is None or self.end is None:
                raise ValueError('time range with has_time needs start and end')
            if self.start > self.end:
                raise ValueError(f"time range start {self.start} is after end {self.end}")
        return self

    @classmethod
    def unbounded(cls, weekday_only: bool = False, weekend_only: bool = False) -> 'TimeRange':
        return cls(weekday_only=weekday_only, weekend_only=weekend_only)

    @property
    def end_exclusive(self) -> Optional[date]:
        return self.end + timedelta(days=1) if self.end else None

    def year_month_bounds(self) -> Optional[Tuple[int, int]]:
        """(start, end) as YYYYMM integers, for stores keyed by year and month columns."""
        if not self.has_time:
            return None
        return self.start.year * 100 + self.start.month, self.end.year * 100 + self.end.month

    def day_count(self, clamp_to: Optional[date] = None) -> Optional[int]:
        """Days in the range, inclusive. With clamp_to, days after that date are not counted."""
        if not self.has_time:
            return None
        end = self.end
        if clamp_to is not None and clamp_to < end:
            end = clamp_to
        if end < self.start:
            return 0
        return (end - self.start).days + 1

    def month_count(self, clamp_to: Optional[date] = None) -> Optional[int]:
        if not self.has_time:
            return None
        end = self.end
        if clamp_to is not None and clamp_to < end:
            end = clamp_to
        if end < self.start:
            return 0
        return (end.year - self.start.year) * 12 + (end.month - self.start.month) + 1

    def year_count(self, clamp_to: Optional[date] = None) -> Optional[int]:
        if not self.has_time:
            return None
        end = self.end
        if clamp_to is not None and clamp_to < end:
            end = clamp_to
        if end < self.start:
            return 0
        return end.year - self.start.year + 1

    def is_whole_month(self) -> bool:
        if not self.has_time:
            return False
        last = calendar.monthrange(self.end.year, self.end.month)[1]
        return self.start.day == 1 and self.end.day == last


class FormulaId(str, Enum):
    PER_UNIT_AVERAGE = 'per_unit_average'
    PER_KWH_AVERAGE = 'per_kwh_average'
    GROSS_MARGIN_RATE = 'gross_margin_rate'
    GROSS_MARGIN = 'gross_margin'
    LOSS_RATE = 'loss_rate'
    ENERGY_LOSS = 'energy_loss'
    EFFICIENCY = 'efficiency'
    GROWTH_RATE = 'growth_rate'
    PERIOD_COMPARISON = 'period_comparison'
    MONTHLY_AVERAGE = 'monthly_average'
    DAILY_AVERAGE = 'daily_average'
    AVERAGE_ORDER_VALUE = 'average_order_value'


class ResolvedPlan(BaseModel):
    sources: List[str] = Field(default_factory=list)
    metric_keyword: Optional[str] = None
    aggregation: Aggregation = 'sum'
    group_dimension: Optional[GroupDimension] = None
    top_n: Optional[int] = None
    descending: bool = True
    time_range: TimeRange = Field(default_factory=TimeRange)
    site: Optional[str] = None
    formula: Optional[FormulaId] = None
    formula_params: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='after')
    def _normalize(self) -> 'ResolvedPlan':
        if self.top_n is not None and self.top_n <= 0:
            raise ValueError('top_n must be > 0')
        if self.aggregation == 'groupTopN' and not self.group_dimension:
            raise ValueError('groupTopN needs a group dimension')
        return self

    def summary(self) -> Dict[str, Any]:
        """Compact dict for log lines."""
        tr = self.time_range
        return {
            'sources': list(self.sources),
            'metric': self.metric_keyword,
            'aggregation': self.aggregation,
            'group': self.group_dimension,
            'top_n': self.top_n,
            'time': [tr.start.isoformat(), tr.end.isoformat()] if tr.has_time else None,
            'site': self.site,
            'formula': self.formula.value if self.formula else None,
        }
