"""
Source availability by time range.

Some sources only carry data for part of the calendar (a retired vendor, a vendor
that started later). A source is available for a question when its validity window
overlaps the question's year-month range; questions without a time range keep
every source.

Windows come from the catalog. Optionally they are refreshed from the store
(MIN/MAX of each bounded source's time column) and cached with a TTL.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from catalog_models import SourceDefinition, YearMonth
from errors import StoreExecutionFailed
from ir_models import TimeRange
from source_catalog import SourceCatalog, get_catalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidityWindow:
    valid_from: Optional[YearMonth] = None
    valid_until: Optional[YearMonth] = None

    def overlaps(self, time_range: TimeRange) -> bool:
        bounds = time_range.year_month_bounds()
        if bounds is None:
            return True
        start_key, end_key = bounds
        if self.valid_until is not None and start_key > self.valid_until.key():
            return False
        if self.valid_from is not None and end_key < self.valid_from.key():
            return False
        return True

    @property
    def bounded(self) -> bool:
        return self.valid_from is not None or self.valid_until is not None


WindowLoader = Callable[[], Dict[str, ValidityWindow]]


def static_window_loader(catalog: SourceCatalog) -> WindowLoader:
    def load() -> Dict[str, ValidityWindow]:
        return {
            s.id: ValidityWindow(s.valid_from, s.valid_until)
            for s in catalog.sources()
            if s.valid_from or s.valid_until
        }
    return load


def _to_year_month(value) -> Optional[YearMonth]:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return YearMonth(year=value.year, month=value.month)
    if isinstance(value, (int, float)):
        key = int(value)
        return YearMonth(year=key // 100, month=key % 100)
    text = str(value).strip()
    if len(text) >= 7 and text[4] in '-/':
        return YearMonth(year=int(text[:4]), month=int(text[5:7]))
    return None


def _bounds_sql(source: SourceDefinition) -> str:
    if source.time_fields is not None:
        key = f"([{source.time_fields.year_field}] * 100 + [{source.time_fields.month_field}])"
        return f"SELECT MIN({key}) AS [最早], MAX({key}) AS [最晚] FROM [{source.id}]"
    col = f"[{source.time_field}]"
    return f"SELECT MIN({col}) AS [最早], MAX({col}) AS [最晚] FROM [{source.id}] WHERE {col} IS NOT NULL"


def store_window_loader(adapter, catalog: SourceCatalog) -> WindowLoader:
    """Derive windows of the catalog's bounded sources from the data actually stored.

    A source whose bounds query fails keeps its catalog window.
    """
    static = static_window_loader(catalog)

    def load() -> Dict[str, ValidityWindow]:
        windows = static()
        for source_id, fallback in list(windows.items()):
            source = catalog.get(source_id)
            try:
                rows = adapter.execute_query(_bounds_sql(source))
            except StoreExecutionFailed as e:
                logger.warning(f"Validity bounds query failed for {source_id}; using catalog window: {e}")
                continue
            if not rows:
                continue
            lo, hi = rows[0].get('最早'), rows[0].get('最晚')
            if lo is None and hi is None:
                continue
            windows[source_id] = ValidityWindow(
                _to_year_month(lo) if fallback.valid_from else None,
                _to_year_month(hi) if fallback.valid_until else None,
            )
            logger.debug(f"Validity window for {source_id}: {windows[source_id]}")
        return windows
    return load


class ValidityWindowCache:
    """TTL cache around a window loader. The clock is injectable for tests."""

    def __init__(self, loader: WindowLoader, ttl_seconds: float = 3600, clock: Callable[[], float] = time.monotonic):
        self._loader = loader
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Optional[Dict[str, ValidityWindow]] = None
        self._loaded_at = 0.0

    def get(self) -> Dict[str, ValidityWindow]:
        with self._lock:
            now = self._clock()
            if self._windows is None or now - self._loaded_at >= self._ttl:
                self._windows = self._loader()
                self._loaded_at = now
            return self._windows

    def invalidate(self) -> None:
        with self._lock:
            self._windows = None


class SourceAvailability:
    def __init__(self, catalog: Optional[SourceCatalog] = None, cache: Optional[ValidityWindowCache] = None):
        self.catalog = catalog or get_catalog()
        self.cache = cache or ValidityWindowCache(static_window_loader(self.catalog), ttl_seconds=float('inf'))

    def window(self, source_id: str) -> ValidityWindow:
        return self.cache.get().get(source_id, ValidityWindow())

    def is_available(self, source_id: str, time_range: TimeRange) -> bool:
        return self.window(source_id).overlaps(time_range)

    def filter(self, sources: Iterable[str], time_range: TimeRange) -> List[str]:
        kept: List[str] = []
        dropped: List[Tuple[str, ValidityWindow]] = []
        for sid in sources:
            if self.is_available(sid, time_range):
                kept.append(sid)
            else:
                dropped.append((sid, self.window(sid)))
        if dropped:
            logger.info(
                "Dropped sources outside their validity window: "
                + ", ".join(f"{sid} ({w.valid_from or '...'}~{w.valid_until or '...'})" for sid, w in dropped)
            )
        return kept
