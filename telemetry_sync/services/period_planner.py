from __future__ import annotations

from dataclasses import dataclass
from datetime import tzinfo
from zoneinfo import ZoneInfo

from telemetry_sync.domain import MS_PER_DAY, TimeWindow, datetime_to_ms, ms_to_datetime

DEFAULT_BACKFILL_DAYS = 365
DEFAULT_CHUNK_DAYS = 30


@dataclass(frozen=True)
class PeriodPlanner:
    backfill_days: int = DEFAULT_BACKFILL_DAYS
    chunk_days: int = DEFAULT_CHUNK_DAYS
    tz: tzinfo = ZoneInfo("UTC")

    def plan(self, now_ms: int, watermark_ms: int | None = None) -> list[TimeWindow]:
        if watermark_ms is None:
            return split_by_calendar_month(
                now_ms - self.backfill_days * MS_PER_DAY,
                now_ms,
                tz=self.tz,
            )

        if watermark_ms >= now_ms:
            return []
        start_ms = watermark_ms + 1
        if start_ms >= now_ms:
            return []

        chunk_ms = self.chunk_days * MS_PER_DAY
        if now_ms - watermark_ms <= chunk_ms:
            return [TimeWindow(start_ms, now_ms)]
        return split_by_fixed_span(start_ms, now_ms, span_ms=chunk_ms)


def split_by_calendar_month(start_ms: int, end_ms: int, *, tz: tzinfo) -> list[TimeWindow]:
    windows: list[TimeWindow] = []
    cursor = start_ms
    while cursor < end_ms:
        upper = min(next_month_start_ms(cursor, tz=tz), end_ms)
        windows.append(TimeWindow(cursor, upper))
        cursor = upper
    return windows


def split_by_fixed_span(start_ms: int, end_ms: int, *, span_ms: int) -> list[TimeWindow]:
    if span_ms <= 0:
        raise ValueError("span_ms must be positive")
    windows: list[TimeWindow] = []
    cursor = start_ms
    while cursor < end_ms:
        upper = min(cursor + span_ms, end_ms)
        windows.append(TimeWindow(cursor, upper))
        cursor = upper
    return windows


def next_month_start_ms(ts_ms: int, *, tz: tzinfo) -> int:
    local = ms_to_datetime(ts_ms).astimezone(tz)
    if local.month == 12:
        year, month = local.year + 1, 1
    else:
        year, month = local.year, local.month + 1
    boundary = local.replace(
        year=year,
        month=month,
        day=1,
        hour=0,
        minute=0,
        second=0,
        microsecond=0,
        fold=0,
    )
    return datetime_to_ms(boundary)
