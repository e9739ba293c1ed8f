from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Union

MS_PER_MINUTE = 60 * 1000
MS_PER_DAY = 24 * 60 * MS_PER_MINUTE

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open ``[start_ms, end_ms)`` range in epoch milliseconds."""

    start_ms: int
    end_ms: int

    def __post_init__(self) -> None:
        if self.start_ms >= self.end_ms:
            raise ValueError(f"empty time window start_ms={self.start_ms} end_ms={self.end_ms}")

    @property
    def span_ms(self) -> int:
        return self.end_ms - self.start_ms

    def __str__(self) -> str:
        return f"[{_format_ms(self.start_ms)}, {_format_ms(self.end_ms)})"


@dataclass(frozen=True)
class StationInfo:
    id: str
    name: str
    label: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass(frozen=True)
class NumericValue:
    value: float


@dataclass(frozen=True)
class TextValue:
    text: str | None


SensorValue = Union[NumericValue, TextValue]


@dataclass(frozen=True)
class TelemetryPoint:
    ts_ms: int
    value: SensorValue


def coerce_sensor_value(dbl_v: object, str_v: object) -> SensorValue:
    numeric = _finite_float(dbl_v)
    has_text = str_v is not None and not (isinstance(str_v, str) and str_v.strip() == "")
    if numeric is not None and (numeric != 0.0 or not has_text):
        return NumericValue(numeric)
    if has_text:
        parsed = _finite_float(str_v)
        if parsed is not None:
            return NumericValue(parsed)
        return TextValue(str(str_v))
    return TextValue(None)


def ms_to_datetime(ts_ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ts_ms)


def datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def _finite_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(result):
        return None
    return result


def _format_ms(ts_ms: int) -> str:
    return ms_to_datetime(ts_ms).strftime("%Y-%m-%d %H:%M:%S")
