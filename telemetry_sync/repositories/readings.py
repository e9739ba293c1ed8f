from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from sqlalchemy import DateTime, Float, bindparam, func, select, text
from sqlalchemy.orm import Session

from telemetry_sync.db.models import SensorReading
from telemetry_sync.domain import NumericValue, TelemetryPoint, ms_to_datetime

_UPSERT_READING = text(
    """
    INSERT INTO readings (station_id, sensor_key, ts_ms, date_value, value)
    VALUES (:station_id, :sensor_key, :ts_ms, :date_value, :value)
    ON CONFLICT (station_id, sensor_key, ts_ms)
    DO UPDATE SET
        value = EXCLUDED.value,
        date_value = EXCLUDED.date_value
    """
).bindparams(
    bindparam("date_value", type_=DateTime(timezone=True)),
    bindparam("value", type_=Float()),
)


@dataclass(frozen=True)
class ReadingUpsertResult:
    stored: int
    dropped: int


def get_latest_reading_ts(db: Session, *, station_id: str, sensor_key: str) -> int | None:
    value = db.execute(
        select(func.max(SensorReading.ts_ms)).where(
            SensorReading.station_id == station_id,
            SensorReading.sensor_key == sensor_key,
        )
    ).scalar_one_or_none()
    return int(value) if value is not None else None


def get_latest_reading_ts_by_sensor(
    db: Session,
    *,
    station_id: str,
    sensor_keys: Sequence[str],
) -> dict[str, int | None]:
    rows = db.execute(
        select(SensorReading.sensor_key, func.max(SensorReading.ts_ms))
        .where(
            SensorReading.station_id == station_id,
            SensorReading.sensor_key.in_(list(sensor_keys)),
        )
        .group_by(SensorReading.sensor_key)
    ).all()
    latest: dict[str, int | None] = {key: None for key in sensor_keys}
    for sensor_key, ts_ms in rows:
        latest[sensor_key] = int(ts_ms) if ts_ms is not None else None
    return latest


def upsert_readings(
    db: Session,
    *,
    station_id: str,
    readings: Mapping[str, Sequence[TelemetryPoint]],
) -> ReadingUpsertResult:
    rows_by_key: dict[tuple[str, int], dict[str, object]] = {}
    dropped = 0
    for sensor_key, points in readings.items():
        for point in points:
            if not isinstance(point.value, NumericValue):
                dropped += 1
                continue
            rows_by_key[(sensor_key, point.ts_ms)] = {
                "station_id": station_id,
                "sensor_key": sensor_key,
                "ts_ms": point.ts_ms,
                "date_value": ms_to_datetime(point.ts_ms),
                "value": point.value.value,
            }

    rows = list(rows_by_key.values())
    if not rows:
        return ReadingUpsertResult(stored=0, dropped=dropped)

    try:
        db.execute(_UPSERT_READING, rows)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return ReadingUpsertResult(stored=len(rows), dropped=dropped)


def count_readings(db: Session, *, station_id: str | None = None) -> int:
    query = select(func.count()).select_from(SensorReading)
    if station_id is not None:
        query = query.where(SensorReading.station_id == station_id)
    return int(db.execute(query).scalar_one())
