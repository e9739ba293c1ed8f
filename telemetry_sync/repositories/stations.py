from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import DateTime, bindparam, func, select, text
from sqlalchemy.orm import Session

from telemetry_sync.db.models import Station
from telemetry_sync.domain import StationInfo

_UPSERT_STATION = text(
    """
    INSERT INTO stations (id, name, label, latitude, longitude, last_update)
    VALUES (:id, :name, :label, :latitude, :longitude, :last_update)
    ON CONFLICT (id)
    DO UPDATE SET
        name = EXCLUDED.name,
        label = EXCLUDED.label,
        latitude = EXCLUDED.latitude,
        longitude = EXCLUDED.longitude,
        last_update = EXCLUDED.last_update
    """
).bindparams(bindparam("last_update", type_=DateTime(timezone=True)))


def upsert_stations(
    db: Session,
    stations: Sequence[StationInfo],
    *,
    updated_at: datetime | None = None,
) -> int:
    if not stations:
        return 0
    last_update = updated_at or datetime.now(timezone.utc)
    rows_by_id: dict[str, dict[str, object]] = {}
    for station in stations:
        rows_by_id[station.id] = {
            "id": station.id,
            "name": station.name,
            "label": station.label,
            "latitude": station.latitude,
            "longitude": station.longitude,
            "last_update": last_update,
        }
    try:
        db.execute(_UPSERT_STATION, list(rows_by_id.values()))
        db.commit()
    except Exception:
        db.rollback()
        raise
    return len(rows_by_id)


def list_station_ids(db: Session) -> list[str]:
    return list(db.execute(select(Station.id).order_by(Station.id)).scalars().all())


def get_station(db: Session, station_id: str) -> Station | None:
    return db.get(Station, station_id)


def count_stations(db: Session) -> int:
    return int(db.execute(select(func.count()).select_from(Station)).scalar_one())
