from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from telemetry_sync.db.session import get_db
from telemetry_sync.dependencies import get_sync_service, get_telemetry_client
from telemetry_sync.domain import NumericValue, TextValue, datetime_to_ms, ms_to_datetime
from telemetry_sync.repositories.readings import get_latest_reading_ts_by_sensor
from telemetry_sync.repositories.stations import get_station
from telemetry_sync.schemas.sync import (
    SensorLatestResponse,
    StationLatestResponse,
    SyncRunAcceptedResponse,
    SyncStatusResponse,
)
from telemetry_sync.services.telemetry_client import TelemetryApiError, TelemetryClient
from telemetry_sync.services.telemetry_sync import TelemetrySyncService

logger = logging.getLogger("telemetry_sync.api")

router = APIRouter(tags=["telemetry-sync"])


@router.get("/api/sync/status", response_model=SyncStatusResponse)
def get_sync_status(
    service: TelemetrySyncService = Depends(get_sync_service),
) -> SyncStatusResponse:
    return SyncStatusResponse.model_validate(service.get_status_snapshot())


@router.post(
    "/api/sync/run",
    response_model=SyncRunAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def request_sync_run(
    service: TelemetrySyncService = Depends(get_sync_service),
) -> SyncRunAcceptedResponse:
    try:
        due_ts = service.request_sync()
    except RuntimeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    logger.info("manual sync requested due_ts=%s", due_ts.isoformat())
    return SyncRunAcceptedResponse(due_ts=due_ts)


@router.get("/api/stations/{station_id}/latest", response_model=StationLatestResponse)
def get_station_latest(
    station_id: str,
    db: Session = Depends(get_db),
    service: TelemetrySyncService = Depends(get_sync_service),
    client: TelemetryClient = Depends(get_telemetry_client),
) -> StationLatestResponse:
    station = get_station(db, station_id)
    if station is None:
        raise HTTPException(status_code=404, detail=f"Unknown station '{station_id}'")

    sensor_keys = service.sensor_keys
    stored = get_latest_reading_ts_by_sensor(db, station_id=station_id, sensor_keys=sensor_keys)

    remote_error: str | None = None
    remote: dict = {}
    try:
        remote = client.latest_telemetry(
            [station_id],
            sensor_keys,
            now_ms=datetime_to_ms(datetime.now(timezone.utc)),
        )
    except TelemetryApiError as exc:
        logger.warning("remote latest telemetry failed station_id=%s error=%s", station_id, exc)
        remote_error = str(exc)

    sensors: list[SensorLatestResponse] = []
    for sensor_key in sensor_keys:
        stored_ts = stored.get(sensor_key)
        item = SensorLatestResponse(
            sensor_key=sensor_key,
            stored_ts_ms=stored_ts,
            stored_at=ms_to_datetime(stored_ts) if stored_ts is not None else None,
        )
        points = remote.get(sensor_key) or []
        if points:
            latest_point = points[-1]
            item.remote_ts_ms = latest_point.ts_ms
            if isinstance(latest_point.value, NumericValue):
                item.remote_value_num = latest_point.value.value
            elif isinstance(latest_point.value, TextValue):
                item.remote_value_text = latest_point.value.text
        sensors.append(item)

    return StationLatestResponse(
        station_id=station.id,
        name=station.name,
        label=station.label,
        latitude=station.latitude,
        longitude=station.longitude,
        last_update=station.last_update,
        sensors=sensors,
        remote_error=remote_error,
    )
