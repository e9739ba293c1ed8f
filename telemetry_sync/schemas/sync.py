from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class SyncCycleReportResponse(BaseModel):
    started_at: datetime
    finished_at: datetime
    status: Literal["ok", "partial", "aborted", "stopped"]
    devices_total: int = 0
    devices_synced: int = 0
    devices_skipped: int = 0
    windows_succeeded: int = 0
    windows_skipped: int = 0
    groups_aborted: int = 0
    readings_fetched: int = 0
    readings_stored: int = 0
    values_dropped: int = 0
    error: str | None = None


class SyncStatusResponse(BaseModel):
    enabled: bool
    running: bool
    cycle_in_progress: bool = False
    interval_minutes: int
    sensor_keys: list[str] = Field(default_factory=list)
    next_due_ts: datetime | None = None
    last_error: str | None = None
    last_cycle: SyncCycleReportResponse | None = None


class SyncRunAcceptedResponse(BaseModel):
    accepted: bool = True
    due_ts: datetime


class SensorLatestResponse(BaseModel):
    sensor_key: str
    stored_ts_ms: int | None = None
    stored_at: datetime | None = None
    remote_ts_ms: int | None = None
    remote_value_num: float | None = None
    remote_value_text: str | None = None


class StationLatestResponse(BaseModel):
    station_id: str
    name: str
    label: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    last_update: datetime | None = None
    sensors: list[SensorLatestResponse] = Field(default_factory=list)
    remote_error: str | None = None
