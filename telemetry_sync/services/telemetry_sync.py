from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Any, Literal
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from telemetry_sync.core.config import Settings
from telemetry_sync.domain import StationInfo, TimeWindow, datetime_to_ms, ms_to_datetime
from telemetry_sync.repositories.readings import get_latest_reading_ts, upsert_readings
from telemetry_sync.repositories.stations import upsert_stations
from telemetry_sync.services.iteration import Outcome, process_sequence
from telemetry_sync.services.period_planner import PeriodPlanner
from telemetry_sync.services.telemetry_client import (
    TelemetryApiError,
    TelemetryAuthError,
    TelemetryClient,
)

GroupKind = Literal["new", "existing"]
CycleStatus = Literal["ok", "partial", "aborted", "stopped"]


@dataclass(frozen=True)
class SensorGroup:
    kind: GroupKind
    sensor_keys: tuple[str, ...]
    watermark_ms: int | None
    windows: tuple[TimeWindow, ...]


@dataclass(frozen=True)
class SyncCycleReport:
    started_at: datetime
    finished_at: datetime
    status: CycleStatus
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

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": _to_iso(self.started_at),
            "finished_at": _to_iso(self.finished_at),
            "status": self.status,
            "devices_total": self.devices_total,
            "devices_synced": self.devices_synced,
            "devices_skipped": self.devices_skipped,
            "windows_succeeded": self.windows_succeeded,
            "windows_skipped": self.windows_skipped,
            "groups_aborted": self.groups_aborted,
            "readings_fetched": self.readings_fetched,
            "readings_stored": self.readings_stored,
            "values_dropped": self.values_dropped,
            "error": self.error,
        }


@dataclass
class _CycleCounters:
    windows_succeeded: int = 0
    windows_skipped: int = 0
    groups_aborted: int = 0
    readings_fetched: int = 0
    readings_stored: int = 0
    values_dropped: int = 0
    stopped: bool = False
    station_errors: list[str] = field(default_factory=list)


def plan_sensor_groups(
    planner: PeriodPlanner,
    *,
    now_ms: int,
    watermarks: Mapping[str, int | None],
) -> list[SensorGroup]:
    new_keys = tuple(key for key, ts in watermarks.items() if ts is None)
    existing = {key: ts for key, ts in watermarks.items() if ts is not None}

    groups: list[SensorGroup] = []
    if new_keys:
        groups.append(
            SensorGroup(
                kind="new",
                sensor_keys=new_keys,
                watermark_ms=None,
                windows=tuple(planner.plan(now_ms, None)),
            )
        )
    if existing:
        oldest = min(existing.values())
        groups.append(
            SensorGroup(
                kind="existing",
                sensor_keys=tuple(existing.keys()),
                watermark_ms=oldest,
                windows=tuple(planner.plan(now_ms, oldest)),
            )
        )
    return groups


class TelemetrySyncService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        client: TelemetryClient,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._client = client
        self._clock = clock or _now_ms
        self._sensor_keys = settings.sensor_key_list
        self._planner = PeriodPlanner(
            backfill_days=settings.backfill_days,
            chunk_days=settings.chunk_days,
            tz=ZoneInfo(settings.planner_timezone),
        )
        self._logger = logging.getLogger("telemetry_sync.sync")
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._cycle_lock = Lock()

        self._lock = Lock()
        self._running = False
        self._cycle_in_progress = False
        self._next_due_ts: datetime | None = None
        self._last_report: SyncCycleReport | None = None
        self._last_error: str | None = None

    @property
    def client(self) -> TelemetryClient:
        return self._client

    @property
    def sensor_keys(self) -> list[str]:
        return list(self._sensor_keys)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._next_due_ts = datetime.now(timezone.utc)
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="telemetry-sync", daemon=True)
        self._thread.start()
        self._logger.info(
            "started telemetry sync enabled=%s interval_minutes=%s sensor_keys=%s",
            self._settings.sync_enabled,
            self._settings.collection_interval_minutes,
            ",".join(self._sensor_keys),
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=self._settings.shutdown_grace_seconds)
            if self._thread.is_alive():
                self._logger.warning(
                    "telemetry sync thread still busy after %ss; leaving it to finish its window",
                    self._settings.shutdown_grace_seconds,
                )
        with self._lock:
            self._running = False

    def request_sync(self) -> datetime:
        if not self._settings.sync_enabled:
            raise RuntimeError("Telemetry sync is disabled by configuration")
        due = datetime.now(timezone.utc)
        with self._lock:
            self._next_due_ts = due
        return due

    def get_status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "enabled": self._settings.sync_enabled,
                "running": self._running and not self._stop_event.is_set(),
                "cycle_in_progress": self._cycle_in_progress,
                "interval_minutes": self._settings.collection_interval_minutes,
                "sensor_keys": list(self._sensor_keys),
                "next_due_ts": _to_iso(self._next_due_ts),
                "last_error": self._last_error,
                "last_cycle": self._last_report.to_dict() if self._last_report else None,
            }

    def run_cycle(self) -> SyncCycleReport:
        if not self._cycle_lock.acquire(blocking=False):
            raise RuntimeError("A telemetry sync cycle is already in progress")
        with self._lock:
            self._cycle_in_progress = True
        try:
            report = self._run_cycle()
        finally:
            with self._lock:
                self._cycle_in_progress = False
            self._cycle_lock.release()

        with self._lock:
            self._last_report = report
            self._last_error = report.error
        return report

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            if not self._settings.sync_enabled:
                self._stop_event.wait(1.0)
                continue

            now = datetime.now(timezone.utc)
            with self._lock:
                next_due = self._next_due_ts
            if next_due is None or now >= next_due:
                try:
                    self.run_cycle()
                except Exception as exc:
                    self._logger.exception("telemetry sync cycle failed")
                    with self._lock:
                        self._last_error = str(exc)
                with self._lock:
                    if self._next_due_ts is None or self._next_due_ts <= now:
                        self._next_due_ts = datetime.now(timezone.utc) + timedelta(
                            minutes=self._settings.collection_interval_minutes
                        )

            self._stop_event.wait(1.0)

    def _run_cycle(self) -> SyncCycleReport:
        started_at = datetime.now(timezone.utc)
        self._logger.info("telemetry sync cycle started")

        try:
            stations = self._client.list_devices()
        except Exception as exc:
            self._logger.exception("device listing failed; cycle aborted")
            return SyncCycleReport(
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                status="aborted",
                error=str(exc),
            )
        self._logger.info("devices listed count=%d", len(stations))

        try:
            with self._session_factory() as db:
                upsert_stations(db, stations)
        except SQLAlchemyError as exc:
            self._logger.warning("station metadata upsert failed error=%s", exc)

        counters = _CycleCounters()
        summary = process_sequence(
            stations,
            lambda station: self._sync_station(station, counters),
            should_stop=self._stop_event.is_set,
        )

        if summary.stopped or counters.stopped:
            status: CycleStatus = "stopped"
        elif summary.skipped or counters.windows_skipped or counters.groups_aborted:
            status = "partial"
        else:
            status = "ok"

        report = SyncCycleReport(
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            status=status,
            devices_total=len(stations),
            devices_synced=summary.succeeded,
            devices_skipped=summary.skipped,
            windows_succeeded=counters.windows_succeeded,
            windows_skipped=counters.windows_skipped,
            groups_aborted=counters.groups_aborted,
            readings_fetched=counters.readings_fetched,
            readings_stored=counters.readings_stored,
            values_dropped=counters.values_dropped,
            error="; ".join(counters.station_errors[-5:]) or None,
        )
        self._logger.info(
            "telemetry sync cycle finished status=%s devices=%d skipped=%d windows_ok=%d "
            "windows_skipped=%d stored=%d dropped=%d",
            report.status,
            report.devices_total,
            report.devices_skipped,
            report.windows_succeeded,
            report.windows_skipped,
            report.readings_stored,
            report.values_dropped,
        )
        return report

    def _sync_station(self, station: StationInfo, counters: _CycleCounters) -> Outcome:
        try:
            return self._sync_station_groups(station, counters)
        except Exception as exc:
            self._logger.warning(
                "device sync failed station_id=%s error=%s", station.id, exc, exc_info=True
            )
            counters.station_errors.append(f"{station.id}: {exc}")
            return Outcome.SKIP

    def _sync_station_groups(self, station: StationInfo, counters: _CycleCounters) -> Outcome:
        self._logger.info("processing device station_id=%s label=%s", station.id, station.label)
        now_ms = self._clock()
        watermarks = self.read_watermarks(station.id)
        groups = plan_sensor_groups(self._planner, now_ms=now_ms, watermarks=watermarks)
        stored_before = counters.readings_stored

        for group in groups:
            self._log_group_plan(station, group, now_ms)
            summary = process_sequence(
                group.windows,
                lambda window: self._sync_window(station.id, group, window, counters),
                should_stop=self._stop_event.is_set,
            )
            if summary.aborted:
                counters.groups_aborted += 1
                self._logger.warning(
                    "sensor group aborted station_id=%s group=%s windows_left=%d",
                    station.id,
                    group.kind,
                    summary.remaining,
                )
            if summary.stopped:
                counters.stopped = True
                break

        stored = counters.readings_stored - stored_before
        if stored > 0:
            self._logger.info("device synced station_id=%s stored=%d", station.id, stored)
        else:
            self._logger.info("no new readings station_id=%s", station.id)
        return Outcome.SUCCESS

    def read_watermarks(self, station_id: str) -> dict[str, int | None]:
        watermarks: dict[str, int | None] = {}
        for sensor_key in self._sensor_keys:
            try:
                with self._session_factory() as db:
                    watermarks[sensor_key] = get_latest_reading_ts(
                        db, station_id=station_id, sensor_key=sensor_key
                    )
            except SQLAlchemyError as exc:
                self._logger.warning(
                    "watermark read failed station_id=%s sensor_key=%s error=%s; treating as new",
                    station_id,
                    sensor_key,
                    exc,
                )
                watermarks[sensor_key] = None
        return watermarks

    def _sync_window(
        self,
        station_id: str,
        group: SensorGroup,
        window: TimeWindow,
        counters: _CycleCounters,
    ) -> Outcome:
        try:
            batch = self._client.fetch_telemetry(station_id, group.sensor_keys, window)
        except TelemetryAuthError as exc:
            self._logger.warning(
                "re-login failed station_id=%s group=%s window=%s error=%s",
                station_id,
                group.kind,
                window,
                exc,
            )
            return Outcome.ABORT
        except TelemetryApiError as exc:
            self._logger.warning(
                "window fetch failed station_id=%s group=%s window=%s error=%s",
                station_id,
                group.kind,
                window,
                exc,
            )
            counters.windows_skipped += 1
            return Outcome.SKIP

        fetched = sum(len(points) for points in batch.values())
        counters.readings_fetched += fetched
        if fetched == 0:
            self._logger.debug("window empty station_id=%s window=%s", station_id, window)
            counters.windows_succeeded += 1
            return Outcome.SUCCESS

        started = time.perf_counter()
        try:
            with self._session_factory() as db:
                result = upsert_readings(db, station_id=station_id, readings=batch)
        except SQLAlchemyError as exc:
            self._logger.warning(
                "window store failed station_id=%s window=%s fetched=%d error=%s",
                station_id,
                window,
                fetched,
                exc,
            )
            counters.windows_skipped += 1
            return Outcome.SKIP
        elapsed = max(time.perf_counter() - started, 1e-6)

        counters.windows_succeeded += 1
        counters.readings_stored += result.stored
        counters.values_dropped += result.dropped
        self._logger.info(
            "window stored station_id=%s window=%s stored=%d dropped=%d "
            "elapsed_seconds=%.2f rows_per_second=%.1f",
            station_id,
            window,
            result.stored,
            result.dropped,
            elapsed,
            result.stored / elapsed,
        )
        return Outcome.SUCCESS

    def _log_group_plan(self, station: StationInfo, group: SensorGroup, now_ms: int) -> None:
        if group.kind == "new":
            self._logger.info(
                "backfilling new sensors station_id=%s sensor_keys=%s windows=%d",
                station.id,
                ",".join(group.sensor_keys),
                len(group.windows),
            )
            return
        lag_minutes = (now_ms - (group.watermark_ms or now_ms)) // 60000
        self._logger.info(
            "fetching since watermark station_id=%s sensor_keys=%s watermark=%s lag_minutes=%d windows=%d",
            station.id,
            ",".join(group.sensor_keys),
            _to_iso(ms_to_datetime(group.watermark_ms)) if group.watermark_ms is not None else None,
            lag_minutes,
            len(group.windows),
        )


def _now_ms() -> int:
    return datetime_to_ms(datetime.now(timezone.utc))


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
