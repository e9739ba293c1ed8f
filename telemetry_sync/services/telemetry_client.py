from __future__ import annotations

import http.client
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin
from urllib.request import Request, urlopen

from telemetry_sync.domain import (
    MS_PER_DAY,
    StationInfo,
    TelemetryPoint,
    TimeWindow,
    coerce_sensor_value,
)

STATUS_OK = "OK"
STATUS_ERROR = "error"


class TelemetryApiError(RuntimeError):
    def __init__(self, *, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"telemetry API error {status_code}: {detail}")


class TelemetryAuthError(TelemetryApiError):
    pass


class TelemetrySessionExpired(TelemetryApiError):
    pass


@dataclass(frozen=True)
class TelemetrySession:
    sid: str
    acquired_at: datetime


TelemetryBatch = dict[str, list[TelemetryPoint]]


class TelemetryClient:
    def __init__(
        self,
        *,
        base_url: str,
        login: str,
        password: str,
        timeout_seconds: float = 120.0,
    ):
        self._base_url = base_url.rstrip("/") + "/"
        self._login = login
        self._password = password
        self._timeout_seconds = timeout_seconds
        self._session: TelemetrySession | None = None
        self._session_lock = RLock()
        self._logger = logging.getLogger("telemetry_sync.client")

    @property
    def session(self) -> TelemetrySession | None:
        return self._session

    def login(self) -> TelemetrySession:
        with self._session_lock:
            return self._login_locked()

    def _login_locked(self) -> TelemetrySession:
        try:
            payload = self._post_json("login", {"login": self._login, "password": self._password})
        except TelemetryAuthError:
            raise
        except TelemetryApiError as exc:
            raise TelemetryAuthError(status_code=exc.status_code, detail=exc.detail) from exc

        if not isinstance(payload, dict) or payload.get("status") == STATUS_ERROR:
            raise TelemetryAuthError(status_code=401, detail="authentication rejected")
        data = payload.get("data")
        sid = data.get("sid") if isinstance(data, dict) else None
        if not isinstance(sid, str) or sid.strip() == "":
            raise TelemetryAuthError(status_code=401, detail="session id missing in login response")

        self._session = TelemetrySession(sid=sid, acquired_at=datetime.now(timezone.utc))
        self._logger.info("telemetry api login ok base_url=%s", self._base_url)
        return self._session

    def list_devices(self) -> list[StationInfo]:
        payload = self._call_with_session("devices", lambda session: {"sid": session.sid})
        stations: list[StationInfo] = []
        for item in _data_list(payload):
            station = _parse_station(item)
            if station is None:
                self._logger.warning("skipping device without id payload=%s", _truncate(item))
                continue
            stations.append(station)
        return stations

    def fetch_telemetry(
        self,
        station_id: str,
        sensor_keys: Sequence[str],
        window: TimeWindow,
    ) -> TelemetryBatch:
        keys = list(sensor_keys)
        payload = self._call_with_session(
            "telemetry",
            lambda session: {
                "sid": session.sid,
                "devices": [station_id],
                "keys": keys,
                "ts_from": window.start_ms,
                "ts_to": window.end_ms,
            },
        )
        return _group_points(_data_list(payload))

    def latest_telemetry(
        self,
        station_ids: Sequence[str],
        sensor_keys: Sequence[str],
        *,
        now_ms: int,
    ) -> TelemetryBatch:
        devices = list(station_ids)
        keys = list(sensor_keys)
        payload = self._call_with_session(
            "last_telemetry",
            lambda session: {
                "sid": session.sid,
                "devices": devices,
                "keys": keys,
                "ts_from": now_ms - MS_PER_DAY,
                "ts_to": now_ms,
            },
        )
        return _group_points(_data_list(payload))

    def _call_with_session(
        self,
        endpoint: str,
        build_body: Callable[[TelemetrySession], dict[str, Any]],
    ) -> dict[str, Any]:
        session = self._current_session()
        try:
            return self._post_ok(endpoint, build_body(session))
        except TelemetrySessionExpired as exc:
            self._logger.warning(
                "telemetry session rejected endpoint=%s status=%s; logging in again",
                endpoint,
                exc.status_code,
            )
        session = self._refresh_session(session)
        try:
            return self._post_ok(endpoint, build_body(session))
        except TelemetrySessionExpired as exc:
            raise TelemetryApiError(
                status_code=exc.status_code,
                detail=f"{endpoint} failed after re-login: {exc.detail}",
            ) from exc

    def _current_session(self) -> TelemetrySession:
        with self._session_lock:
            return self._session or self._login_locked()

    def _refresh_session(self, stale: TelemetrySession) -> TelemetrySession:
        # another caller may already have replaced the stale session
        with self._session_lock:
            if self._session is not None and self._session is not stale:
                return self._session
            return self._login_locked()

    def _post_ok(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        payload = self._post_json(endpoint, body)
        if not isinstance(payload, dict):
            raise TelemetryApiError(status_code=502, detail=f"{endpoint} returned non-object payload")
        status = payload.get("status")
        if status != STATUS_OK:
            raise TelemetrySessionExpired(
                status_code=401,
                detail=f"{endpoint} returned status={status!r} error={payload.get('error')!r}",
            )
        return payload

    def _post_json(self, endpoint: str, body: dict[str, Any]) -> Any:
        url = urljoin(self._base_url, endpoint.lstrip("/"))
        request = Request(
            url=url,
            method="POST",
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise TelemetrySessionExpired(status_code=exc.code, detail=detail or str(exc))
        except URLError as exc:
            raise TelemetryApiError(status_code=503, detail=str(exc))
        except TimeoutError as exc:
            raise TelemetryApiError(status_code=504, detail=str(exc))
        except (http.client.HTTPException, OSError) as exc:
            raise TelemetryApiError(status_code=503, detail=str(exc) or type(exc).__name__) from exc

        try:
            return json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            raise TelemetryApiError(status_code=502, detail=f"Invalid JSON response: {exc}") from exc


def _data_list(payload: dict[str, Any]) -> list[Any]:
    data = payload.get("data")
    if isinstance(data, list):
        return data
    return []


def _parse_station(item: Any) -> StationInfo | None:
    if not isinstance(item, dict):
        return None
    raw_id = item.get("id")
    if raw_id is None or str(raw_id).strip() == "":
        return None
    station_id = str(raw_id).strip()
    name = item.get("name")
    label = item.get("label")
    return StationInfo(
        id=station_id,
        name=str(name) if name not in (None, "") else station_id,
        label=str(label) if label is not None else None,
        latitude=_optional_float(item.get("latitude")),
        longitude=_optional_float(item.get("longitude")),
    )


def _group_points(rows: list[Any]) -> TelemetryBatch:
    grouped: TelemetryBatch = {}
    for row in rows:
        if not isinstance(row, dict):
            continue
        key = row.get("key")
        ts = row.get("ts")
        if not isinstance(key, str) or isinstance(ts, bool) or not isinstance(ts, (int, float)):
            continue
        point = TelemetryPoint(
            ts_ms=int(ts),
            value=coerce_sensor_value(row.get("dbl_v"), row.get("str_v")),
        )
        grouped.setdefault(key, []).append(point)
    for points in grouped.values():
        points.sort(key=lambda point: point.ts_ms)
    return grouped


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _truncate(value: Any, limit: int = 200) -> str:
    text = repr(value)
    return text if len(text) <= limit else text[: limit - 3] + "..."
