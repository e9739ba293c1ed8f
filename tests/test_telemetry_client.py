from __future__ import annotations

from http.client import IncompleteRead, RemoteDisconnected
from threading import Event, Thread
from typing import Any
from unittest import TestCase
from unittest.mock import MagicMock, patch

from telemetry_sync.domain import NumericValue, TextValue, TimeWindow, coerce_sensor_value
from telemetry_sync.services.telemetry_client import (
    TelemetryApiError,
    TelemetryAuthError,
    TelemetryClient,
    TelemetrySessionExpired,
)


class _ScriptedTransport:
    """Replays canned payloads per endpoint and records every call."""

    def __init__(self, responses: dict[str, list[Any]]) -> None:
        self.responses = {endpoint: list(items) for endpoint, items in responses.items()}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, endpoint: str, body: dict[str, Any]) -> Any:
        self.calls.append((endpoint, dict(body)))
        queue = self.responses[endpoint]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def endpoints(self) -> list[str]:
        return [endpoint for endpoint, _body in self.calls]


def _login_ok(sid: str) -> dict[str, Any]:
    return {"status": "OK", "data": {"sid": sid}}


def _client() -> TelemetryClient:
    return TelemetryClient(base_url="https://telemetry.test", login="user", password="secret")


class TelemetryClientSessionTests(TestCase):
    def test_login_stores_session_id(self) -> None:
        client = _client()
        transport = _ScriptedTransport({"login": [_login_ok("sid-1")]})

        with patch.object(client, "_post_json", side_effect=transport):
            session = client.login()

        self.assertEqual(session.sid, "sid-1")
        self.assertEqual(client.session, session)
        self.assertEqual(transport.calls[0][1], {"login": "user", "password": "secret"})

    def test_login_rejected_raises_auth_error(self) -> None:
        client = _client()
        transport = _ScriptedTransport({"login": [{"status": "error", "error": "bad credentials"}]})

        with patch.object(client, "_post_json", side_effect=transport):
            with self.assertRaises(TelemetryAuthError):
                client.login()
        self.assertIsNone(client.session)

    def test_login_without_sid_raises_auth_error(self) -> None:
        client = _client()
        transport = _ScriptedTransport({"login": [{"status": "OK", "data": {"sid": ""}}]})

        with patch.object(client, "_post_json", side_effect=transport):
            with self.assertRaises(TelemetryAuthError):
                client.login()

    def test_login_transport_failure_raises_auth_error(self) -> None:
        client = _client()
        transport = _ScriptedTransport(
            {"login": [TelemetryApiError(status_code=503, detail="connection refused")]}
        )

        with patch.object(client, "_post_json", side_effect=transport):
            with self.assertRaises(TelemetryAuthError) as ctx:
                client.login()
        self.assertEqual(ctx.exception.status_code, 503)

    def test_expired_session_triggers_one_relogin_and_retry(self) -> None:
        client = _client()
        transport = _ScriptedTransport(
            {
                "login": [_login_ok("sid-1"), _login_ok("sid-2")],
                "devices": [
                    {"status": "session expired"},
                    {"status": "OK", "data": [{"id": "st-1", "name": "North field"}]},
                ],
            }
        )

        with patch.object(client, "_post_json", side_effect=transport):
            client.login()
            stations = client.list_devices()

        self.assertEqual([station.id for station in stations], ["st-1"])
        self.assertEqual(transport.endpoints(), ["login", "devices", "login", "devices"])
        self.assertEqual(transport.calls[1][1]["sid"], "sid-1")
        self.assertEqual(transport.calls[3][1]["sid"], "sid-2")
        self.assertEqual(client.session.sid, "sid-2")

    def test_http_error_status_also_counts_as_expired(self) -> None:
        client = _client()
        transport = _ScriptedTransport(
            {
                "login": [_login_ok("sid-1"), _login_ok("sid-2")],
                "devices": [
                    TelemetrySessionExpired(status_code=401, detail="unauthorized"),
                    {"status": "OK", "data": []},
                ],
            }
        )

        with patch.object(client, "_post_json", side_effect=transport):
            client.login()
            self.assertEqual(client.list_devices(), [])
        self.assertEqual(transport.endpoints().count("login"), 2)

    def test_second_rejection_after_relogin_raises(self) -> None:
        client = _client()
        transport = _ScriptedTransport(
            {
                "login": [_login_ok("sid-1"), _login_ok("sid-2")],
                "devices": [{"status": "expired"}, {"status": "expired"}],
            }
        )

        with patch.object(client, "_post_json", side_effect=transport):
            client.login()
            with self.assertRaises(TelemetryApiError) as ctx:
                client.list_devices()

        self.assertNotIsInstance(ctx.exception, TelemetryAuthError)
        self.assertEqual(transport.endpoints(), ["login", "devices", "login", "devices"])

    def test_failed_relogin_raises_auth_error(self) -> None:
        client = _client()
        transport = _ScriptedTransport(
            {
                "login": [_login_ok("sid-1"), {"status": "error"}],
                "devices": [{"status": "expired"}],
            }
        )

        with patch.object(client, "_post_json", side_effect=transport):
            client.login()
            with self.assertRaises(TelemetryAuthError):
                client.list_devices()

    def test_transport_error_is_not_retried(self) -> None:
        client = _client()
        transport = _ScriptedTransport(
            {
                "login": [_login_ok("sid-1")],
                "devices": [TelemetryApiError(status_code=504, detail="timed out")],
            }
        )

        with patch.object(client, "_post_json", side_effect=transport):
            client.login()
            with self.assertRaises(TelemetryApiError) as ctx:
                client.list_devices()

        self.assertEqual(ctx.exception.status_code, 504)
        self.assertEqual(transport.endpoints(), ["login", "devices"])

    def test_call_without_session_logs_in_first(self) -> None:
        client = _client()
        transport = _ScriptedTransport(
            {"login": [_login_ok("sid-9")], "devices": [{"status": "OK", "data": []}]}
        )

        with patch.object(client, "_post_json", side_effect=transport):
            client.list_devices()

        self.assertEqual(transport.endpoints(), ["login", "devices"])


    def test_expired_session_on_telemetry_fetch_relogs_once(self) -> None:
        client = _client()
        transport = _ScriptedTransport(
            {
                "login": [_login_ok("sid-1"), _login_ok("sid-2")],
                "telemetry": [
                    {"status": "session expired"},
                    {
                        "status": "OK",
                        "data": [{"entity_id": "st-1", "key": "airtemp", "ts": 1500, "dbl_v": 2.0}],
                    },
                ],
            }
        )

        with patch.object(client, "_post_json", side_effect=transport):
            client.login()
            batch = client.fetch_telemetry("st-1", ["airtemp"], TimeWindow(1000, 2000))

        self.assertEqual(transport.endpoints(), ["login", "telemetry", "login", "telemetry"])
        self.assertEqual(transport.calls[3][1]["sid"], "sid-2")
        self.assertEqual(transport.calls[3][1]["ts_from"], 1000)
        self.assertEqual(batch["airtemp"][0].value, NumericValue(2.0))

    def test_data_calls_do_not_wait_for_each_other(self) -> None:
        client = _client()
        fetch_started = Event()
        release_fetch = Event()
        fetch_finished = Event()

        def transport(endpoint: str, body: dict[str, Any]) -> Any:
            if endpoint == "login":
                return _login_ok("sid-1")
            if endpoint == "telemetry":
                fetch_started.set()
                release_fetch.wait(5)
                fetch_finished.set()
            return {"status": "OK", "data": []}

        with patch.object(client, "_post_json", side_effect=transport):
            client.login()
            worker = Thread(
                target=client.fetch_telemetry,
                args=("st-1", ["airtemp"], TimeWindow(1000, 2000)),
            )
            worker.start()
            try:
                self.assertTrue(fetch_started.wait(5))
                latest = client.latest_telemetry(["st-1"], ["airtemp"], now_ms=90_000_000)
                finished_before_latest = fetch_finished.is_set()
            finally:
                release_fetch.set()
                worker.join(5)

        self.assertEqual(latest, {})
        self.assertFalse(finished_before_latest)

    def test_relogin_reuses_session_refreshed_by_another_caller(self) -> None:
        client = _client()
        transport = _ScriptedTransport({"login": [_login_ok("sid-1"), _login_ok("sid-2")]})

        with patch.object(client, "_post_json", side_effect=transport):
            stale = client.login()
            fresh = client.login()
            refreshed = client._refresh_session(stale)

        self.assertIs(refreshed, fresh)
        self.assertEqual(transport.endpoints(), ["login", "login"])


class TelemetryClientTransportTests(TestCase):
    def test_dropped_connection_becomes_api_error(self) -> None:
        client = _client()

        with patch(
            "telemetry_sync.services.telemetry_client.urlopen",
            side_effect=RemoteDisconnected("Remote end closed connection without response"),
        ):
            with self.assertRaises(TelemetryApiError) as ctx:
                client._post_json("devices", {"sid": "sid-1"})

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertNotIsInstance(ctx.exception, TelemetrySessionExpired)

    def test_truncated_body_becomes_api_error(self) -> None:
        client = _client()
        response = MagicMock()
        response.__enter__.return_value.read.side_effect = IncompleteRead(b'{"status": "O')

        with patch("telemetry_sync.services.telemetry_client.urlopen", return_value=response):
            with self.assertRaises(TelemetryApiError) as ctx:
                client._post_json("telemetry", {"sid": "sid-1"})

        self.assertEqual(ctx.exception.status_code, 503)

    def test_reset_during_login_is_auth_error(self) -> None:
        client = _client()

        with patch(
            "telemetry_sync.services.telemetry_client.urlopen",
            side_effect=ConnectionResetError("connection reset by peer"),
        ):
            with self.assertRaises(TelemetryAuthError):
                client.login()


class TelemetryClientPayloadTests(TestCase):
    def test_fetch_telemetry_sends_window_and_groups_points(self) -> None:
        client = _client()
        transport = _ScriptedTransport(
            {
                "login": [_login_ok("sid-1")],
                "telemetry": [
                    {
                        "status": "OK",
                        "data": [
                            {"entity_id": "st-1", "key": "airtemp", "ts": 2000, "dbl_v": 4.5},
                            {"entity_id": "st-1", "key": "airtemp", "ts": 1000, "dbl_v": 3.0},
                            {"entity_id": "st-1", "key": "winddir", "ts": 1000, "dbl_v": 0, "str_v": "N/A"},
                            {"entity_id": "st-1", "key": "rainfall", "ts": 1000, "str_v": "0.2"},
                            {"entity_id": "st-1", "ts": 1000, "dbl_v": 1.0},
                        ],
                    }
                ],
            }
        )

        with patch.object(client, "_post_json", side_effect=transport):
            batch = client.fetch_telemetry("st-1", ["airtemp", "winddir", "rainfall"], TimeWindow(1000, 5000))

        endpoint, body = transport.calls[-1]
        self.assertEqual(endpoint, "telemetry")
        self.assertEqual(body["devices"], ["st-1"])
        self.assertEqual(body["keys"], ["airtemp", "winddir", "rainfall"])
        self.assertEqual((body["ts_from"], body["ts_to"]), (1000, 5000))

        self.assertEqual([point.ts_ms for point in batch["airtemp"]], [1000, 2000])
        self.assertEqual(batch["airtemp"][1].value, NumericValue(4.5))
        self.assertEqual(batch["winddir"][0].value, TextValue("N/A"))
        self.assertEqual(batch["rainfall"][0].value, NumericValue(0.2))
        self.assertEqual(set(batch), {"airtemp", "winddir", "rainfall"})

    def test_device_without_id_is_skipped_and_name_falls_back_to_id(self) -> None:
        client = _client()
        transport = _ScriptedTransport(
            {
                "login": [_login_ok("sid-1")],
                "devices": [
                    {
                        "status": "OK",
                        "data": [
                            {"id": "", "name": "ghost"},
                            {"id": "st-2", "label": "Orchard", "latitude": "55.7", "longitude": 37.6},
                        ],
                    }
                ],
            }
        )

        with patch.object(client, "_post_json", side_effect=transport):
            stations = client.list_devices()

        self.assertEqual(len(stations), 1)
        self.assertEqual(stations[0].name, "st-2")
        self.assertEqual(stations[0].label, "Orchard")
        self.assertAlmostEqual(stations[0].latitude, 55.7)

    def test_latest_telemetry_requests_last_day(self) -> None:
        client = _client()
        transport = _ScriptedTransport(
            {
                "login": [_login_ok("sid-1")],
                "last_telemetry": [{"status": "OK", "data": []}],
            }
        )

        with patch.object(client, "_post_json", side_effect=transport):
            batch = client.latest_telemetry(["st-1"], ["airtemp"], now_ms=90_000_000)

        body = transport.calls[-1][1]
        self.assertEqual(batch, {})
        self.assertEqual(body["ts_to"], 90_000_000)
        self.assertEqual(body["ts_from"], 90_000_000 - 86_400_000)


class SensorValueCoercionTests(TestCase):
    def test_numeric_value(self) -> None:
        self.assertEqual(coerce_sensor_value(12.5, None), NumericValue(12.5))

    def test_zero_without_text_is_numeric(self) -> None:
        self.assertEqual(coerce_sensor_value(0, None), NumericValue(0.0))

    def test_unparseable_text_is_text(self) -> None:
        self.assertEqual(coerce_sensor_value(0, "N/A"), TextValue("N/A"))

    def test_numeric_text_is_numeric(self) -> None:
        self.assertEqual(coerce_sensor_value(None, "7.25"), NumericValue(7.25))

    def test_non_finite_is_not_numeric(self) -> None:
        self.assertEqual(coerce_sensor_value(float("nan"), None), TextValue(None))
        self.assertEqual(coerce_sensor_value(None, "inf"), TextValue("inf"))
