"""Headless telemetry sync daemon.

Loads configuration, logs in to the telemetry API, verifies the database
and creates the schema if absent, then runs sync cycles on a fixed interval
until SIGINT or SIGTERM.

Start:  python -m telemetry_sync            (or: telemetry-sync)
Once:   python -m telemetry_sync --once
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from threading import Event

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from telemetry_sync.core.config import Settings, get_settings
from telemetry_sync.core.logging import configure_logging
from telemetry_sync.db.session import SessionLocal, check_db_connection, engine, init_schema
from telemetry_sync.services.telemetry_client import TelemetryAuthError, TelemetryClient
from telemetry_sync.services.telemetry_sync import TelemetrySyncService

logger = logging.getLogger("telemetry_sync.runner")


class StartupError(RuntimeError):
    pass


def bootstrap(
    settings: Settings,
    *,
    db_engine: Engine,
    session_factory: sessionmaker,
) -> TelemetrySyncService:
    try:
        settings.require_api_credentials()
    except ValueError as exc:
        raise StartupError(str(exc)) from exc

    client = TelemetryClient(
        base_url=settings.api_base_url,
        login=settings.api_login,
        password=settings.api_password,
        timeout_seconds=settings.api_timeout_seconds,
    )
    try:
        client.login()
    except TelemetryAuthError as exc:
        raise StartupError(f"telemetry API login failed: {exc}") from exc

    with session_factory() as db:
        db_ok, db_error = check_db_connection(db)
    if not db_ok:
        raise StartupError(f"database unreachable: {db_error}")
    try:
        init_schema(db_engine)
    except SQLAlchemyError as exc:
        raise StartupError(f"schema creation failed: {exc}") from exc

    return TelemetrySyncService(
        settings=settings,
        session_factory=session_factory,
        client=client,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="telemetry-sync",
        description="Pull weather station telemetry into the database on a fixed interval.",
    )
    parser.add_argument("--once", action="store_true", help="run a single sync cycle and exit")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        service = bootstrap(settings, db_engine=engine, session_factory=SessionLocal)
    except StartupError as exc:
        logger.critical("startup failed: %s", exc)
        return 1

    if args.once:
        report = service.run_cycle()
        return 0 if report.status in ("ok", "partial") else 1

    stop_event = Event()

    def _request_stop(signum: int, _frame: object) -> None:
        logger.info("received signal %s; stopping after the current window", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    service.start()
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        service.stop()
        engine.dispose()
    logger.info("telemetry sync stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
