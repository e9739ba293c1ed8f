import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from telemetry_sync.api.sync import router as sync_router
from telemetry_sync.core.config import Settings, get_settings
from telemetry_sync.core.logging import configure_logging
from telemetry_sync.db.session import SessionLocal, check_db_connection, engine, get_db
from telemetry_sync.repositories.readings import count_readings
from telemetry_sync.repositories.stations import count_stations
from telemetry_sync.runner import StartupError, bootstrap
from telemetry_sync.services.telemetry_sync import TelemetrySyncService

logger = logging.getLogger("telemetry_sync.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    try:
        sync_service = bootstrap(settings, db_engine=engine, session_factory=SessionLocal)
    except StartupError as exc:
        logger.critical("startup failed: %s", exc)
        raise

    app.state.settings = settings
    app.state.sync_service = sync_service
    app.state.telemetry_client = sync_service.client

    sync_service.start()
    try:
        yield
    finally:
        sync_service.stop()


app = FastAPI(title="Telemetry Sync", lifespan=lifespan)
app.include_router(sync_router)


@app.get("/health")
def health():
    return {"status": "ok", "service": "telemetry-sync"}


@app.get("/status")
def status(request: Request, db: Session = Depends(get_db)):
    db_ok, db_error = check_db_connection(db)
    sync_service: TelemetrySyncService | None = getattr(request.app.state, "sync_service", None)
    settings: Settings | None = getattr(request.app.state, "settings", None)

    db_status: dict[str, object] = {"ok": db_ok}
    if db_error:
        db_status["error"] = db_error

    storage_status: dict[str, object] = {"stations": None, "readings": None}
    if db_ok:
        try:
            storage_status = {
                "stations": count_stations(db),
                "readings": count_readings(db),
            }
        except SQLAlchemyError as exc:
            storage_status["error"] = str(exc)

    if sync_service is None:
        sync_status: dict[str, object] = {
            "running": False,
            "last_error": "Telemetry sync service not initialized",
        }
    else:
        sync_status = sync_service.get_status_snapshot()

    return {
        "status": "ok" if db_ok else "degraded",
        "api_base_url": settings.api_base_url if settings else None,
        "db": db_status,
        "storage": storage_status,
        "sync": sync_status,
    }
