from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from telemetry_sync.services.telemetry_client import TelemetryClient
    from telemetry_sync.services.telemetry_sync import TelemetrySyncService


def get_sync_service(request: Request) -> "TelemetrySyncService":
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Telemetry sync service is not initialized")
    return service


def get_telemetry_client(request: Request) -> "TelemetryClient":
    client = getattr(request.app.state, "telemetry_client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="Telemetry client is not initialized")
    return client
