"""HydroAlert ingestion service — FastAPI (port 5000).

Field devices post raw telemetry here; dashboards read the aggregated
views and subscribe to the live stream.

Endpoints:
  POST /api/device/register      → register a device (idempotent)
  POST /api/device/store-data    → ingest one raw reading
  GET  /api/dashboard            → worst-case device + counts + last alerts
  GET  /api/monitoring           → every device with its latest status
  GET  /api/notifications        → alert history grouped by day
  GET  /api/stream               → Server-Sent Events (live updates)
  GET  /health                   → liveness
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from shared.broadcaster import InMemoryBroadcaster
from shared.config import get_settings
from shared.exceptions import RejectedAsNoise, StoreUnavailable
from shared.log_config import configure_logging
from shared.models.telemetry import StatusTier
from services.ingestion.coordinator import IngestionCoordinator, build_coordinator
from services.ingestion.dashboard import DashboardView
from services.ingestion.sweeper import StaleStatusSweeper

logger = structlog.get_logger(__name__)
settings = get_settings()


# ── Request schemas ──────────────────────────────────────────────────────


class DeviceRegistration(BaseModel):
    deviceID: str = Field(..., min_length=1, max_length=64)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class SensorPayload(BaseModel):
    deviceID: str = Field(..., min_length=1, max_length=64)
    waterLevel: float = Field(
        ..., allow_inf_nan=False,
        description="cm, or distance-to-surface when a mount height is set",
    )
    rainIntensity: float = Field(
        0.0, ge=0, allow_inf_nan=False, description="Sensor unit (mm/s by default)"
    )
    windSpeed: float = Field(0.0, ge=0, allow_inf_nan=False, description="m/s")


def _sse(topic: str, payload: dict) -> str:
    data = dict(payload.get("data") or {})
    data["channel"] = topic
    return f"event: {payload.get('event', 'message')}\ndata: {json.dumps(data, default=str)}\n\n"


def create_app(
    coordinator: Optional[IngestionCoordinator] = None,
    run_sweeper: bool = True,
) -> FastAPI:
    """Build the service. Tests pass a pre-wired *coordinator*."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info("ingestion_starting", port=settings.SERVICE_PORT, demo_mode=settings.DEMO_MODE)

        coord = coordinator or build_coordinator(settings)
        app.state.coordinator = coord
        app.state.dashboard = DashboardView(coord.kv, coord.records, coord.devices, clock=coord.clock)

        sweeper_task = None
        if run_sweeper:
            sweeper = StaleStatusSweeper(coord.kv, clock=coord.clock, locks=coord.locks)
            sweeper_task = asyncio.create_task(sweeper.run())

        logger.info("ingestion_ready")
        yield

        if sweeper_task is not None:
            sweeper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper_task
        await asyncio.to_thread(coord.close)
        logger.info("ingestion_shutdown", **coord.stats)

    app = FastAPI(
        title="HydroAlert Ingestion",
        version="1.0.0",
        description="Flood telemetry ingestion, aggregation and alerting",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        logger.error("store_unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=503,
            content={"success": False, "message": "Storage temporarily unavailable"},
        )

    @app.exception_handler(RejectedAsNoise)
    async def rejected_handler(request: Request, exc: RejectedAsNoise):
        logger.info("reading_rejected", device=exc.device_id, reason=exc.reason)
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Reading rejected", "detail": exc.reason},
        )

    # ── Devices ──────────────────────────────────────────────────────────

    @app.post("/api/device/register")
    def register_device(body: DeviceRegistration, request: Request):
        """Register a device. Re-registering an existing one is a no-op."""
        coord: IngestionCoordinator = request.app.state.coordinator
        device, created = coord.register_device(body.deviceID, body.latitude, body.longitude)
        return JSONResponse(
            status_code=201 if created else 200,
            content={
                "success": True,
                "message": "Device registered" if created else "Device already registered",
                "data": device.model_dump(by_alias=True, mode="json"),
            },
        )

    @app.post("/api/device/store-data", status_code=201)
    def store_data(body: SensorPayload, request: Request):
        """Ingest one raw reading. 400 when rejected as sensor noise."""
        coord: IngestionCoordinator = request.app.state.coordinator
        result = coord.ingest(body.deviceID, body.waterLevel, body.rainIntensity, body.windSpeed)
        if not result.accepted:
            raise RejectedAsNoise(result.device_id, result.reason)
        return {
            "success": True,
            "message": "Data received",
            "data": result.model_dump(by_alias=True, mode="json", exclude_none=True),
        }

    # ── Read views ───────────────────────────────────────────────────────

    @app.get("/api/dashboard")
    def dashboard(request: Request):
        return {"success": True, "data": request.app.state.dashboard.summary()}

    @app.get("/api/monitoring")
    def monitoring(request: Request):
        return {"success": True, **request.app.state.dashboard.monitoring()}

    @app.get("/api/notifications")
    def notifications(
        request: Request,
        deviceID: Optional[str] = Query(None),
        severity: Optional[str] = Query(None),
        sort: str = Query("newest", pattern="^(newest|oldest)$"),
        limit: Optional[int] = Query(None, ge=1, le=1000),
    ):
        """Notification history grouped by day (``11 November 2025``)."""
        tier = None
        if severity and severity != "all":
            try:
                tier = StatusTier(severity)
            except ValueError:
                raise HTTPException(status_code=422, detail=f"unknown severity {severity!r}") from None
        history = request.app.state.dashboard.notification_history(
            device_id=None if deviceID in (None, "all") else deviceID,
            severity=tier,
            newest_first=sort != "oldest",
            limit=limit,
        )
        return {"success": True, "data": history}

    # ── Live stream ──────────────────────────────────────────────────────

    @app.get("/api/stream")
    async def stream(request: Request, channels: Optional[str] = Query(None)):
        """Server-Sent Events for dashboards.

        ``channels`` is a comma-separated topic list, e.g.
        ``dashboard,notifications,device.DEV-001``; all topics if omitted.
        """
        broadcaster = request.app.state.coordinator.broadcaster
        if not isinstance(broadcaster, InMemoryBroadcaster):
            raise HTTPException(status_code=503, detail="Live stream needs BROADCAST_BACKEND=memory")
        topics = [c.strip() for c in channels.split(",") if c.strip()] if channels else None
        sub = broadcaster.subscribe(topics)

        async def event_generator():
            try:
                yield f"event: connected\ndata: {json.dumps({'channels': topics or 'all'})}\n\n"
                while not sub.closed:
                    if await request.is_disconnected():
                        break
                    try:
                        topic, payload = await asyncio.wait_for(sub.queue.get(), timeout=30.0)
                        yield _sse(topic, payload)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
            finally:
                broadcaster.unsubscribe(sub)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    # ── Health ───────────────────────────────────────────────────────────

    @app.get("/health")
    def health(request: Request):
        coord: IngestionCoordinator = request.app.state.coordinator
        return {
            "service": "ingestion",
            "status": "healthy",
            "version": "1.0.0",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store_backend": settings.STORE_BACKEND,
            "broadcast_backend": settings.BROADCAST_BACKEND,
            "stats": coord.stats,
        }

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "services.ingestion.main:app",
        host=settings.SERVICE_HOST,
        port=settings.SERVICE_PORT,
    )
