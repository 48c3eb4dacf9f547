"""
Air Monitor - API Server

Provides endpoints for:
- Sensor ingestion (POST /api/data)
- Current reading, history and statistics
- CSV / JSON export
- Live updates over WebSocket (/ws)
- Device queries served by the optional database backend
"""

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Request, Response, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from airmonitor.core.config import Settings, get_settings
from airmonitor.core.database import create_engine, create_session_maker, init_models
from airmonitor.core.exceptions import ValidationError
from airmonitor.mqtt.main import MQTTIngestor
from airmonitor.services.backends import BackendResult, DatabaseBackend, ReadingBackend, select_backend
from airmonitor.services.distributor import LiveDistributor
from airmonitor.services.export import CSV_FILENAME, JSON_FILENAME, readings_to_csv, readings_to_json
from airmonitor.services.ingestion import ReadingIngestor
from airmonitor.services.store import ReadingStore

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

ENDPOINTS = {
    "current": "GET /api/current",
    "history": "GET /api/history?limit=50",
    "stats": "GET /api/stats",
    "ingest": "POST /api/data",
    "clear": "POST /api/clear",
    "export_csv": "GET /api/export/csv",
    "export_json": "GET /api/export/json",
    "config": "GET /api/config",
    "devices": "GET /api/devices",
    "devices_latest": "GET /api/devices/latest",
    "device_stats": "GET /api/devices/{device_uid}/stats",
    "readings": "GET /api/readings?limit=50",
    "live": "WS /ws",
    "health": "GET /health",
}


# ==================== DEPENDENCIES ====================

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_backend(request: Request) -> ReadingBackend:
    return request.app.state.backend


def get_database(request: Request) -> DatabaseBackend:
    return request.app.state.database


def get_distributor(request: Request) -> LiveDistributor:
    return request.app.state.distributor


def get_ingestor(request: Request) -> ReadingIngestor:
    return request.app.state.ingestor


def parse_limit(raw: str | None, default: int) -> int:
    """Positive integer limit, or the default for anything else."""
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return default
    return limit if limit > 0 else default


def backend_failure(result: BackendResult) -> JSONResponse:
    """Map a failed backend call to an error response."""
    status_code = 503 if result.unavailable else 500
    return JSONResponse({"success": False, "error": result.message}, status_code=status_code)


router = APIRouter()


# ==================== QUERIES ====================

@router.get("/api/current")
async def get_current(backend: ReadingBackend = Depends(get_backend)):
    """Current reading with status and statistics."""
    result = await backend.current()
    if not result.success:
        return backend_failure(result)

    return {
        "success": True,
        "data": result.data.current.to_wire(),
        "stats": result.data.stats.to_wire(),
    }


@router.get("/api/history")
async def get_history(
    limit: str | None = None,
    backend: ReadingBackend = Depends(get_backend),
    settings: Settings = Depends(get_app_settings),
):
    """Latest readings, oldest first."""
    result = await backend.history(parse_limit(limit, settings.default_history_limit))
    if not result.success:
        return backend_failure(result)

    return {
        "success": True,
        "data": [r.to_wire() for r in result.data],
        "count": len(result.data),
    }


@router.get("/api/stats")
async def get_stats(backend: ReadingBackend = Depends(get_backend)):
    """Running statistics."""
    result = await backend.stats()
    if not result.success:
        return backend_failure(result)

    return {"success": True, "stats": result.data.to_wire()}


# ==================== INGESTION ====================

@router.post("/api/data")
async def receive_data(
    request: Request,
    background_tasks: BackgroundTasks,
    ingestor: ReadingIngestor = Depends(get_ingestor),
    distributor: LiveDistributor = Depends(get_distributor),
):
    """
    Receive a reading from the sensor.
    Body: {"temperature": 24.5, "humidity": 41, "heatIndex": 24.8}
    or the same fields form-encoded.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        payload = dict(form)
    else:
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"success": False, "error": "Invalid JSON body"}, status_code=400)

    try:
        result = await ingestor.accept(payload)
    except ValidationError as e:
        logger.warning(f"⚠️ Rejected reading: {e}")
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)

    if not result.success:
        return backend_failure(result)

    # Push after the response is sent so slow viewers never delay the sensor
    background_tasks.add_task(distributor.broadcast, result.data)

    return {
        "success": True,
        "message": "Data received successfully",
        "data": result.data.current.to_wire(),
        "stats": result.data.stats.to_wire(),
    }


@router.post("/api/clear")
async def clear_data(backend: ReadingBackend = Depends(get_backend)):
    """Clear history and statistics (the current reading is kept)."""
    result = await backend.clear()
    if not result.success:
        return backend_failure(result)

    return {"success": True, "message": "Data cleared"}


# ==================== EXPORT ====================

@router.get("/api/export/csv")
async def export_csv(backend: ReadingBackend = Depends(get_backend)):
    """Download the whole history as CSV."""
    result = await backend.all_readings()
    if not result.success:
        return backend_failure(result)

    return Response(
        content=readings_to_csv(result.data),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={CSV_FILENAME}"},
    )


@router.get("/api/export/json")
async def export_json(backend: ReadingBackend = Depends(get_backend)):
    """Download the whole history and statistics as JSON."""
    readings = await backend.all_readings()
    if not readings.success:
        return backend_failure(readings)

    stats = await backend.stats()
    if not stats.success:
        return backend_failure(stats)

    return JSONResponse(
        readings_to_json(readings.data, stats.data),
        headers={"Content-Disposition": f"attachment; filename={JSON_FILENAME}"},
    )


# ==================== DEVICES (DATABASE) ====================

@router.get("/api/devices")
async def list_devices(database: DatabaseBackend = Depends(get_database)):
    """Active devices."""
    result = await database.devices()
    if not result.success:
        return backend_failure(result)

    return {"success": True, "data": result.data}


@router.get("/api/devices/latest")
async def latest_per_device(database: DatabaseBackend = Depends(get_database)):
    """Latest reading of each device."""
    result = await database.latest_per_device()
    if not result.success:
        return backend_failure(result)

    return {"success": True, "data": result.data}


@router.get("/api/devices/{device_uid}/stats")
async def device_stats(device_uid: str, database: DatabaseBackend = Depends(get_database)):
    """Statistics of one stored device."""
    result = await database.device_stats(device_uid)
    if not result.success:
        return backend_failure(result)

    if result.data is None:
        return JSONResponse({"success": False, "error": "Device not found"}, status_code=404)

    return {"success": True, "stats": result.data.to_wire()}


@router.get("/api/readings")
async def latest_readings(
    limit: str | None = None,
    database: DatabaseBackend = Depends(get_database),
    settings: Settings = Depends(get_app_settings),
):
    """Newest stored readings across all devices."""
    result = await database.latest_readings(parse_limit(limit, settings.default_history_limit))
    if not result.success:
        return backend_failure(result)

    return {"success": True, "data": result.data, "count": len(result.data)}


# ==================== LIVE UPDATES ====================

@router.websocket("/ws")
async def live_updates(websocket: WebSocket):
    """Push an "initial" snapshot, then an "update" for every new reading."""
    distributor: LiveDistributor = websocket.app.state.distributor

    await websocket.accept()
    subscriber = await distributor.subscribe(websocket)

    try:
        # Nothing is expected from viewers; wait for the disconnect
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        distributor.unsubscribe(subscriber)


# ==================== SERVICE INFO ====================

@router.get("/api/config")
async def get_client_config(request: Request, settings: Settings = Depends(get_app_settings)):
    """Dashboard configuration: live endpoint and fallback polling interval."""
    return {
        "wsPath": "/ws",
        "pollIntervalMs": settings.poll_interval_ms,
        "chartMaxPoints": settings.chart_max_points,
        "historyCapacity": settings.history_capacity,
        "storageBackend": request.app.state.backend.name,
    }


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": API_VERSION,
        "backend": request.app.state.backend.name,
        "subscribers": len(request.app.state.distributor.subscribers),
    }


@router.get("/")
async def root():
    """Root endpoint with the list of endpoints."""
    return {
        "service": "Air Monitor API",
        "version": API_VERSION,
        "endpoints": ENDPOINTS,
    }


# ==================== APP ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    distributor: LiveDistributor = app.state.distributor
    engine = app.state.engine

    if engine is not None:
        try:
            await init_models(engine)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"❌ Could not initialize database schema: {e}")

    distributor.start()

    mqtt_ingestor = None
    if settings.mqtt_enabled:
        mqtt_ingestor = MQTTIngestor(settings, app.state.ingestor)
        mqtt_ingestor.start()

    logger.info(f"🌡️ Air Monitor API v{API_VERSION} on http://{settings.host}:{settings.port}")
    for name, endpoint in ENDPOINTS.items():
        logger.info(f"   {endpoint:<40} {name}")
    logger.info("⏳ Waiting for sensor data...")

    try:
        yield
    finally:
        if mqtt_ingestor:
            mqtt_ingestor.stop()
        await distributor.stop()
        if engine is not None:
            await engine.dispose()
        logger.info("👋 Air Monitor API stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application with its own store, backend and distributor."""
    if settings is None:
        settings = get_settings()

    store = ReadingStore(
        capacity=settings.history_capacity,
        default_limit=settings.default_history_limit,
    )

    engine = create_engine(settings.database_url)
    database = DatabaseBackend(
        create_session_maker(engine),
        device_uid=settings.device_uid,
        device_name=settings.device_name,
        capacity=settings.history_capacity,
        default_limit=settings.default_history_limit,
    )
    backend = select_backend(settings, store, database)

    distributor = LiveDistributor(
        backend,
        stale_after_ms=settings.stale_after_ms,
        watchdog_interval=settings.watchdog_interval_seconds,
        send_timeout=settings.send_timeout_seconds,
    )

    app = FastAPI(
        title="Air Monitor API",
        description="Temperature and humidity monitoring with live updates",
        version=API_VERSION,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.database = database
    app.state.backend = backend
    app.state.distributor = distributor
    app.state.ingestor = ReadingIngestor(backend, distributor)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    return app


app = create_app()


# ==================== MAIN ====================

def main():
    """Entry point."""
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="[%(asctime)s] [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
