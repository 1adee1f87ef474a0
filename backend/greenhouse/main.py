from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import __version__
from .api import device_router, health_router, mqtt_router, sensor_router
from .errors import CommandPublishError, MessagingFailure, RecordNotFound, StorageError, StorageUnavailable
from .logging_config import configure_logging
from .mqtt import MqttGateway
from .schemas import DeviceCommandOut, ErrorDetail, ErrorResponse
from .services import DeviceService, HealthService, SensorService
from .settings import Settings, get_settings
from .storage import Database

logger = logging.getLogger(__name__)


def _error(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def _field_name(loc) -> str:
    parts = [str(part) for part in loc]
    if parts and parts[0] in ("body", "query", "path"):
        parts = parts[1:]
    return ".".join(parts) or "body"


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [ErrorDetail(field=_field_name(err.get("loc", ())), message=err.get("msg", "")) for err in exc.errors()]
    logger.info("Rejected request to %s: %d invalid field(s)", request.url.path, len(details))
    return _error(
        status.HTTP_400_BAD_REQUEST,
        ErrorResponse(error="validation_failed", message="Validation failed", details=details),
    )


async def storage_unavailable_handler(request: Request, exc: StorageUnavailable) -> JSONResponse:
    logger.error("Database unavailable while handling %s", request.url.path, extra={"error": exc})
    return _error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        ErrorResponse(
            error="database_unavailable",
            message="Unable to connect to database. Please try again later.",
        ),
    )


async def record_not_found_handler(request: Request, exc: RecordNotFound) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, ErrorResponse(error="not_found", message=str(exc)))


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("Storage error while handling %s", request.url.path, exc_info=exc)
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorResponse(error="storage_error", message="The request could not be stored"),
    )


async def command_publish_error_handler(request: Request, exc: CommandPublishError) -> JSONResponse:
    data = DeviceCommandOut.model_validate(exc.command)
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorResponse(error="mqtt_publish_failed", message=str(exc), status=data.status, data=data),
    )


async def messaging_failure_handler(request: Request, exc: MessagingFailure) -> JSONResponse:
    logger.error("MQTT failure while handling %s", request.url.path, extra={"error": exc})
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorResponse(error="mqtt_error", message=str(exc)),
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error while handling %s", request.url.path, exc_info=exc)
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorResponse(error="internal_error", message="An unexpected error occurred"),
    )


def _build_messaging(settings: Settings) -> MqttGateway:
    return MqttGateway(
        host=settings.mqtt_host,
        port=settings.mqtt_port,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        client_id=settings.mqtt_client_id,
        qos=settings.mqtt_qos,
        connect_timeout=settings.mqtt_connect_timeout,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    storage: Database = app.state.storage or Database(settings.database_url, echo=settings.database_echo)
    messaging: MqttGateway = app.state.messaging or _build_messaging(settings)
    app.state.storage = storage
    app.state.messaging = messaging

    if settings.database_create_schema:
        try:
            await storage.create_schema()
        except StorageError:
            logger.exception("Database initialisation failed")
            await storage.dispose()
            raise
    logger.info("Database ready")

    try:
        await messaging.connect()
    except MessagingFailure:
        # the API still serves; health reports the broker as disconnected
        logger.warning("MQTT unavailable at startup, continuing without it")

    app.state.sensor_service = SensorService(storage)
    app.state.device_service = DeviceService(storage, messaging, namespace=settings.mqtt_namespace)
    app.state.health_service = HealthService(storage, messaging, db_timeout=settings.health_db_timeout)
    try:
        yield
    finally:
        await messaging.disconnect()
        await storage.dispose()
        logger.info("Connections closed")


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Database] = None,
    messaging: Optional[MqttGateway] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(
        title="IoT Greenhouse Monitoring System",
        description="FastAPI + SQLAlchemy + MQTT backend for greenhouse sensors and devices.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.storage = storage
    app.state.messaging = messaging

    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StorageUnavailable, storage_unavailable_handler)
    app.add_exception_handler(RecordNotFound, record_not_found_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(CommandPublishError, command_publish_error_handler)
    app.add_exception_handler(MessagingFailure, messaging_failure_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    @app.middleware("http")
    async def enforce_request_timeout(request: Request, call_next):
        try:
            return await asyncio.wait_for(call_next(request), timeout=settings.request_timeout)
        except asyncio.TimeoutError:
            logger.error("Request to %s exceeded %ss", request.url.path, settings.request_timeout)
            return _error(
                status.HTTP_504_GATEWAY_TIMEOUT,
                ErrorResponse(error="request_timeout", message="The request took too long to complete"),
            )

    prefix = settings.api_prefix

    @app.get("/", include_in_schema=False)
    async def root() -> dict:
        return {
            "message": "IoT Greenhouse Monitoring System",
            "version": __version__,
            "endpoints": {
                "health": f"{prefix}/health/status",
                "mqtt": f"{prefix}/mqtt",
                "sensorData": f"{prefix}/sensors/sensor-data",
                "deviceControl": f"{prefix}/devices/device-control",
            },
        }

    for router in (health_router, sensor_router, device_router, mqtt_router):
        app.include_router(router, prefix=prefix)
    return app


app = create_app()
