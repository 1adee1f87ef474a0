"""HTTP route definitions for the service."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from .errors import MessagingFailure
from .mqtt import MqttGateway
from .schemas import (
    BrokerHealth,
    CommandHistoryResponse,
    DatabaseHealth,
    DeviceCommandOut,
    DeviceCommandResponse,
    DeviceControlIn,
    DeviceControlResponse,
    ErrorResponse,
    HealthResponse,
    MqttActionResponse,
    MqttPublishIn,
    MqttSubscribeIn,
    SensorDataIn,
    SensorDataResponse,
    SensorListResponse,
    SensorReadingOut,
)
from .services import DeviceService, HealthService, SensorService


def get_sensor_service(request: Request) -> SensorService:
    return request.app.state.sensor_service


def get_device_service(request: Request) -> DeviceService:
    return request.app.state.device_service


def get_health_service(request: Request) -> HealthService:
    return request.app.state.health_service


def get_messaging(request: Request) -> MqttGateway:
    return request.app.state.messaging


def _json(model, status_code: int = status.HTTP_200_OK, exclude_none: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=model.model_dump(mode="json", by_alias=True, exclude_none=exclude_none),
    )


health_router = APIRouter(prefix="/health", tags=["health"])
sensor_router = APIRouter(prefix="/sensors", tags=["sensors"])
device_router = APIRouter(prefix="/devices", tags=["devices"])
mqtt_router = APIRouter(prefix="/mqtt", tags=["mqtt"])


@health_router.get(
    "/status",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse}},
    summary="Database and broker connectivity.",
)
async def health_status(health: HealthService = Depends(get_health_service)) -> JSONResponse:
    report = await health.check()
    body = HealthResponse(
        service=report.overall,
        db=DatabaseHealth(status=report.db.status, latency_ms=report.db.latency_ms, error=report.db.error),
        mqtt=BrokerHealth(status=report.broker.status, error=report.broker.error),
    )
    code = status.HTTP_200_OK if report.is_healthy else status.HTTP_503_SERVICE_UNAVAILABLE
    return _json(body, code, exclude_none=True)


@sensor_router.post(
    "/sensor-data",
    status_code=status.HTTP_201_CREATED,
    response_model=SensorDataResponse,
    responses={200: {"model": SensorDataResponse}, 400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Store a sensor reading; repeated (device_id, timestamp) pairs return the stored record.",
)
async def create_sensor_data(
    body: SensorDataIn,
    sensors: SensorService = Depends(get_sensor_service),
) -> JSONResponse:
    result = await sensors.submit(body)
    reading = SensorReadingOut.model_validate(result.reading)
    if result.is_new:
        return _json(
            SensorDataResponse(message="New record created", id=reading.id, data=reading),
            status.HTTP_201_CREATED,
        )
    return _json(SensorDataResponse(message="Record already exists", id=reading.id, data=reading))


@sensor_router.get(
    "/sensor-data",
    response_model=SensorListResponse,
    summary="List sensor readings, newest first.",
)
async def list_sensor_data(
    device_id: Optional[str] = Query(None, min_length=1),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    sensors: SensorService = Depends(get_sensor_service),
) -> JSONResponse:
    readings = await sensors.list_readings(device_id=device_id, start=start_date, end=end_date, limit=limit)
    data = [SensorReadingOut.model_validate(r) for r in readings]
    return _json(SensorListResponse(count=len(data), data=data))


@device_router.post(
    "/device-control",
    status_code=status.HTTP_201_CREATED,
    response_model=DeviceControlResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Queue a command, publish it over MQTT and record the outcome.",
)
async def device_control(
    body: DeviceControlIn,
    devices: DeviceService = Depends(get_device_service),
) -> JSONResponse:
    """Publishes to ``<namespace>/control/<device_id>``.

    The device receives:
    {
        "command": "ON",
        "timestamp": "2025-12-26T20:00:00.000Z"
    }
    """
    record = await devices.send_command(body.device_id, body.command)
    data = DeviceCommandOut.model_validate(record)
    return _json(
        DeviceControlResponse(message="Command sent successfully", status=data.status, data=data),
        status.HTTP_201_CREATED,
    )


@device_router.get(
    "/{device_id}/commands",
    response_model=CommandHistoryResponse,
    summary="Commands sent to a device, newest first.",
)
async def command_history(
    device_id: str,
    limit: int = Query(50, ge=1, le=500),
    devices: DeviceService = Depends(get_device_service),
) -> JSONResponse:
    commands = await devices.history(device_id, limit=limit)
    data = [DeviceCommandOut.model_validate(c) for c in commands]
    return _json(CommandHistoryResponse(count=len(data), data=data))


@device_router.get(
    "/commands/{command_id}",
    response_model=DeviceCommandResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Look up a single command and its delivery status.",
)
async def get_command(command_id: UUID, devices: DeviceService = Depends(get_device_service)) -> JSONResponse:
    record = await devices.get(command_id)
    return _json(DeviceCommandResponse(data=DeviceCommandOut.model_validate(record)))


@mqtt_router.post("/publish", response_model=MqttActionResponse, summary="Publish a raw message.")
async def mqtt_publish(body: MqttPublishIn, messaging: MqttGateway = Depends(get_messaging)) -> JSONResponse:
    try:
        await messaging.publish(body.topic, body.message)
    except MessagingFailure as exc:
        return _json(
            ErrorResponse(error="mqtt_publish_failed", message=str(exc)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            exclude_none=True,
        )
    return _json(MqttActionResponse(message=f"Message published to topic: {body.topic}"))


@mqtt_router.post("/subscribe", response_model=MqttActionResponse, summary="Subscribe the backend to a topic.")
async def mqtt_subscribe(body: MqttSubscribeIn, messaging: MqttGateway = Depends(get_messaging)) -> JSONResponse:
    try:
        await messaging.subscribe(body.topic)
    except MessagingFailure as exc:
        return _json(
            ErrorResponse(error="mqtt_subscribe_failed", message=str(exc)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            exclude_none=True,
        )
    return _json(MqttActionResponse(message=f"Subscribed to topic: {body.topic}"))
