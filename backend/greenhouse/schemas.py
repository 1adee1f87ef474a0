"""Pydantic request and response models for the HTTP API."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from .models import CommandStatus, CommandType


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string into an aware UTC datetime.

    A trailing ``Z`` is accepted and naive values are taken as UTC.
    """
    candidate = value.strip()
    if not candidate:
        raise ValueError("Timestamp is empty.")

    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise ValueError("Invalid timestamp format") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    return parsed.astimezone(timezone.utc)


class SensorDataIn(BaseModel):
    """Reading pushed by a device.

    Example:
    {
        "device_id": "sensor-001",
        "timestamp": "2025-12-26T20:00:00Z",
        "temperature": 25.5,
        "humidity": 60,
        "battery": 85
    }
    """

    device_id: str = Field(..., min_length=1, max_length=255)
    timestamp: datetime
    temperature: float = Field(..., strict=True, allow_inf_nan=False)
    humidity: float = Field(..., strict=True, ge=0, allow_inf_nan=False)
    battery: Optional[float] = Field(None, strict=True, allow_inf_nan=False)
    raw: Optional[Dict[str, Any]] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp_is_iso8601(cls, value: Any) -> datetime:
        if isinstance(value, datetime):
            return value.replace(tzinfo=value.tzinfo or timezone.utc).astimezone(timezone.utc)
        if isinstance(value, str):
            try:
                return parse_timestamp(value)
            except ValueError:
                pass
        raise PydanticCustomError("timestamp_format", "timestamp must be a valid ISO8601 format")


class DeviceControlIn(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=255)
    command: CommandType


class MqttPublishIn(BaseModel):
    topic: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)


class MqttSubscribeIn(BaseModel):
    topic: str = Field(..., min_length=1)


class _RecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class SensorReadingOut(_RecordOut):
    id: UUID
    device_id: str
    timestamp: datetime
    temperature: float
    humidity: float
    battery: Optional[float] = None
    raw: Optional[Dict[str, Any]] = None
    created_at: datetime


class DeviceCommandOut(_RecordOut):
    id: UUID
    device_id: str
    command: CommandType
    status: CommandStatus
    error_message: Optional[str] = None
    created_at: datetime


class SensorDataResponse(BaseModel):
    success: bool = True
    message: str
    id: UUID
    data: SensorReadingOut


class SensorListResponse(BaseModel):
    success: bool = True
    count: int
    data: List[SensorReadingOut]


class DeviceControlResponse(BaseModel):
    success: bool = True
    message: str
    status: CommandStatus
    data: DeviceCommandOut


class DeviceCommandResponse(BaseModel):
    success: bool = True
    data: DeviceCommandOut


class CommandHistoryResponse(BaseModel):
    success: bool = True
    count: int
    data: List[DeviceCommandOut]


class MqttActionResponse(BaseModel):
    success: bool = True
    message: str


class DatabaseHealth(BaseModel):
    status: str
    latency_ms: int = 0
    error: Optional[str] = None


class BrokerHealth(BaseModel):
    status: str
    error: Optional[str] = None


class HealthResponse(BaseModel):
    service: str
    db: DatabaseHealth
    mqtt: BrokerHealth


class ErrorDetail(BaseModel):
    field: str
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str
    details: Optional[List[ErrorDetail]] = None
    status: Optional[CommandStatus] = None
    data: Optional[DeviceCommandOut] = None
