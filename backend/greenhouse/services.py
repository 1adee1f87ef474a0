"""Sensor ingestion, device command and health services."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from .errors import CommandPublishError, DuplicateRecord, RecordNotFound, StorageUnavailable
from .models import CommandStatus, CommandType, DeviceCommand, SensorReading
from .mqtt import MqttGateway, control_topic
from .schemas import SensorDataIn
from .storage import Database

logger = logging.getLogger(__name__)

CONNECTED = "connected"
DISCONNECTED = "disconnected"


@dataclass
class SubmitResult:
    is_new: bool
    reading: SensorReading


class SensorService:
    """Idempotent ingestion keyed on (device_id, timestamp)."""

    def __init__(self, storage: Database) -> None:
        self.storage = storage

    async def submit(self, data: SensorDataIn) -> SubmitResult:
        existing = await self.storage.find_reading(data.device_id, data.timestamp)
        if existing is not None:
            logger.info(
                "Duplicate sensor reading, returning stored record",
                extra={"device_id": data.device_id, "reading_id": existing.id},
            )
            return SubmitResult(is_new=False, reading=existing)

        try:
            reading = await self.storage.insert_reading(
                device_id=data.device_id,
                timestamp=data.timestamp,
                temperature=data.temperature,
                humidity=data.humidity,
                battery=data.battery,
                raw=data.raw,
            )
        except DuplicateRecord:
            # a concurrent submission committed first
            existing = await self.storage.find_reading(data.device_id, data.timestamp)
            if existing is None:
                raise
            logger.warning(
                "Lost insert race for sensor reading",
                extra={"device_id": data.device_id, "reading_id": existing.id},
            )
            return SubmitResult(is_new=False, reading=existing)

        logger.info(
            "Stored sensor reading",
            extra={"device_id": reading.device_id, "reading_id": reading.id},
        )
        return SubmitResult(is_new=True, reading=reading)

    async def list_readings(
        self,
        device_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SensorReading]:
        return await self.storage.list_readings(device_id=device_id, start=start, end=end, limit=limit)


def _iso_now() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class DeviceService:
    """Persists a command, publishes it and records the outcome."""

    def __init__(self, storage: Database, messaging: MqttGateway, namespace: str = "greenhouse") -> None:
        self.storage = storage
        self.messaging = messaging
        self.namespace = namespace

    async def send_command(self, device_id: str, command: CommandType) -> DeviceCommand:
        record = await self.storage.insert_command(device_id, command)
        topic = control_topic(self.namespace, device_id)
        payload = json.dumps({"command": command.value, "timestamp": _iso_now()})

        try:
            await self.messaging.publish(topic, payload)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning(
                "Device command publish failed",
                extra={"device_id": device_id, "command_id": record.id, "topic": topic, "error": message},
            )
            record = await self.storage.update_command_status(record.id, CommandStatus.error, message)
            raise CommandPublishError(record, message) from exc

        record = await self.storage.update_command_status(record.id, CommandStatus.published)
        logger.info(
            "Device command published",
            extra={"device_id": device_id, "command_id": record.id, "command": command.value},
        )
        return record

    async def get(self, command_id: UUID) -> DeviceCommand:
        record = await self.storage.get_command(command_id)
        if record is None:
            raise RecordNotFound(f"command {command_id} not found")
        return record

    async def history(self, device_id: str, limit: int = 50) -> List[DeviceCommand]:
        return await self.storage.list_commands(device_id, limit=limit)


@dataclass
class ProbeResult:
    status: str
    latency_ms: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == CONNECTED


@dataclass
class HealthReport:
    db: ProbeResult
    broker: ProbeResult

    @property
    def overall(self) -> str:
        return "ok" if self.db.ok and self.broker.ok else "degraded"

    @property
    def is_healthy(self) -> bool:
        return self.overall == "ok"


class HealthService:
    def __init__(self, storage: Database, messaging: MqttGateway, db_timeout: float = 2.0) -> None:
        self.storage = storage
        self.messaging = messaging
        self.db_timeout = db_timeout

    async def check_database(self) -> ProbeResult:
        start_time = time.perf_counter()
        try:
            await self.storage.ping(timeout=self.db_timeout)
        except StorageUnavailable as exc:
            return ProbeResult(status=DISCONNECTED, error=str(exc))
        latency_ms = int((time.perf_counter() - start_time) * 1000)
        return ProbeResult(status=CONNECTED, latency_ms=latency_ms)

    async def check_broker(self) -> ProbeResult:
        if self.messaging.is_connected:
            return ProbeResult(status=CONNECTED)
        return ProbeResult(status=DISCONNECTED, error="MQTT client disconnected")

    async def check(self) -> HealthReport:
        db_result, broker_result = await asyncio.gather(
            self.check_database(),
            self.check_broker(),
            return_exceptions=True,
        )
        if isinstance(db_result, BaseException):
            logger.error("Database probe raised", exc_info=db_result)
            db_result = ProbeResult(status=DISCONNECTED, error="Health check failed")
        if isinstance(broker_result, BaseException):
            logger.error("Broker probe raised", exc_info=broker_result)
            broker_result = ProbeResult(status=DISCONNECTED, error="Health check failed")

        report = HealthReport(db=db_result, broker=broker_result)
        if not report.is_healthy:
            logger.warning(
                "Health check degraded",
                extra={"status": f"db={report.db.status} mqtt={report.broker.status}"},
            )
        return report
