import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Enum, Float, Index, String, Text, TypeDecorator, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that is always written and read back as UTC.

    SQLite drops the offset on storage, so naive values coming back from the
    driver are tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class CommandType(str, enum.Enum):
    ON = "ON"
    OFF = "OFF"


class CommandStatus(str, enum.Enum):
    queued = "queued"
    published = "published"
    error = "error"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class SensorReading(Base):
    __tablename__ = "sensor_readings"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    device_id = Column(String(255), nullable=False)
    timestamp = Column(UTCDateTime, nullable=False)
    temperature = Column(Float, nullable=False)
    humidity = Column(Float, nullable=False)
    battery = Column(Float, nullable=True)
    # extra sensor fields the device chose to send
    raw = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)
    __table_args__ = (
        UniqueConstraint("device_id", "timestamp", name="uq_sensor_readings_device_timestamp"),
        Index("ix_sensor_readings_device_id", "device_id"),
        Index("ix_sensor_readings_timestamp", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<SensorReading {self.device_id}@{self.timestamp}>"


class DeviceCommand(Base):
    __tablename__ = "device_commands"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    device_id = Column(String(255), nullable=False)
    command = Column(
        Enum(CommandType, name="device_commands_command_enum", values_callable=_enum_values),
        nullable=False,
    )
    status = Column(
        Enum(CommandStatus, name="device_commands_status_enum", values_callable=_enum_values),
        nullable=False,
        default=CommandStatus.queued,
        server_default=CommandStatus.queued.value,
    )
    error_message = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)
    __table_args__ = (
        Index("ix_device_commands_device_id", "device_id"),
        Index("ix_device_commands_status", "status"),
        Index("ix_device_commands_device_created", "device_id", created_at.desc()),
    )

    def __repr__(self) -> str:
        return f"<DeviceCommand {self.command} -> {self.device_id} [{self.status}]>"
