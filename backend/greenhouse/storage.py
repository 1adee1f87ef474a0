"""Database gateway for sensor readings and device commands."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Base, build_engine, build_sessionmaker
from .errors import (
    DuplicateRecord,
    InvalidStatusTransition,
    RecordNotFound,
    StorageError,
    StorageUnavailable,
)
from .models import CommandStatus, CommandType, DeviceCommand, SensorReading

logger = logging.getLogger(__name__)


# SQLSTATE for unique_violation; asyncpg exposes it on the wrapped cause
_PG_UNIQUE_VIOLATION = "23505"
_SQLITE_UNIQUE_ERRORS = frozenset({"SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"})


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if getattr(candidate, "sqlite_errorname", None) in _SQLITE_UNIQUE_ERRORS:
            return True
        if getattr(candidate, "pgcode", None) == _PG_UNIQUE_VIOLATION:
            return True
        if getattr(candidate, "sqlstate", None) == _PG_UNIQUE_VIOLATION:
            return True
    return False


@asynccontextmanager
async def _translate_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except IntegrityError as exc:
        if _is_unique_violation(exc):
            raise DuplicateRecord(f"{operation}: {exc.orig}") from exc
        raise StorageError(f"{operation}: {exc.orig}") from exc
    except (OperationalError, InterfaceError) as exc:
        raise StorageUnavailable(f"{operation}: {exc.orig}") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise StorageUnavailable(f"{operation}: {exc.orig}") from exc
        raise StorageError(f"{operation}: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        raise StorageError(f"{operation}: {exc}") from exc
    except (OSError, asyncio.TimeoutError) as exc:
        # asyncpg surfaces refused/unreachable hosts as plain OSError
        raise StorageUnavailable(f"{operation}: {exc or type(exc).__name__}") from exc


class Database:
    """Owns the async engine and exposes typed reads and writes."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.url = database_url
        self.engine = build_engine(database_url, echo=echo)
        self._sessionmaker = build_sessionmaker(self.engine)

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with _translate_errors(operation):
            async with self._sessionmaker() as session:
                yield session

    async def create_schema(self) -> None:
        async with _translate_errors("create schema"):
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def ping(self, timeout: Optional[float] = None) -> None:
        """Run a trivial round-trip query, bounded by ``timeout`` seconds."""

        async def _round_trip() -> None:
            async with self._session("ping") as session:
                await session.execute(text("SELECT 1"))

        try:
            await asyncio.wait_for(_round_trip(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StorageUnavailable(f"ping: no response within {timeout}s") from exc

    # --- sensor readings ---

    async def find_reading(self, device_id: str, timestamp: datetime) -> Optional[SensorReading]:
        async with self._session("find reading") as session:
            res = await session.execute(
                select(SensorReading).where(
                    SensorReading.device_id == device_id,
                    SensorReading.timestamp == timestamp,
                )
            )
            return res.scalar_one_or_none()

    async def insert_reading(
        self,
        device_id: str,
        timestamp: datetime,
        temperature: float,
        humidity: float,
        battery: Optional[float] = None,
        raw: Optional[dict] = None,
    ) -> SensorReading:
        reading = SensorReading(
            device_id=device_id,
            timestamp=timestamp,
            temperature=temperature,
            humidity=humidity,
            battery=battery,
            raw=raw,
        )
        async with self._session("insert reading") as session:
            session.add(reading)
            await session.commit()
        return reading

    async def list_readings(
        self,
        device_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SensorReading]:
        query = select(SensorReading)
        if device_id:
            query = query.where(SensorReading.device_id == device_id)
        if start is not None:
            query = query.where(SensorReading.timestamp >= start)
        if end is not None:
            query = query.where(SensorReading.timestamp <= end)
        query = query.order_by(SensorReading.timestamp.desc()).limit(limit)
        async with self._session("list readings") as session:
            res = await session.execute(query)
            return list(res.scalars().all())

    # --- device commands ---

    async def insert_command(self, device_id: str, command: CommandType) -> DeviceCommand:
        cmd = DeviceCommand(device_id=device_id, command=command, status=CommandStatus.queued)
        async with self._session("insert command") as session:
            session.add(cmd)
            await session.commit()
        return cmd

    async def get_command(self, command_id: UUID) -> Optional[DeviceCommand]:
        async with self._session("get command") as session:
            return await session.get(DeviceCommand, command_id)

    async def update_command_status(
        self,
        command_id: UUID,
        status: CommandStatus,
        error_message: Optional[str] = None,
    ) -> DeviceCommand:
        """Move a queued command to its terminal status.

        Only ``queued -> published`` and ``queued -> error`` are accepted.
        """
        if status is CommandStatus.queued:
            raise InvalidStatusTransition(f"command {command_id} cannot be re-queued")
        async with self._session("update command") as session:
            cmd = await session.get(DeviceCommand, command_id)
            if cmd is None:
                raise RecordNotFound(f"command {command_id} not found")
            if cmd.status is not CommandStatus.queued:
                raise InvalidStatusTransition(
                    f"command {command_id} is already {cmd.status.value}"
                )
            cmd.status = status
            cmd.error_message = error_message if status is CommandStatus.error else None
            await session.commit()
            return cmd

    async def list_commands(self, device_id: str, limit: int = 50) -> List[DeviceCommand]:
        async with self._session("list commands") as session:
            res = await session.execute(
                select(DeviceCommand)
                .where(DeviceCommand.device_id == device_id)
                .order_by(DeviceCommand.created_at.desc())
                .limit(limit)
            )
            return list(res.scalars().all())
