"""Typed failures raised by the gateways and services."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import DeviceCommand


class GreenhouseError(Exception):
    """Base exception for the greenhouse backend"""


class StorageError(GreenhouseError):
    """Raised when a database operation fails for a reason other than connectivity"""


class StorageUnavailable(StorageError):
    """Raised when the database cannot be reached"""


class DuplicateRecord(StorageError):
    """Raised when an insert violates a uniqueness constraint"""


class RecordNotFound(StorageError):
    """Raised when an update targets a row that does not exist"""


class InvalidStatusTransition(StorageError):
    """Raised when a device command would leave a terminal status"""


class MessagingFailure(GreenhouseError):
    """Raised when the MQTT broker rejects or cannot carry a request"""


class CommandPublishError(MessagingFailure):
    """Publishing a device command failed; the stored command is in ``error`` status."""

    def __init__(self, command: "DeviceCommand", message: str) -> None:
        super().__init__(message)
        self.command = command
