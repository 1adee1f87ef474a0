from __future__ import annotations

from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from greenhouse.errors import MessagingFailure
from greenhouse.main import create_app
from greenhouse.settings import Settings
from greenhouse.storage import Database


class FakeMessaging:
    """In-memory stand-in for the MQTT gateway."""

    def __init__(self, connected: bool = True, fail_with: Optional[Exception] = None) -> None:
        self.connected = connected
        self.fail_with = fail_with
        self.published: List[Tuple[str, str]] = []
        self.subscriptions: List[str] = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        if not self.connected:
            raise MessagingFailure("Failed to connect to MQTT broker: [Errno 111] Connection refused")

    async def publish(self, topic: str, payload, qos: Optional[int] = None) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.published.append((topic, payload))

    async def subscribe(self, topic: str, qos: Optional[int] = None) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.subscriptions.append(topic)

    async def disconnect(self) -> None:
        self.connected = False


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


def build_client(
    tmp_path: Path,
    messaging: FakeMessaging,
    database_url: Optional[str] = None,
    create_schema: bool = True,
    raise_server_exceptions: bool = True,
    request_timeout: float = 30.0,
) -> TestClient:
    url = database_url or sqlite_url(tmp_path / "greenhouse.db")
    settings = Settings(
        database_url=url,
        database_create_schema=create_schema,
        log_level="WARNING",
        request_timeout=request_timeout,
    )
    app = create_app(settings=settings, storage=Database(url), messaging=messaging)
    return TestClient(app, raise_server_exceptions=raise_server_exceptions)


@pytest.fixture
def messaging() -> FakeMessaging:
    return FakeMessaging()


@pytest.fixture
def api_client(tmp_path, messaging) -> Iterator[TestClient]:
    with build_client(tmp_path, messaging) as client:
        yield client


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(sqlite_url(tmp_path / "storage.db"))
    await db.create_schema()
    try:
        yield db
    finally:
        await db.dispose()


@pytest.fixture
def make_messaging():
    return FakeMessaging


@pytest.fixture
def client_factory(tmp_path):
    """Build a client with a custom gateway or database URL; enter it with ``with``."""

    def factory(
        messaging: Optional[FakeMessaging] = None,
        database_url: Optional[str] = None,
        create_schema: bool = True,
        raise_server_exceptions: bool = True,
        request_timeout: float = 30.0,
    ) -> TestClient:
        return build_client(
            tmp_path,
            messaging or FakeMessaging(),
            database_url=database_url,
            create_schema=create_schema,
            raise_server_exceptions=raise_server_exceptions,
            request_timeout=request_timeout,
        )

    return factory
