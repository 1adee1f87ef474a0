"""Shared MQTT connection used for publishing device commands."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union
from uuid import uuid4

from asyncio_mqtt import Client, MqttError

from .errors import MessagingFailure

logger = logging.getLogger(__name__)

Payload = Union[str, bytes]


def control_topic(namespace: str, device_id: str) -> str:
    return f"{namespace}/control/{device_id}"


class MqttGateway:
    """One broker connection per process.

    ``connect`` reuses a live client and joins an in-flight attempt instead
    of opening a second connection.
    """

    def __init__(
        self,
        host: str,
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: str = "greenhouse-backend",
        qos: int = 1,
        connect_timeout: float = 4.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.client_id = f"{client_id}-{uuid4().hex[:7]}"
        self.qos = qos
        self.connect_timeout = connect_timeout
        self._client: Optional[Client] = None
        self._connected = False
        self._connecting: Optional[asyncio.Task] = None
        self._listener: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    async def connect(self) -> None:
        async with self._lock:
            if self.is_connected:
                return
            if self._connecting is None:
                self._connecting = asyncio.create_task(self._open())
            attempt = self._connecting
        await asyncio.shield(attempt)

    async def _open(self) -> None:
        client = Client(
            self.host,
            self.port,
            username=self.username,
            password=self.password,
            client_id=self.client_id,
            clean_session=True,
        )
        try:
            # a dropped session still owns its client and listener
            await self._close_stale()
            await client.connect(timeout=self.connect_timeout)
        except (MqttError, OSError) as exc:
            logger.error("MQTT connection to %s:%s failed", self.host, self.port, extra={"error": exc})
            raise MessagingFailure(f"Failed to connect to MQTT broker: {exc}") from exc
        finally:
            self._connecting = None

        self._client = client
        self._connected = True
        self._listener = asyncio.create_task(self._listen(client))
        logger.info("Connected to MQTT broker %s:%s as %s", self.host, self.port, self.client_id)

    async def _listen(self, client: Client) -> None:
        try:
            async with client.messages() as messages:
                async for message in messages:
                    logger.info(
                        "Received MQTT message: %s",
                        message.payload.decode(errors="replace"),
                        extra={"topic": str(message.topic)},
                    )
        except MqttError as exc:
            logger.warning("MQTT connection lost", extra={"error": exc})
        finally:
            if self._client is client:
                self._connected = False

    async def publish(self, topic: str, payload: Payload, qos: Optional[int] = None) -> None:
        await self.connect()
        client = self._client
        if client is None:
            raise MessagingFailure("MQTT client not connected")
        try:
            await client.publish(topic, payload, qos=self.qos if qos is None else qos)
        except MqttError as exc:
            self._connected = False
            raise MessagingFailure(f"Failed to publish to {topic}: {exc}") from exc
        logger.info("Published to MQTT", extra={"topic": topic})

    async def subscribe(self, topic: str, qos: Optional[int] = None) -> None:
        await self.connect()
        client = self._client
        if client is None:
            raise MessagingFailure("MQTT client not connected")
        try:
            await client.subscribe(topic, qos=self.qos if qos is None else qos)
        except MqttError as exc:
            raise MessagingFailure(f"Failed to subscribe to {topic}: {exc}") from exc
        logger.info("Subscribed to MQTT topic", extra={"topic": topic})

    async def _release(self) -> Optional[Client]:
        client, self._client = self._client, None
        self._connected = False
        listener, self._listener = self._listener, None
        if listener is not None and not listener.done():
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
        return client

    async def _close_stale(self) -> None:
        client = await self._release()
        if client is None:
            return
        try:
            await client.disconnect()
        except MqttError:
            logger.debug("Stale MQTT client was already closed")

    async def disconnect(self) -> None:
        client = await self._release()
        if client is None:
            return
        try:
            await client.disconnect()
        except MqttError as exc:
            logger.warning("MQTT disconnect did not complete cleanly", extra={"error": exc})
        else:
            logger.info("Disconnected from MQTT broker")
