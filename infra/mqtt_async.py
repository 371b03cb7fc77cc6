from __future__ import annotations

from contextlib import AsyncExitStack
from typing import Any, Optional

import aiomqtt

from domain.errors import ConnectError, ConnectionLost, PublishError, TransportError
from domain.models import InboundMessage
from domain.ports import ConnectionFactory


def _as_bytes(payload: Any) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode("utf-8")


class AiomqttConnection:
    """
    Conexão de um probe (aiomqtt, sem thread por cliente).

    Um aiomqtt.Client novo a cada connect(); a sessão é limpa
    (clean_session) e não há reconexão automática: quem reconecta é o ator.
    """

    def __init__(
        self,
        hostname: str,
        port: int,
        client_id: str,
        *,
        keepalive: int = 60,
        max_inflight: int = 100,
        timeout_sec: float = 10.0,
    ):
        self.hostname = hostname
        self.port = port
        self.client_id = client_id
        self.keepalive = keepalive
        self.max_inflight = max_inflight
        self.timeout_sec = timeout_sec

        self._client: Optional[aiomqtt.Client] = None
        self._stack: Optional[AsyncExitStack] = None

    async def connect(self) -> None:
        client = aiomqtt.Client(
            self.hostname,
            self.port,
            identifier=self.client_id,
            keepalive=self.keepalive,
            clean_session=True,
            max_inflight_messages=self.max_inflight,
            timeout=self.timeout_sec,
        )
        stack = AsyncExitStack()
        try:
            await stack.enter_async_context(client)
        except aiomqtt.MqttError as e:
            raise ConnectError(f"{self.client_id} unable to connect to {self.hostname}:{self.port}: {e}") from e
        self._client = client
        self._stack = stack

    def _require(self) -> aiomqtt.Client:
        if self._client is None:
            raise ConnectionLost(f"{self.client_id} not connected")
        return self._client

    async def subscribe(self, topic: str, qos: int) -> None:
        try:
            await self._require().subscribe(topic, qos=qos)
        except aiomqtt.MqttError as e:
            raise ConnectionLost(f"subscribe {topic}: {e}") from e

    async def unsubscribe(self, topic: str) -> None:
        try:
            await self._require().unsubscribe(topic)
        except aiomqtt.MqttError as e:
            raise TransportError(f"unsubscribe {topic}: {e}") from e

    async def publish(self, topic: str, payload: bytes, qos: int) -> None:
        client = self._require()
        try:
            await client.publish(topic, payload=payload, qos=qos)
        except aiomqtt.MqttCodeError as e:
            raise PublishError(f"publish {topic}: {e}") from e
        except aiomqtt.MqttError as e:
            raise ConnectionLost(f"publish {topic}: {e}") from e

    async def next_message(self) -> InboundMessage:
        client = self._require()
        try:
            message = await client.messages.__anext__()
        except (aiomqtt.MqttError, StopAsyncIteration) as e:
            raise ConnectionLost(f"{self.client_id} disconnected: {e}") from e
        return InboundMessage(topic=message.topic.value, payload=_as_bytes(message.payload))

    async def close(self) -> None:
        stack, self._stack = self._stack, None
        self._client = None
        if stack is None:
            return
        try:
            await stack.aclose()
        except aiomqtt.MqttError as e:
            raise TransportError(f"{self.client_id} disconnect: {e}") from e

    def is_connected(self) -> bool:
        return self._client is not None


def aiomqtt_connector(
    hostname: str,
    port: int,
    *,
    keepalive: int = 60,
    max_inflight: int = 100,
    timeout_sec: float = 10.0,
) -> ConnectionFactory:
    def _factory(client_id: str) -> AiomqttConnection:
        return AiomqttConnection(
            hostname,
            port,
            client_id,
            keepalive=keepalive,
            max_inflight=max_inflight,
            timeout_sec=timeout_sec,
        )

    return _factory
