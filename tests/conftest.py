"""
Fakes em memória para os testes: broker com wildcard MQTT, conexão async
dos probes, cliente síncrono do recorder e relógio controlável.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest
from paho.mqtt.client import topic_matches_sub

from domain.errors import ConnectError, ConnectionLost, PublishError
from domain.models import InboundMessage
from domain.ports import MessageHandler

_LOST = object()


class FakeClock:
    def __init__(self, epoch: float = 1_700_000_000.0):
        self.epoch = epoch

    def now_epoch(self) -> float:
        return self.epoch

    def now_ms(self) -> int:
        return int(self.epoch * 1000)

    def advance_ms(self, ms: float) -> None:
        self.epoch += ms / 1000.0


class InMemoryBroker:
    def __init__(self):
        self._subs: List[Tuple[str, object, Callable[[str, bytes], None]]] = []
        self.published: List[Tuple[str, bytes]] = []
        self.connections: Dict[str, List["MemoryConnection"]] = {}
        self.refuse: Set[str] = set()
        self.refuse_all = False
        self.fail_publish = False
        self.fail_subscribe = False

    def subscribe(self, owner: object, pattern: str, deliver: Callable[[str, bytes], None]) -> None:
        self._subs.append((pattern, owner, deliver))

    def unsubscribe(self, owner: object, pattern: str) -> None:
        self._subs = [s for s in self._subs if not (s[0] == pattern and s[1] is owner)]

    def drop_owner(self, owner: object) -> None:
        self._subs = [s for s in self._subs if s[1] is not owner]

    def publish(self, topic: str, payload: bytes) -> None:
        self.published.append((topic, payload))
        for pattern, _owner, deliver in list(self._subs):
            if topic_matches_sub(pattern, topic):
                deliver(topic, payload)

    def topics_published(self, prefix: str = "") -> List[str]:
        return [t for t, _ in self.published if t.startswith(prefix)]

    def connector(self) -> Callable[[str], "MemoryConnection"]:
        def _factory(client_id: str) -> MemoryConnection:
            conn = MemoryConnection(self, client_id)
            self.connections.setdefault(client_id, []).append(conn)
            return conn

        return _factory

    def latest(self, client_id: str) -> "MemoryConnection":
        return self.connections[client_id][-1]


class QueuedBroker(InMemoryBroker):
    """Entrega só quando o teste chama pump(), como um broker de verdade (assíncrono)."""

    def __init__(self):
        super().__init__()
        self.backlog: List[Tuple[str, bytes]] = []

    def publish(self, topic: str, payload: bytes) -> None:
        self.published.append((topic, payload))
        self.backlog.append((topic, payload))

    def pump(self, rounds: int = 50) -> int:
        delivered = 0
        for _ in range(rounds):
            if not self.backlog:
                break
            topic, payload = self.backlog.pop(0)
            for pattern, _owner, deliver in list(self._subs):
                if topic_matches_sub(pattern, topic):
                    deliver(topic, payload)
            delivered += 1
        return delivered


class MemoryConnection:
    def __init__(self, broker: InMemoryBroker, client_id: str):
        self.broker = broker
        self.client_id = client_id
        self.connected = False
        self.closed = False
        self.subscriptions: List[str] = []
        self.unsubscribed: List[str] = []
        self._q: Optional[asyncio.Queue] = None

    async def connect(self) -> None:
        if self.broker.refuse_all or self.client_id in self.broker.refuse:
            raise ConnectError(f"{self.client_id} refused")
        self._q = asyncio.Queue()
        self.connected = True

    def _deliver(self, topic: str, payload: bytes) -> None:
        if self._q is not None:
            self._q.put_nowait(InboundMessage(topic=topic, payload=payload))

    async def subscribe(self, topic: str, qos: int) -> None:
        if self.broker.fail_subscribe:
            raise ConnectionLost(f"subscribe {topic} rejected")
        self.subscriptions.append(topic)
        self.broker.subscribe(self, topic, self._deliver)

    async def unsubscribe(self, topic: str) -> None:
        self.unsubscribed.append(topic)
        self.broker.unsubscribe(self, topic)

    async def publish(self, topic: str, payload: bytes, qos: int) -> None:
        # devolve o controle ao loop, como um transporte de verdade
        await asyncio.sleep(0)
        if not self.connected:
            raise ConnectionLost(f"{self.client_id} not connected")
        if self.broker.fail_publish:
            raise PublishError(f"publish {topic} rejected")
        self.broker.publish(topic, payload)

    async def next_message(self) -> InboundMessage:
        if self._q is None:
            raise ConnectionLost(f"{self.client_id} not connected")
        item = await self._q.get()
        if item is _LOST:
            raise ConnectionLost(f"{self.client_id} dropped")
        return item

    async def close(self) -> None:
        self.connected = False
        self.closed = True
        self.broker.drop_owner(self)

    def is_connected(self) -> bool:
        return self.connected

    def inject(self, topic: str, payload: bytes) -> None:
        self._deliver(topic, payload)

    def drop(self) -> None:
        """Simula queda da conexão no meio da sessão."""
        self.connected = False
        self.broker.drop_owner(self)
        if self._q is not None:
            self._q.put_nowait(_LOST)


class MemoryBrokerClient:
    """Lado do recorder: síncrono, entrega direto no handler."""

    def __init__(self, broker: InMemoryBroker):
        self.broker = broker
        self.connected = False
        self.fail_publish = False
        self.sent: List[Tuple[str, bytes, int]] = []

    def connect(self) -> None:
        self.connected = True

    def subscribe(self, topic: str, qos: int, handler: MessageHandler) -> None:
        self.broker.subscribe(self, topic, handler)

    def publish(self, topic: str, payload: bytes, qos: int) -> None:
        if self.fail_publish:
            raise PublishError(f"publish {topic} rejected")
        self.sent.append((topic, payload, qos))
        self.broker.publish(topic, payload)

    def close(self) -> None:
        self.connected = False
        self.broker.drop_owner(self)

    def is_connected(self) -> bool:
        return self.connected


class ListSink:
    def __init__(self):
        self.records = []

    def handle(self, record) -> None:
        self.records.append(record)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def recorder_client(broker: InMemoryBroker) -> MemoryBrokerClient:
    client = MemoryBrokerClient(broker)
    client.connect()
    return client


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, step: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(step)
