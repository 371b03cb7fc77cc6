from __future__ import annotations

from typing import Callable, Protocol

from .models import InboundMessage, SummaryRecord


class Clock(Protocol):
    def now_epoch(self) -> float: ...

    def now_ms(self) -> int: ...


class SummarySink(Protocol):
    def handle(self, record: SummaryRecord) -> None: ...


# -----------------------------
# Transporte do lado dos probes (asyncio, uma conexão por device)
# -----------------------------

class ProbeConnection(Protocol):
    async def connect(self) -> None: ...

    async def subscribe(self, topic: str, qos: int) -> None: ...

    async def unsubscribe(self, topic: str) -> None: ...

    async def publish(self, topic: str, payload: bytes, qos: int) -> None:
        """Retorna só depois da confirmação do transporte (PUBACK em QoS > 0)."""
        ...

    async def next_message(self) -> InboundMessage:
        """Bloqueia até a próxima mensagem. Levanta ConnectionLost se cair."""
        ...

    async def close(self) -> None: ...

    def is_connected(self) -> bool: ...


# client_id -> conexão ainda não conectada
ConnectionFactory = Callable[[str], ProbeConnection]


# -----------------------------
# Transporte do lado do recorder (thread de rede do cliente)
# -----------------------------

MessageHandler = Callable[[str, bytes], None]


class Publisher(Protocol):
    def publish(self, topic: str, payload: bytes, qos: int) -> None:
        """Fire-and-forget. Levanta PublishError se o transporte recusar."""
        ...

