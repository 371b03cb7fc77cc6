from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

# last_latency do primeiro envio de um device (ainda não houve round trip)
NO_LATENCY = -1


def format_utc(epoch: float) -> str:
    dt = datetime.fromtimestamp(epoch, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


@dataclass(frozen=True)
class RoundTripSample:
    device_id: str
    timestamp_ms: int
    last_latency_ms: int = NO_LATENCY

    @classmethod
    def initial(cls, device_id: str, now_ms: int) -> "RoundTripSample":
        return cls(device_id=device_id, timestamp_ms=now_ms, last_latency_ms=NO_LATENCY)

    @property
    def is_first_contact(self) -> bool:
        return self.last_latency_ms == NO_LATENCY


@dataclass(frozen=True)
class InboundMessage:
    topic: str
    payload: bytes


@dataclass
class AggregationWindow:
    count: int = 0
    sum_ms: float = 0.0

    def add(self, lat_ms: float) -> None:
        self.count += 1
        self.sum_ms += lat_ms

    def reset(self) -> None:
        self.count = 0
        self.sum_ms = 0.0

    @property
    def mean_ms(self) -> Optional[float]:
        return self.sum_ms / self.count if self.count else None


@dataclass(frozen=True)
class SummaryRecord:
    """
    Resultado de uma janela drenada.
    average é None quando a janela não teve amostras ("no data").
    """
    stamp_epoch: float
    average: Optional[float]
    sample_count: int

    @property
    def has_data(self) -> bool:
        return self.sample_count > 0

    @property
    def label(self) -> str:
        return format_utc(self.stamp_epoch)


class ProbeState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass(frozen=True)
class ProbeStatus:
    device_id: str
    state: ProbeState
    pending: bool
    sent: int
    resent: int
    last_sent_ms: Optional[int]


@dataclass(frozen=True)
class FleetReport:
    total_sent: int
    total_resent: int
    connecting: int
    active: int
    closed: int
    failed: int

    @property
    def size(self) -> int:
        return self.connecting + self.active + self.closed + self.failed


@dataclass(frozen=True)
class RouterTotals:
    received: int
    aggregated: int
    first_contact: int
    malformed: int
    publish_failed: int
