from __future__ import annotations

import threading
from typing import Optional

from domain.models import AggregationWindow, SummaryRecord
from domain.ports import Clock


class WindowAggregator:
    """
    Janela corrente de latência (soma + contagem), única no processo.

    add() e drain_and_reset() usam o mesmo lock: cada amostra cai em
    exatamente uma janela, nunca é perdida nem contada duas vezes.
    A janela é zerada, não recriada, a cada tick.
    """

    def __init__(self, clock: Clock):
        self.clock = clock
        self._lock = threading.Lock()
        self._window = AggregationWindow()

    def add(self, value: float) -> None:
        with self._lock:
            self._window.add(float(value))

    def drain_and_reset(self, stamp_epoch: Optional[float] = None) -> SummaryRecord:
        stamp = self.clock.now_epoch() if stamp_epoch is None else stamp_epoch
        with self._lock:
            count = self._window.count
            mean = self._window.mean_ms
            self._window.reset()
        return SummaryRecord(stamp_epoch=stamp, average=mean, sample_count=count)

    @property
    def count(self) -> int:
        with self._lock:
            return self._window.count
