from __future__ import annotations

import math
import threading
from typing import Optional, Sequence

import structlog

from domain.models import SummaryRecord
from domain.ports import Clock, SummarySink

from .aggregator import WindowAggregator

log = structlog.get_logger(__name__)


class WindowTicker:
    """
    Tick periódico que drena a janela e entrega o resumo aos sinks.

    - Grade alinhada no próximo segundo cheio (.000)
    - Se a thread atrasar, faz catch-up mantendo a grade exata
    - Janela vazia: não emite nada (nem NaN, nem divisão por zero)
    - Erro em um sink não derruba o loop
    """

    def __init__(
        self,
        aggregator: WindowAggregator,
        sinks: Sequence[SummarySink],
        clock: Clock,
        *,
        window_sec: float = 1.0,
    ):
        self.aggregator = aggregator
        self.sinks = list(sinks)
        self.clock = clock
        self.window_sec = float(window_sec)

        self._stop = threading.Event()
        self._t: Optional[threading.Thread] = None
        self._next_flush = 0.0

    def start(self) -> None:
        if self._t is not None:
            return
        now = self.clock.now_epoch()
        self._next_flush = math.floor(now) + 1.0
        self._t = threading.Thread(target=self._run, name="window-ticker", daemon=True)
        self._t.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._t is not None:
            self._t.join(timeout=timeout)
            self._t = None

    def tick(self, stamp_epoch: float) -> Optional[SummaryRecord]:
        record = self.aggregator.drain_and_reset(stamp_epoch)
        if not record.has_data:
            log.debug("window.empty", time_utc=record.label)
            return None

        for sink in self.sinks:
            try:
                sink.handle(record)
            except Exception:
                log.exception("window.sink_failed", sink=type(sink).__name__)
        return record

    def _run(self) -> None:
        while True:
            wait = max(0.0, self._next_flush - self.clock.now_epoch())
            if self._stop.wait(wait):
                return

            now = self.clock.now_epoch()
            while now >= self._next_flush:
                # timestamp do resumo = boundary da grade, não "now"
                self.tick(self._next_flush)
                self._next_flush += self.window_sec
                now = self.clock.now_epoch()
