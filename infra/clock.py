from __future__ import annotations

import time


class SystemClock:
    """Relógio de parede: epoch em segundos (float) para as janelas, ms inteiros para os probes."""

    def now_epoch(self) -> float:
        return time.time()

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000
