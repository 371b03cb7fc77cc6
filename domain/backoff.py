from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff exponencial limitado: base, 2*base, 4*base ... até max_delay_ms."""
    base_delay_ms: int = 500
    max_delay_ms: int = 3000
    max_attempts: int = 12

    def delay_ms(self, attempt: int) -> int:
        # attempt começa em 1
        if attempt < 1:
            return 0
        return min(self.base_delay_ms * (2 ** (attempt - 1)), self.max_delay_ms)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


class StaggerPolicy:
    """
    Espaçamento entre inícios de probes (controle de admissão contra o broker).

    Nunca fica abaixo de base_ms. Cada falha de conexão dobra o valor até
    max_ms; cada sucesso reduz pela metade, de volta à base.
    """

    def __init__(self, base_ms: float, max_ms: float):
        self.base_ms = float(base_ms)
        self.max_ms = max(float(max_ms), self.base_ms)
        self._current_ms = self.base_ms

    @property
    def current_ms(self) -> float:
        return self._current_ms

    def on_connect_failure(self) -> None:
        nxt = self._current_ms * 2 if self._current_ms > 0 else 1.0
        self._current_ms = min(nxt, self.max_ms)

    def on_connect_success(self) -> None:
        self._current_ms = max(self.base_ms, self._current_ms / 2)
