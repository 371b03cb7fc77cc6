from __future__ import annotations

import queue
import threading
import time
from typing import Optional

import httpx
import structlog

from domain.models import SummaryRecord

log = structlog.get_logger(__name__)


def summary_payload(record: SummaryRecord) -> dict:
    return {
        "time_utc": record.label,
        "latency_avg": record.average,
        "num_messages": record.sample_count,
    }


class HttpSummarySink:
    """
    POST de cada resumo de janela (JSON) por um pool de workers.
    Falha de rede/status: retry com backoff exponencial, depois desiste.
    Fila cheia: o resumo é descartado e contado.
    """

    def __init__(
        self,
        url: str,
        *,
        workers: int = 2,
        queue_max: int = 5000,
        timeout_sec: float = 2.0,
        max_retries: int = 3,
        transport: Optional[httpx.BaseTransport] = None,
        retry_base_sec: float = 0.25,
    ) -> None:
        self._url = url
        self._timeout = timeout_sec
        self._max_retries = max_retries
        self._transport = transport
        self._retry_base = retry_base_sec

        self._q: queue.Queue[SummaryRecord | _Stop] = queue.Queue(maxsize=queue_max)
        self._workers = workers
        self._threads: list[threading.Thread] = []
        self._client: Optional[httpx.Client] = None
        self._started = False
        self._lock = threading.Lock()

        self.total_published = 0
        self.total_dropped = 0
        self.total_failed = 0
        self.total_sent = 0

    def start(self) -> None:
        if self._started:
            return
        self._client = httpx.Client(timeout=self._timeout, transport=self._transport)
        self._threads = []
        for i in range(self._workers):
            t = threading.Thread(target=self._worker, args=(i,), name=f"http-summary-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        self._started = True

    def stop(self) -> None:
        if not self._started:
            return
        for _ in self._threads:
            self._q.put(_Stop())
        for t in self._threads:
            t.join(timeout=3)
        self._threads.clear()
        self._started = False
        if self._client:
            self._client.close()
            self._client = None

    def handle(self, record: SummaryRecord) -> None:
        if not self._started:
            raise RuntimeError("HttpSummarySink.handle chamado antes de start()")

        self.total_published += 1

        # roda na thread do tick: endpoint lento nunca pode travar a janela
        try:
            self._q.put_nowait(record)
        except queue.Full:
            self._count("total_dropped")
            log.warning("http_summary.dropped", time_utc=record.label)

    def _count(self, name: str) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)

    def _post(self, record: SummaryRecord) -> None:
        assert self._client is not None
        payload = summary_payload(record)

        attempt = 0
        while True:
            try:
                r = self._client.post(self._url, json=payload)
                r.raise_for_status()
                self._count("total_sent")
                return
            except httpx.HTTPError as e:
                attempt += 1
                if attempt > self._max_retries:
                    self._count("total_failed")
                    log.warning("http_summary.failed", url=self._url, attempts=attempt, error=str(e))
                    return
                time.sleep(min(self._retry_base * (2 ** (attempt - 1)), 2.0))

    def _worker(self, wid: int) -> None:
        while True:
            item = self._q.get()
            try:
                if isinstance(item, _Stop):
                    return
                self._post(item)
            finally:
                self._q.task_done()

    def join(self) -> None:
        """Espera a fila esvaziar (usado em testes e no shutdown)."""
        self._q.join()


class _Stop:
    pass
