from __future__ import annotations

import csv
import threading
import time
from queue import Empty, Full, Queue
from typing import List, Optional

import structlog

from domain.models import SummaryRecord

log = structlog.get_logger(__name__)

CSV_HEADER = ["TIME_UTC", "LATENCY_AVG", "NUM_MESSAGES"]


class AsyncCsvSummaryWriter:
    """
    Escrita assíncrona dos resumos de janela em CSV.
    Não bloqueia o tick: handle() só enfileira (fila cheia = descarte contado).

    O arquivo é truncado no start() (cabeçalho novo a cada execução).
    """

    def __init__(
        self,
        csv_path: str,
        *,
        queue_max: int = 20000,
        flush_every_n: int = 1,
        flush_every_sec: float = 1.0,
    ):
        self.csv_path = csv_path
        self.flush_every_n = flush_every_n
        self.flush_every_sec = flush_every_sec

        self._q: Queue[SummaryRecord] = Queue(maxsize=queue_max)
        self._stop = threading.Event()
        self._t: Optional[threading.Thread] = None

        self.total_written = 0
        self.total_dropped = 0

    def start(self) -> None:
        if self._t is not None:
            return
        # erro de caminho/permissão aparece aqui, antes de conectar no broker
        with open(self.csv_path, "w", newline="", encoding="utf-8") as f:
            csv.writer(f).writerow(CSV_HEADER)
        self._t = threading.Thread(target=self._worker, name="csv-writer", daemon=True)
        self._t.start()

    def stop(self) -> None:
        self._stop.set()
        if self._t is not None:
            self._t.join(timeout=5)
            self._t = None

    def handle(self, record: SummaryRecord) -> None:
        try:
            self._q.put_nowait(record)
        except Full:
            self.total_dropped += 1
            log.warning("csv.dropped", time_utc=record.label)

    @staticmethod
    def _row(record: SummaryRecord) -> list:
        return [record.label, f"{record.average:.3f}", record.sample_count]

    def _flush(self, batch: List[SummaryRecord]) -> None:
        if not batch:
            return
        with open(self.csv_path, "a", newline="", encoding="utf-8") as f:
            w = csv.writer(f)
            for record in batch:
                w.writerow(self._row(record))
        self.total_written += len(batch)

    def _worker(self) -> None:
        batch: List[SummaryRecord] = []
        last_flush = time.time()

        while not self._stop.is_set():
            try:
                batch.append(self._q.get(timeout=0.2))
            except Empty:
                pass

            now = time.time()
            if batch and (
                len(batch) >= self.flush_every_n
                or (now - last_flush) >= self.flush_every_sec
            ):
                self._flush(batch)
                batch.clear()
                last_flush = now

        # o que sobrou na fila ainda vai para o arquivo
        while True:
            try:
                batch.append(self._q.get_nowait())
            except Empty:
                break
        self._flush(batch)
