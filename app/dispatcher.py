from __future__ import annotations

import threading
import zlib
from queue import Full, Queue
from typing import List, Optional, Tuple

import structlog

from domain.ports import MessageHandler

log = structlog.get_logger(__name__)

_Item = Optional[Tuple[str, bytes]]


class ShardedDispatcher:
    """
    Tira o processamento da thread de rede do cliente MQTT.

    Cada tópico cai sempre no mesmo shard (ordem preservada por device);
    shards diferentes rodam o handler em paralelo. Fila cheia = descarte
    contado, a thread de rede nunca bloqueia.
    """

    def __init__(self, handler: MessageHandler, shards: int, queue_size: int):
        self.handler = handler
        self.shards = shards
        self.queues: List[Queue[_Item]] = [Queue(maxsize=queue_size) for _ in range(shards)]
        self.stop = threading.Event()
        self.threads: List[threading.Thread] = []

        self._tot_lock = threading.Lock()
        self.total_enqueued = 0
        self.total_dropped = 0
        self.total_processed = 0

    @staticmethod
    def _shard_of(topic: str, shards: int) -> int:
        return zlib.crc32(topic.encode("utf-8")) % shards

    def start(self) -> None:
        for i in range(self.shards):
            t = threading.Thread(target=self._worker, args=(i,), name=f"dispatch-{i}", daemon=True)
            t.start()
            self.threads.append(t)

    def submit(self, topic: str, payload: bytes) -> bool:
        if self.stop.is_set():
            return False
        shard = self._shard_of(topic, self.shards)
        try:
            self.queues[shard].put_nowait((topic, payload))
            with self._tot_lock:
                self.total_enqueued += 1
            return True
        except Full:
            with self._tot_lock:
                self.total_dropped += 1
            return False

    def _worker(self, shard_idx: int) -> None:
        q = self.queues[shard_idx]

        while True:
            item = q.get()
            if item is None:
                q.task_done()
                return
            try:
                topic, payload = item
                self.handler(topic, payload)
                with self._tot_lock:
                    self.total_processed += 1
            except Exception:
                # um payload ruim não pode matar o shard
                log.exception("dispatcher.handler_failed", shard=shard_idx)
            finally:
                q.task_done()

    def totals(self) -> Tuple[int, int, int]:
        with self._tot_lock:
            return self.total_enqueued, self.total_processed, self.total_dropped

    def shutdown(self, timeout: float = 5.0) -> None:
        self.stop.set()
        for q in self.queues:
            q.put(None)
        for t in self.threads:
            t.join(timeout=timeout)
        self.threads.clear()
