from __future__ import annotations

import threading

import structlog

from domain.codec import decode
from domain.errors import DecodeError, PublishError
from domain.models import RouterTotals
from domain.ports import Publisher
from domain.topics import TopicScheme

from .aggregator import WindowAggregator

log = structlog.get_logger(__name__)


class ReplyRouter:
    """
    Recebe cada amostra, alimenta a janela corrente e devolve o ack ao probe.

    on_message() pode ser chamado de várias threads ao mesmo tempo (ver
    ShardedDispatcher). O publish do ack é fire-and-forget: esperar a
    entrega aqui serializaria todos os probes atrás do router.
    """

    def __init__(
        self,
        aggregator: WindowAggregator,
        publisher: Publisher,
        *,
        topics: TopicScheme,
        qos: int = 0,
    ):
        self.aggregator = aggregator
        self.publisher = publisher
        self.topics = topics
        self.qos = qos

        self._tot_lock = threading.Lock()
        self._received = 0
        self._aggregated = 0
        self._first_contact = 0
        self._malformed = 0
        self._publish_failed = 0

    def on_message(self, topic: str, payload: bytes) -> None:
        self._bump("_received")

        try:
            sample = decode(payload)
        except DecodeError as e:
            self._bump("_malformed")
            log.warning("router.decode_failed", topic=topic, error=str(e))
            return

        if sample.is_first_contact:
            self._bump("_first_contact")
            log.info("router.first_contact", device_id=sample.device_id)
        else:
            self.aggregator.add(sample.last_latency_ms)
            self._bump("_aggregated")

        # ack = o mesmo payload, sem re-encode
        reply_topic = self.topics.reply_for(sample.device_id)
        try:
            self.publisher.publish(reply_topic, payload, self.qos)
        except PublishError as e:
            self._bump("_publish_failed")
            log.warning("router.publish_failed", topic=reply_topic, error=str(e))

    def _bump(self, name: str) -> None:
        with self._tot_lock:
            setattr(self, name, getattr(self, name) + 1)

    def totals(self) -> RouterTotals:
        with self._tot_lock:
            return RouterTotals(
                received=self._received,
                aggregated=self._aggregated,
                first_contact=self._first_contact,
                malformed=self._malformed,
                publish_failed=self._publish_failed,
            )
