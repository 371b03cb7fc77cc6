from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Tuple

import paho.mqtt.client as mqtt
import structlog
from paho.mqtt.client import CallbackAPIVersion

from domain.backoff import BackoffPolicy
from domain.errors import ConnectError, PublishError
from domain.ports import MessageHandler
from domain.topics import TopicScheme

log = structlog.get_logger(__name__)


class PahoBrokerClient:
    """
    Cliente MQTT do recorder (paho, thread de rede própria via loop_start).

    - clean session; reconexão automática feita pelo loop do paho
    - as assinaturas são refeitas em todo (re)connect
    - publish() não espera entrega (fire-and-forget)
    """

    def __init__(
        self,
        hostname: str,
        port: int,
        client_id: str,
        *,
        keepalive: int = 60,
        max_inflight: int = 100,
        connect_timeout_sec: float = 10.0,
        reconnect_max_delay_sec: int = 30,
    ):
        self.hostname = hostname
        self.port = port
        self.client_id = client_id
        self.keepalive = keepalive
        self.connect_timeout_sec = connect_timeout_sec

        self._connected = threading.Event()
        self._lock = threading.Lock()
        self._subs: Dict[str, Tuple[int, MessageHandler]] = {}
        self._started = False

        self._client = mqtt.Client(
            callback_api_version=CallbackAPIVersion.VERSION2,
            client_id=client_id,
            clean_session=True,
        )
        self._client.max_inflight_messages_set(max_inflight)
        self._client.reconnect_delay_set(min_delay=1, max_delay=reconnect_max_delay_sec)

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    # -- callbacks (thread de rede do paho) ---
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            log.warning("mqtt.connect_refused", client_id=self.client_id, reason=str(reason_code))
            return
        with self._lock:
            subs = list(self._subs.items())
        for topic, (qos, _handler) in subs:
            client.subscribe(topic, qos)
        self._connected.set()
        log.info("mqtt.connected", client_id=self.client_id, broker=f"{self.hostname}:{self.port}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._connected.clear()
        log.warning("mqtt.disconnected", client_id=self.client_id, reason=str(reason_code))

    def _on_message(self, client, userdata, msg) -> None:
        with self._lock:
            subs = list(self._subs.items())
        for pattern, (_qos, handler) in subs:
            if mqtt.topic_matches_sub(pattern, msg.topic):
                handler(msg.topic, msg.payload)

    # -- API ---
    def connect(self) -> None:
        # depois do primeiro socket aberto, o loop do paho reconecta sozinho
        if not self._started:
            try:
                self._client.connect(self.hostname, self.port, keepalive=self.keepalive)
            except OSError as e:
                raise ConnectError(f"{self.client_id} unable to connect to {self.hostname}:{self.port}: {e}") from e
            self._client.loop_start()
            self._started = True

        if not self._connected.wait(self.connect_timeout_sec):
            raise ConnectError(f"{self.client_id} connect timeout ({self.connect_timeout_sec}s)")

    def connect_with_retry(self, policy: BackoffPolicy, sleep: Callable[[float], None] = time.sleep) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                self.connect()
                return
            except ConnectError as e:
                if policy.exhausted(attempt):
                    log.error("mqtt.connect_failed", client_id=self.client_id, attempts=attempt, error=str(e))
                    raise
                delay_ms = policy.delay_ms(attempt)
                log.warning("mqtt.connect_retry", client_id=self.client_id, attempt=attempt, delay_ms=delay_ms)
                sleep(delay_ms / 1000.0)

    def subscribe(self, topic: str, qos: int, handler: MessageHandler) -> None:
        with self._lock:
            self._subs[topic] = (qos, handler)
        if self._connected.is_set():
            self._client.subscribe(topic, qos)

    def publish(self, topic: str, payload: bytes, qos: int) -> None:
        info = self._client.publish(topic, payload, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"publish {topic}: {mqtt.error_string(info.rc)}")

    def close(self) -> None:
        if not self._started:
            return
        self._started = False
        self._client.disconnect()
        self._client.loop_stop()
        self._connected.clear()

    def is_connected(self) -> bool:
        return self._connected.is_set()


_SAMPLE_DEVICE = "recorder-loop-check"


def subscription_catches_replies(subscription: str, topics: TopicScheme) -> bool:
    """
    True se a assinatura do recorder também casa com os tópicos de ack.
    Nesse caso cada ack voltaria para o router e seria contado de novo.
    """
    if topics.merged:
        return True
    return mqtt.topic_matches_sub(subscription, topics.reply_for(_SAMPLE_DEVICE))
