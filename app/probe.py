from __future__ import annotations

import asyncio
from typing import Callable, Optional

import structlog

from domain.backoff import BackoffPolicy, StaggerPolicy
from domain.codec import decode, encode
from domain.errors import ConnectError, DecodeError, PublishError, TransportError
from domain.models import InboundMessage, ProbeState, ProbeStatus, RoundTripSample
from domain.ports import Clock, ConnectionFactory, ProbeConnection
from domain.topics import TopicScheme

log = structlog.get_logger(__name__)

FailureCallback = Callable[[str, BaseException], None]


class ProbeActor:
    """
    Um device simulado fazendo round trips sem parar:
    publica amostra -> espera o ack -> mede -> espera o throttle -> publica de novo.

    CONNECTING -> ACTIVE -> CLOSED (terminal). FAILED quando as tentativas
    de conexão se esgotam. Cada ator roda na própria task; nada aqui
    bloqueia outros probes.
    """

    def __init__(
        self,
        device_id: str,
        connector: ConnectionFactory,
        clock: Clock,
        *,
        topics: TopicScheme,
        throttle_ms: int,
        qos: int = 0,
        backoff: Optional[BackoffPolicy] = None,
        stagger: Optional[StaggerPolicy] = None,
        reply_timeout_ms: int = 0,
        on_failed: Optional[FailureCallback] = None,
    ):
        self.device_id = device_id
        self.connector = connector
        self.clock = clock
        self.throttle_ms = throttle_ms
        self.qos = qos
        self.backoff = backoff or BackoffPolicy()
        self.stagger = stagger
        self.reply_timeout_ms = reply_timeout_ms
        self.on_failed = on_failed

        self._report_topic = topics.report_for(device_id)
        self._reply_topic = topics.reply_for(device_id)
        self._command_topic = topics.command_for(device_id)

        self._state = ProbeState.CONNECTING
        self._conn: Optional[ProbeConnection] = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

        self._pending = False
        self._pending_since = 0.0
        self._next_send_at: Optional[float] = None
        self._next_latency_ms = 0
        self._sent = 0
        self._resent = 0
        self._last_sent_ms: Optional[int] = None

    # -----------------------------
    # leitura (Fleet / relatórios)
    # -----------------------------
    @property
    def state(self) -> ProbeState:
        return self._state

    @property
    def sent(self) -> int:
        return self._sent

    @property
    def resent(self) -> int:
        return self._resent

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def status(self) -> ProbeStatus:
        return ProbeStatus(
            device_id=self.device_id,
            state=self._state,
            pending=self._pending,
            sent=self._sent,
            resent=self._resent,
            last_sent_ms=self._last_sent_ms,
        )

    # -----------------------------
    # ciclo de vida
    # -----------------------------
    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"probe:{self.device_id}")
        return self._task

    async def close(self) -> None:
        """Idempotente. Desbloqueia qualquer espera em curso do ator."""
        self._closing = True
        task = self._task

        if task is None:
            await self._disconnect()
            self._finish()
            return

        if task is asyncio.current_task():
            return

        if not task.done():
            task.cancel()
        await asyncio.wait({task})

        # task cancelada antes de rodar não passa pelo finally de run()
        await self._disconnect()
        self._finish()

    async def run(self) -> None:
        failed_sessions = 0
        try:
            while not self._closing:
                conn = await self._connect()
                if conn is None:
                    return
                try:
                    await self._session(conn)
                    return
                except TransportError as e:
                    log.warning("probe.connection_lost", device_id=self.device_id, error=str(e))
                    await self._disconnect()
                    # sessão que nem chegou a ACTIVE conta como falha consecutiva
                    failed_sessions = 0 if self._state is ProbeState.ACTIVE else failed_sessions + 1
                    if self.backoff.exhausted(failed_sessions):
                        self._fail(failed_sessions, e)
                        return
                    if not self._closing:
                        self._state = ProbeState.CONNECTING
                        await asyncio.sleep(self.backoff.delay_ms(max(failed_sessions, 1)) / 1000.0)
        finally:
            await self._disconnect()
            self._finish()

    def _fail(self, attempts: int, exc: BaseException) -> None:
        self._state = ProbeState.FAILED
        log.error("probe.connect_failed", device_id=self.device_id, attempts=attempts, error=str(exc))
        if self.on_failed is not None:
            self.on_failed(self.device_id, exc)

    def _finish(self) -> None:
        self._pending = False
        if self._state is not ProbeState.FAILED:
            self._state = ProbeState.CLOSED

    # -----------------------------
    # conexão
    # -----------------------------
    async def _connect(self) -> Optional[ProbeConnection]:
        attempt = 0
        while not self._closing:
            attempt += 1
            conn = self.connector(self.device_id)
            self._conn = conn
            try:
                await conn.connect()
            except ConnectError as e:
                self._conn = None
                if self.stagger is not None:
                    self.stagger.on_connect_failure()

                if self.backoff.exhausted(attempt):
                    self._fail(attempt, e)
                    return None

                delay_ms = float(self.backoff.delay_ms(attempt))
                if self.stagger is not None:
                    delay_ms = max(delay_ms, self.stagger.current_ms)
                log.warning("probe.connect_retry", device_id=self.device_id, attempt=attempt, delay_ms=delay_ms)
                await asyncio.sleep(delay_ms / 1000.0)
                continue

            if self.stagger is not None:
                self.stagger.on_connect_success()
            return conn
        return None

    async def _disconnect(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await conn.close()
        except TransportError as e:
            log.debug("probe.close_failed", device_id=self.device_id, error=str(e))

    # -----------------------------
    # round trip
    # -----------------------------
    async def _session(self, conn: ProbeConnection) -> None:
        await conn.subscribe(self._reply_topic, self.qos)
        await conn.subscribe(self._command_topic, self.qos)
        self._state = ProbeState.ACTIVE
        self._next_send_at = None

        await self._send(conn, RoundTripSample.initial(self.device_id, self._stamp()))

        while True:
            budget = self._wait_budget()
            if budget == 0.0:
                await self._on_timer(conn)
                continue

            try:
                msg = await asyncio.wait_for(conn.next_message(), budget)
            except asyncio.TimeoutError:
                await self._on_timer(conn)
                continue

            if msg.topic == self._command_topic:
                log.info("probe.command", device_id=self.device_id)
                await self._leave(conn)
                return

            if msg.topic == self._reply_topic:
                self._on_reply(msg)

    def _on_reply(self, msg: InboundMessage) -> None:
        receive_ms = self.clock.now_ms()

        try:
            ack = decode(msg.payload)
        except DecodeError as e:
            log.warning("probe.decode_failed", device_id=self.device_id, error=str(e))
            return

        if ack.device_id != self.device_id:
            log.warning("probe.foreign_reply", device_id=self.device_id, reply_device_id=ack.device_id)
            return

        # ack repetido ou de um envio já substituído por reenvio
        if not self._pending or ack.timestamp_ms != self._last_sent_ms:
            log.debug("probe.stale_reply", device_id=self.device_id, timestamp=ack.timestamp_ms)
            return

        self._pending = False
        # o throttle é um prazo, não um sleep: comandos continuam sendo lidos
        self._next_latency_ms = max(0, receive_ms - ack.timestamp_ms)
        self._next_send_at = asyncio.get_running_loop().time() + self.throttle_ms / 1000.0

    async def _on_timer(self, conn: ProbeConnection) -> None:
        now = asyncio.get_running_loop().time()

        if self._next_send_at is not None and now >= self._next_send_at:
            self._next_send_at = None
            sample = RoundTripSample(
                device_id=self.device_id,
                timestamp_ms=self._stamp(),
                last_latency_ms=self._next_latency_ms,
            )
            await self._send(conn, sample)
            return

        if self._pending and self.reply_timeout_ms > 0:
            if now >= self._pending_since + self.reply_timeout_ms / 1000.0:
                await self._resend(conn)

    async def _resend(self, conn: ProbeConnection) -> None:
        # round trip perdido: recomeça sem latência (não inventa medida)
        self._resent += 1
        log.info("probe.reply_timeout", device_id=self.device_id, timeout_ms=self.reply_timeout_ms)
        await self._send(conn, RoundTripSample.initial(self.device_id, self._stamp()))

    async def _send(self, conn: ProbeConnection, sample: RoundTripSample) -> None:
        self._pending = True
        self._pending_since = asyncio.get_running_loop().time()
        self._last_sent_ms = sample.timestamp_ms

        try:
            await conn.publish(self._report_topic, encode(sample), self.qos)
        except PublishError as e:
            # sem retry aqui; só o reply timeout recupera o round trip
            log.warning("probe.publish_failed", device_id=self.device_id, error=str(e))
            return

        self._sent += 1

    async def _leave(self, conn: ProbeConnection) -> None:
        self._closing = True
        for topic in (self._reply_topic, self._command_topic):
            try:
                await conn.unsubscribe(topic)
            except TransportError as e:
                log.debug("probe.unsubscribe_failed", device_id=self.device_id, topic=topic, error=str(e))

    def _wait_budget(self) -> Optional[float]:
        deadlines = []
        if self._next_send_at is not None:
            deadlines.append(self._next_send_at)
        if self._pending and self.reply_timeout_ms > 0:
            deadlines.append(self._pending_since + self.reply_timeout_ms / 1000.0)
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - asyncio.get_running_loop().time())

    def _stamp(self) -> int:
        # timestamp nunca volta no tempo para o mesmo device
        now = self.clock.now_ms()
        if self._last_sent_ms is not None and now < self._last_sent_ms:
            return self._last_sent_ms
        return now
