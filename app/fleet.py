from __future__ import annotations

import asyncio
from functools import partial
from typing import Dict, List, Optional

import structlog

from domain.backoff import BackoffPolicy, StaggerPolicy
from domain.models import FleetReport, ProbeState, ProbeStatus
from domain.ports import Clock, ConnectionFactory
from domain.topics import TopicScheme

from .probe import ProbeActor

log = structlog.get_logger(__name__)


class ProbeFleet:
    """
    Conjunto de probes tratado como uma unidade (start / relatório / shutdown).

    Os probes são iniciados em sequência, com um intervalo (stagger) entre
    cada um: é o único controle de admissão entre a frota e o broker.
    O intervalo cresce quando as conexões falham (StaggerPolicy).

    Não existe lock entre probes; total_sent() só lê os contadores de
    cada ator e é apenas indicativo.
    """

    def __init__(
        self,
        connector: ConnectionFactory,
        clock: Clock,
        *,
        topics: TopicScheme,
        throttle_ms: int,
        qos: int = 0,
        stagger: Optional[StaggerPolicy] = None,
        backoff: Optional[BackoffPolicy] = None,
        reply_timeout_ms: int = 0,
    ):
        self.connector = connector
        self.clock = clock
        self.topics = topics
        self.throttle_ms = throttle_ms
        self.qos = qos
        self.stagger = stagger or StaggerPolicy(base_ms=1, max_ms=1000)
        self.backoff = backoff or BackoffPolicy()
        self.reply_timeout_ms = reply_timeout_ms

        self.actors: List[ProbeActor] = []
        self._failed: Dict[str, str] = {}
        self._shutting_down = False
        self._started_at: Optional[float] = None

    @classmethod
    async def spawn(
        cls,
        count: int,
        id_prefix: str,
        connector: ConnectionFactory,
        throttle_ms: int,
        *,
        clock: Clock,
        topics: Optional[TopicScheme] = None,
        qos: int = 0,
        stagger: Optional[StaggerPolicy] = None,
        backoff: Optional[BackoffPolicy] = None,
        reply_timeout_ms: int = 0,
    ) -> "ProbeFleet":
        fleet = cls(
            connector,
            clock,
            topics=topics or TopicScheme(),
            throttle_ms=throttle_ms,
            qos=qos,
            stagger=stagger,
            backoff=backoff,
            reply_timeout_ms=reply_timeout_ms,
        )
        await fleet.start(count, id_prefix)
        return fleet

    async def start(self, count: int, id_prefix: str) -> None:
        loop = asyncio.get_running_loop()
        self._started_at = loop.time()

        for i in range(count):
            if self._shutting_down:
                break
            if i > 0:
                await asyncio.sleep(self.stagger.current_ms / 1000.0)

            actor = ProbeActor(
                f"{id_prefix}{i}",
                self.connector,
                self.clock,
                topics=self.topics,
                throttle_ms=self.throttle_ms,
                qos=self.qos,
                backoff=self.backoff,
                stagger=self.stagger,
                reply_timeout_ms=self.reply_timeout_ms,
                on_failed=self._on_failed,
            )
            self.actors.append(actor)
            task = actor.start()
            task.add_done_callback(partial(self._on_actor_done, actor))

        log.info(
            "fleet.started",
            probes=len(self.actors),
            elapsed_sec=round(loop.time() - self._started_at, 3),
            stagger_ms=self.stagger.current_ms,
        )

    # -----------------------------
    # relatórios
    # -----------------------------
    def total_sent(self) -> int:
        return sum(a.sent for a in self.actors)

    def report(self) -> FleetReport:
        by_state = {s: 0 for s in ProbeState}
        sent = 0
        resent = 0
        for st in self.statuses():
            by_state[st.state] += 1
            sent += st.sent
            resent += st.resent
        return FleetReport(
            total_sent=sent,
            total_resent=resent,
            connecting=by_state[ProbeState.CONNECTING],
            active=by_state[ProbeState.ACTIVE],
            closed=by_state[ProbeState.CLOSED],
            failed=by_state[ProbeState.FAILED],
        )

    def statuses(self) -> List[ProbeStatus]:
        return [a.status() for a in self.actors]

    def failed_devices(self) -> List[str]:
        return sorted(self._failed)

    def elapsed_sec(self) -> float:
        if self._started_at is None:
            return 0.0
        return asyncio.get_running_loop().time() - self._started_at

    def _on_failed(self, device_id: str, exc: BaseException) -> None:
        self._failed[device_id] = str(exc)

    def _on_actor_done(self, actor: ProbeActor, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._failed.setdefault(actor.device_id, repr(exc))
            log.error("fleet.actor_crashed", device_id=actor.device_id, error=repr(exc))

    # -----------------------------
    # shutdown
    # -----------------------------
    async def shutdown(self, timeout: float = 10.0) -> None:
        """Fecha todos os probes e espera (com limite) cada task terminar."""
        self._shutting_down = True
        if not self.actors:
            return

        closers = [asyncio.ensure_future(a.close()) for a in self.actors]
        _, pending = await asyncio.wait(closers, timeout=timeout)
        for c in pending:
            c.cancel()

        stragglers = [a.task for a in self.actors if a.task is not None and not a.task.done()]
        for t in stragglers:
            t.cancel()
        if stragglers:
            _, still = await asyncio.wait(stragglers, timeout=1.0)
            log.warning("fleet.shutdown_stragglers", cancelled=len(stragglers), unfinished=len(still))

        log.info("fleet.stopped", probes=len(self.actors), total_sent=self.total_sent())


async def report_progress(fleet: ProbeFleet, interval_sec: float, stop: asyncio.Event) -> None:
    """Loop de relatório: mensagens enviadas, tempo decorrido e taxa."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_sec)
        except asyncio.TimeoutError:
            pass

        rep = fleet.report()
        elapsed = fleet.elapsed_sec()
        rate = rep.total_sent / elapsed if elapsed > 0 else 0.0
        log.info(
            "fleet.progress",
            sent=rep.total_sent,
            elapsed_sec=round(elapsed, 3),
            rate=round(rate, 1),
            active=rep.active,
            connecting=rep.connecting,
            failed=rep.failed,
            resent=rep.total_resent,
        )
