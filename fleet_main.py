from __future__ import annotations

import argparse
import asyncio
import dataclasses
import signal
import sys
from typing import Optional, Sequence

import structlog

from app.fleet import ProbeFleet, report_progress
from config import AppConfig, load_config
from domain.backoff import BackoffPolicy, StaggerPolicy
from domain.errors import ConfigError
from domain.models import FleetReport
from domain.ports import ConnectionFactory
from infra.clock import SystemClock
from infra.logging import configure_logging
from infra.mqtt_async import aiomqtt_connector

log = structlog.get_logger("fleet")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="latency-fleet",
        description="Simula uma frota de devices MQTT medindo latência de round trip.",
    )
    p.add_argument("--config", default="config.yaml", help="arquivo YAML (padrão: config.yaml)")
    p.add_argument("--count", type=int, default=None, help="sobrescreve fleet.count")
    p.add_argument("--run-sec", type=float, default=None, help="sobrescreve fleet.run_sec (0 = até Ctrl+C)")
    return p.parse_args(argv)


def build_fleet(cfg: AppConfig, connector: ConnectionFactory) -> ProbeFleet:
    fc = cfg.fleet
    return ProbeFleet(
        connector,
        SystemClock(),
        topics=cfg.topics.scheme(),
        throttle_ms=fc.throttle_ms,
        qos=fc.qos,
        stagger=StaggerPolicy(base_ms=fc.stagger_ms, max_ms=fc.stagger_max_ms),
        backoff=BackoffPolicy(
            base_delay_ms=fc.connect_base_delay_ms,
            max_delay_ms=fc.connect_max_delay_ms,
            max_attempts=fc.connect_attempts,
        ),
        reply_timeout_ms=fc.reply_timeout_ms,
    )


async def run_fleet(
    cfg: AppConfig,
    stop: asyncio.Event,
    connector: Optional[ConnectionFactory] = None,
) -> FleetReport:
    """Sobe a frota, reporta progresso e desliga ao receber stop (ou após run_sec)."""
    fc = cfg.fleet
    if connector is None:
        connector = aiomqtt_connector(
            cfg.broker.hostname,
            cfg.broker.port,
            keepalive=cfg.broker.keepalive_sec,
            max_inflight=cfg.broker.max_inflight,
        )

    fleet = build_fleet(cfg, connector)
    spawner = asyncio.create_task(fleet.start(fc.count, fc.id_prefix), name="fleet-spawn")
    progress = asyncio.create_task(report_progress(fleet, fc.report_interval_sec, stop), name="fleet-progress")

    try:
        if fc.run_sec > 0:
            try:
                await asyncio.wait_for(stop.wait(), timeout=fc.run_sec)
            except asyncio.TimeoutError:
                log.info("fleet.run_elapsed", run_sec=fc.run_sec)
        else:
            await stop.wait()
    finally:
        stop.set()
        if not spawner.done():
            spawner.cancel()
        await asyncio.wait({spawner})
        await fleet.shutdown(timeout=fc.shutdown_timeout_sec)
        await asyncio.wait({progress})

    rep = fleet.report()
    failed = fleet.failed_devices()
    if failed:
        log.warning("fleet.failed_devices", count=len(failed), sample=failed[:10])
    return rep


async def _amain(cfg: AppConfig) -> FleetReport:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    return await run_fleet(cfg, stop)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(e, file=sys.stderr)
        return 1

    overrides = {}
    if args.count is not None:
        overrides["count"] = args.count
    if args.run_sec is not None:
        overrides["run_sec"] = args.run_sec
    if overrides:
        cfg = dataclasses.replace(cfg, fleet=dataclasses.replace(cfg.fleet, **overrides))
        if cfg.fleet.count <= 0 or cfg.fleet.run_sec < 0:
            print("Config inválida: --count deve ser > 0 e --run-sec >= 0.", file=sys.stderr)
            return 1

    configure_logging(cfg.logging.level, cfg.logging.json)

    topics = cfg.topics.scheme()
    log.info(
        "fleet.starting",
        broker=f"{cfg.broker.hostname}:{cfg.broker.port}",
        count=cfg.fleet.count,
        throttle_ms=cfg.fleet.throttle_ms,
        stagger_ms=cfg.fleet.stagger_ms,
        qos=cfg.fleet.qos,
        report_topic=topics.report,
        reply_topic=topics.reply,
    )
    if topics.merged:
        log.warning("fleet.topics_merged", topic=topics.report)

    rep = asyncio.run(_amain(cfg))
    log.info(
        "fleet.summary",
        sent=rep.total_sent,
        resent=rep.total_resent,
        closed=rep.closed,
        failed=rep.failed,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
