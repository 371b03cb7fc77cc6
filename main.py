from __future__ import annotations

import argparse
import dataclasses
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import structlog

from app.aggregator import WindowAggregator
from app.dispatcher import ShardedDispatcher
from app.router import ReplyRouter
from app.ticker import WindowTicker
from config import AppConfig, BrokerConfig, load_config, validate_qos
from domain.backoff import BackoffPolicy
from domain.errors import ConfigError, ConnectError
from infra.clock import SystemClock
from infra.http_summary_sink import HttpSummarySink
from infra.logging import configure_logging
from infra.mqtt_client import PahoBrokerClient, subscription_catches_replies
from infra.sinks import LogSummarySink
from infra.summary_csv_sink import AsyncCsvSummaryWriter

log = structlog.get_logger("recorder")

DEFAULT_CONFIG = "config.yaml"


class Abort(Exception):
    """Usuário recusou sobrescrever o arquivo de saída (sai com 0)."""


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="latency-recorder",
        description="Recebe amostras de latência via MQTT, devolve o ack e grava a média por janela em CSV.",
    )
    p.add_argument(
        "positionals",
        nargs="*",
        metavar="ARG",
        help="subscribe_topic qos output_path (os três juntos, ou nenhum)",
    )
    p.add_argument("--config", default=None, help=f"arquivo YAML (padrão: {DEFAULT_CONFIG})")
    p.add_argument("--force", action="store_true", help="sobrescreve o arquivo de saída sem perguntar")
    return p


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)
    if len(args.positionals) not in (0, 3):
        parser.error("use nenhum argumento posicional ou os três: subscribe_topic qos output_path")
    return args


def ask_overwrite(path: str, ask: Callable[[str], str] = input) -> bool:
    prompt = f"Specified file '{path}' already exists... Do you wish to overwrite it? (Y/N): "
    while True:
        try:
            answer = ask(prompt).strip().lower()
        except EOFError:
            return False
        if answer.startswith("y"):
            return True
        if answer.startswith("n"):
            return False


def resolve_output(
    path: str,
    *,
    force: bool,
    confirm_existing: bool,
    interactive: bool,
    ask: Callable[[str], str] = input,
) -> str:
    """
    Valida o caminho de saída antes de qualquer conexão.

    - diretório, ou pasta-mãe inexistente / sem escrita: ConfigError
    - arquivo existente (só quando veio da linha de comando): --force
      sobrescreve; em terminal pergunta Y/N; sem terminal, ConfigError
    """
    p = Path(path)
    if p.is_dir():
        raise ConfigError(f"Specified file '{path}' is a directory... Aborting!")

    parent = p.parent
    if not parent.is_dir():
        raise ConfigError(f"Directory '{parent}' does not exist... Aborting!")
    if not os.access(parent, os.W_OK):
        raise ConfigError(f"Directory '{parent}' is not writable... Aborting!")

    if confirm_existing and p.is_file() and not force:
        if not interactive:
            raise ConfigError(f"Specified file '{path}' already exists (use --force to overwrite)")
        if not ask_overwrite(path, ask):
            raise Abort()
    return path


def load_app_config(path: Optional[str]) -> AppConfig:
    if path is not None:
        return load_config(path)
    if os.path.exists(DEFAULT_CONFIG):
        return load_config(DEFAULT_CONFIG)
    # sem arquivo: broker local e todos os defaults
    return AppConfig(broker=BrokerConfig(hostname="localhost"))


def apply_cli(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
    if not args.positionals:
        return cfg
    topic, qos_text, output = args.positionals
    if not topic.strip():
        raise ConfigError("Subscription topic vazio... Aborting!")
    recorder = dataclasses.replace(
        cfg.recorder,
        subscribe_topic=topic,
        qos=validate_qos(qos_text),
        output_path=output,
    )
    return dataclasses.replace(cfg, recorder=recorder)


def check_topics(cfg: AppConfig) -> None:
    topics = cfg.topics.scheme()
    if subscription_catches_replies(cfg.recorder.subscribe_topic, topics):
        raise ConfigError(
            f"Subscription '{cfg.recorder.subscribe_topic}' also matches the reply topic "
            f"'{topics.reply}': the recorder would receive its own acks... Aborting!"
        )


def _banner(cfg: AppConfig) -> None:
    log.info(
        "recorder.starting",
        broker=f"{cfg.broker.hostname}:{cfg.broker.port}",
        client_id=cfg.recorder.client_id,
        topic=cfg.recorder.subscribe_topic,
        qos=cfg.recorder.qos,
        output_file=cfg.recorder.output_path,
        window_sec=cfg.recorder.window_sec,
    )


def _install_stop(stop: threading.Event) -> None:
    def _handler(signum, _frame):
        log.info("recorder.signal", signal=signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    if sys.stdin is not None and sys.stdin.isatty():
        def _wait_enter() -> None:
            try:
                input()
            except EOFError:
                return
            stop.set()

        threading.Thread(target=_wait_enter, name="stdin-wait", daemon=True).start()


def run(cfg: AppConfig, stop: threading.Event) -> int:
    rc = cfg.recorder
    clock = SystemClock()
    topics = cfg.topics.scheme()

    csv_writer = AsyncCsvSummaryWriter(
        rc.output_path,
        queue_max=rc.csv_queue_max,
    )
    try:
        csv_writer.start()
    except OSError as e:
        log.error("recorder.output_failed", output_file=rc.output_path, error=str(e))
        return 1

    http_sink: Optional[HttpSummarySink] = None
    sinks: List = [LogSummarySink(), csv_writer]
    if rc.http is not None:
        http_sink = HttpSummarySink(
            rc.http.url,
            workers=rc.http.workers,
            queue_max=rc.http.queue_max,
            timeout_sec=rc.http.timeout_sec,
            max_retries=rc.http.max_retries,
        )
        http_sink.start()
        sinks.append(http_sink)

    client = PahoBrokerClient(
        cfg.broker.hostname,
        cfg.broker.port,
        rc.client_id,
        keepalive=cfg.broker.keepalive_sec,
        max_inflight=cfg.broker.max_inflight,
    )

    aggregator = WindowAggregator(clock)
    router = ReplyRouter(aggregator, client, topics=topics, qos=rc.qos)
    dispatcher = ShardedDispatcher(router.on_message, shards=rc.shards, queue_size=rc.queue_size)
    ticker = WindowTicker(aggregator, sinks, clock, window_sec=rc.window_sec)

    dispatcher.start()
    try:
        client.subscribe(rc.subscribe_topic, rc.qos, dispatcher.submit)
        try:
            client.connect_with_retry(
                BackoffPolicy(
                    base_delay_ms=rc.connect_base_delay_ms,
                    max_delay_ms=rc.connect_max_delay_ms,
                    max_attempts=rc.connect_attempts,
                )
            )
        except ConnectError:
            return 1

        ticker.start()
        log.info("recorder.connected", hint="Press ENTER (or Ctrl+C) to stop...")
        while not stop.wait(0.5):
            pass
        return 0
    finally:
        try:
            client.close()
        finally:
            try:
                ticker.stop()
            finally:
                try:
                    dispatcher.shutdown()
                finally:
                    try:
                        if http_sink is not None:
                            http_sink.stop()
                    finally:
                        csv_writer.stop()
                        totals = router.totals()
                        enqueued, processed, dropped = dispatcher.totals()
                        log.info(
                            "recorder.stopped",
                            received=totals.received,
                            aggregated=totals.aggregated,
                            first_contact=totals.first_contact,
                            malformed=totals.malformed,
                            publish_failed=totals.publish_failed,
                            enqueued=enqueued,
                            processed=processed,
                            dropped=dropped,
                            csv_rows=csv_writer.total_written,
                        )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    try:
        cfg = apply_cli(load_app_config(args.config), args)
        check_topics(cfg)
    except ConfigError as e:
        print(e, file=sys.stderr)
        return 1

    configure_logging(cfg.logging.level, cfg.logging.json)

    try:
        resolve_output(
            cfg.recorder.output_path,
            force=args.force,
            confirm_existing=bool(args.positionals),
            interactive=sys.stdin is not None and sys.stdin.isatty(),
        )
    except Abort:
        print("Aborting...")
        return 0
    except ConfigError as e:
        print(e, file=sys.stderr)
        return 1

    _banner(cfg)

    stop = threading.Event()
    _install_stop(stop)
    return run(cfg, stop)


if __name__ == "__main__":
    sys.exit(main())
