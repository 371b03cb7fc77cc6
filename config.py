from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from domain.errors import ConfigError
from domain.topics import DEVICE_ID_FIELD, TopicScheme


@dataclass(frozen=True)
class BrokerConfig:
    hostname: str
    port: int = 1883
    keepalive_sec: int = 60
    max_inflight: int = 100


@dataclass(frozen=True)
class TopicsConfig:
    report: str = "{device_id}/latency/report"
    reply: str = "{device_id}/latency/reply"
    command: str = "{device_id}/command"

    def scheme(self) -> TopicScheme:
        return TopicScheme(report=self.report, reply=self.reply, command=self.command)


@dataclass(frozen=True)
class FleetConfig:
    count: int = 15000
    id_prefix: str = "probe-"
    throttle_ms: int = 5000
    stagger_ms: int = 1
    stagger_max_ms: int = 1000
    connect_attempts: int = 12
    connect_base_delay_ms: int = 500
    connect_max_delay_ms: int = 3000
    reply_timeout_ms: int = 30000
    qos: int = 0
    report_interval_sec: float = 1.0
    shutdown_timeout_sec: float = 10.0
    run_sec: float = 0.0  # 0 = até SIGINT/SIGTERM


@dataclass(frozen=True)
class SummaryHttpConfig:
    url: str
    enabled: bool = True
    workers: int = 2
    queue_max: int = 5000
    timeout_sec: float = 2.0
    max_retries: int = 3


@dataclass(frozen=True)
class RecorderConfig:
    client_id: str = "latency-report-client"
    subscribe_topic: str = "+/latency/report"
    qos: int = 0
    output_path: str = "latency_aggregation.csv"
    window_sec: float = 1.0
    shards: int = 8
    queue_size: int = 100000
    connect_attempts: int = 12
    connect_base_delay_ms: int = 500
    connect_max_delay_ms: int = 3000
    csv_queue_max: int = 20000
    http: Optional[SummaryHttpConfig] = None


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass(frozen=True)
class AppConfig:
    broker: BrokerConfig
    topics: TopicsConfig = field(default_factory=TopicsConfig)
    fleet: FleetConfig = field(default_factory=FleetConfig)
    recorder: RecorderConfig = field(default_factory=RecorderConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _req(d: Mapping[str, Any], path: str) -> Any:
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, Mapping) or part not in cur:
            raise ConfigError(f"Config inválida: campo obrigatório '{path}' ausente.")
        cur = cur[part]
    return cur


def _opt(d: Mapping[str, Any], path: str, default: Any) -> Any:
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, Mapping) or part not in cur:
            return default
        cur = cur[part]
    return cur


def _num(d: Mapping[str, Any], path: str, default: Any, kind: type) -> Any:
    raw = _opt(d, path, default)
    if isinstance(raw, bool):
        raise ConfigError(f"Config inválida: '{path}' deve ser numérico: {raw!r}")
    try:
        return kind(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Config inválida: '{path}' deve ser numérico: {raw!r}") from e


def _check_qos(qos: int, path: str) -> int:
    if qos not in (0, 1, 2):
        raise ConfigError(f"Config inválida: '{path}' deve ser 0, 1 ou 2 (recebido {qos}).")
    return qos


def _check_positive(value: float, path: str) -> None:
    if value <= 0:
        raise ConfigError(f"Config inválida: '{path}' deve ser > 0 (recebido {value}).")


def _check_non_negative(value: float, path: str) -> None:
    if value < 0:
        raise ConfigError(f"Config inválida: '{path}' não pode ser negativo (recebido {value}).")


def validate_qos(text: str) -> int:
    """QoS vindo da linha de comando."""
    try:
        qos = int(str(text).strip())
    except ValueError as e:
        raise ConfigError(f"QoS inválido: {text!r} (use 0, 1 ou 2)") from e
    if qos not in (0, 1, 2):
        raise ConfigError(f"QoS inválido: {qos} (use 0, 1 ou 2)")
    return qos


def _topic_template(d: Mapping[str, Any], path: str, default: str) -> str:
    tpl = str(_opt(d, path, default)).strip()
    if DEVICE_ID_FIELD not in tpl:
        raise ConfigError(f"Config inválida: '{path}' precisa conter {DEVICE_ID_FIELD} (recebido {tpl!r}).")
    return tpl


def _parse_broker(data: Mapping[str, Any]) -> BrokerConfig:
    hostname = str(_req(data, "broker.hostname")).strip()
    if not hostname:
        raise ConfigError("Config inválida: 'broker.hostname' vazio.")
    port = _num(data, "broker.port", 1883, int)
    if port < 1 or port > 65535:
        raise ConfigError(f"Config inválida: 'broker.port' fora do intervalo: {port}")
    keepalive = _num(data, "broker.keepalive_sec", 60, int)
    _check_positive(keepalive, "broker.keepalive_sec")
    max_inflight = _num(data, "broker.max_inflight", 100, int)
    _check_positive(max_inflight, "broker.max_inflight")
    return BrokerConfig(hostname=hostname, port=port, keepalive_sec=keepalive, max_inflight=max_inflight)


def _parse_topics(data: Mapping[str, Any]) -> TopicsConfig:
    d = TopicsConfig()
    return TopicsConfig(
        report=_topic_template(data, "topics.report", d.report),
        reply=_topic_template(data, "topics.reply", d.reply),
        command=_topic_template(data, "topics.command", d.command),
    )


def _parse_fleet(data: Mapping[str, Any]) -> FleetConfig:
    d = FleetConfig()
    cfg = FleetConfig(
        count=_num(data, "fleet.count", d.count, int),
        id_prefix=str(_opt(data, "fleet.id_prefix", d.id_prefix)),
        throttle_ms=_num(data, "fleet.throttle_ms", d.throttle_ms, int),
        stagger_ms=_num(data, "fleet.stagger_ms", d.stagger_ms, int),
        stagger_max_ms=_num(data, "fleet.stagger_max_ms", d.stagger_max_ms, int),
        connect_attempts=_num(data, "fleet.connect_attempts", d.connect_attempts, int),
        connect_base_delay_ms=_num(data, "fleet.connect_base_delay_ms", d.connect_base_delay_ms, int),
        connect_max_delay_ms=_num(data, "fleet.connect_max_delay_ms", d.connect_max_delay_ms, int),
        reply_timeout_ms=_num(data, "fleet.reply_timeout_ms", d.reply_timeout_ms, int),
        qos=_check_qos(_num(data, "fleet.qos", d.qos, int), "fleet.qos"),
        report_interval_sec=_num(data, "fleet.report_interval_sec", d.report_interval_sec, float),
        shutdown_timeout_sec=_num(data, "fleet.shutdown_timeout_sec", d.shutdown_timeout_sec, float),
        run_sec=_num(data, "fleet.run_sec", d.run_sec, float),
    )

    _check_positive(cfg.count, "fleet.count")
    _check_non_negative(cfg.throttle_ms, "fleet.throttle_ms")
    _check_non_negative(cfg.stagger_ms, "fleet.stagger_ms")
    if cfg.stagger_max_ms < cfg.stagger_ms:
        raise ConfigError("Config inválida: 'fleet.stagger_max_ms' menor que 'fleet.stagger_ms'.")
    _check_positive(cfg.connect_attempts, "fleet.connect_attempts")
    _check_non_negative(cfg.connect_base_delay_ms, "fleet.connect_base_delay_ms")
    _check_non_negative(cfg.connect_max_delay_ms, "fleet.connect_max_delay_ms")
    _check_non_negative(cfg.reply_timeout_ms, "fleet.reply_timeout_ms")
    _check_positive(cfg.report_interval_sec, "fleet.report_interval_sec")
    _check_positive(cfg.shutdown_timeout_sec, "fleet.shutdown_timeout_sec")
    _check_non_negative(cfg.run_sec, "fleet.run_sec")
    return cfg


def _parse_http(raw: Any) -> Optional[SummaryHttpConfig]:
    if not isinstance(raw, Mapping):
        return None
    if not bool(_opt(raw, "enabled", True)):
        return None

    cfg = SummaryHttpConfig(
        url=str(_req(raw, "url")),
        enabled=True,
        workers=_num(raw, "workers", 2, int),
        queue_max=_num(raw, "queue_max", 5000, int),
        timeout_sec=_num(raw, "timeout_sec", 2.0, float),
        max_retries=_num(raw, "max_retries", 3, int),
    )
    _check_positive(cfg.workers, "recorder.http.workers")
    _check_positive(cfg.queue_max, "recorder.http.queue_max")
    _check_positive(cfg.timeout_sec, "recorder.http.timeout_sec")
    _check_non_negative(cfg.max_retries, "recorder.http.max_retries")
    return cfg


def _parse_recorder(data: Mapping[str, Any]) -> RecorderConfig:
    d = RecorderConfig()
    cfg = RecorderConfig(
        client_id=str(_opt(data, "recorder.client_id", d.client_id)),
        subscribe_topic=str(_opt(data, "recorder.subscribe_topic", d.subscribe_topic)),
        qos=_check_qos(_num(data, "recorder.qos", d.qos, int), "recorder.qos"),
        output_path=str(_opt(data, "recorder.output_path", d.output_path)),
        window_sec=_num(data, "recorder.window_sec", d.window_sec, float),
        shards=_num(data, "recorder.shards", d.shards, int),
        queue_size=_num(data, "recorder.queue_size", d.queue_size, int),
        connect_attempts=_num(data, "recorder.connect_attempts", d.connect_attempts, int),
        connect_base_delay_ms=_num(data, "recorder.connect_base_delay_ms", d.connect_base_delay_ms, int),
        connect_max_delay_ms=_num(data, "recorder.connect_max_delay_ms", d.connect_max_delay_ms, int),
        csv_queue_max=_num(data, "recorder.csv_queue_max", d.csv_queue_max, int),
        http=_parse_http(_opt(data, "recorder.http", None)),
    )

    _check_positive(cfg.window_sec, "recorder.window_sec")
    _check_positive(cfg.shards, "recorder.shards")
    _check_positive(cfg.queue_size, "recorder.queue_size")
    _check_positive(cfg.connect_attempts, "recorder.connect_attempts")
    _check_positive(cfg.csv_queue_max, "recorder.csv_queue_max")
    if not cfg.subscribe_topic.strip():
        raise ConfigError("Config inválida: 'recorder.subscribe_topic' vazio.")
    return cfg


def _parse_logging(data: Mapping[str, Any]) -> LoggingConfig:
    level = str(_opt(data, "logging.level", "INFO")).upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"Config inválida: 'logging.level' desconhecido: {level}")
    return LoggingConfig(level=level, json=bool(_opt(data, "logging.json", False)))


def parse_config(data: Mapping[str, Any]) -> AppConfig:
    if not isinstance(data, Mapping):
        raise ConfigError("Config inválida: o documento YAML deve ser um mapa.")
    return AppConfig(
        broker=_parse_broker(data),
        topics=_parse_topics(data),
        fleet=_parse_fleet(data),
        recorder=_parse_recorder(data),
        logging=_parse_logging(data),
    )


def load_config(path: str = "config.yaml") -> AppConfig:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Config inválida: não foi possível ler '{path}': {e}") from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Config inválida: YAML malformado em '{path}': {e}") from e
    return parse_config(data)
