"""
Codec do payload de round trip.

Formato no fio (objeto JSON plano):
    {"device_id": "probe-0", "timestamp": 1700000000000, "last_latency": -1}

timestamp e last_latency são milissegundos inteiros. Publishers antigos
mandavam -1.0 na primeira mensagem, por isso floats inteiros são aceitos.
"""
from __future__ import annotations

import json
from typing import Any, Mapping

from .errors import DecodeError
from .models import NO_LATENCY, RoundTripSample


def encode(sample: RoundTripSample) -> bytes:
    body = {
        "device_id": sample.device_id,
        "timestamp": int(sample.timestamp_ms),
        "last_latency": int(sample.last_latency_ms),
    }
    return json.dumps(body, separators=(",", ":")).encode("utf-8")


def _int_field(obj: Mapping[str, Any], name: str) -> int:
    if name not in obj:
        raise DecodeError(f"campo '{name}' ausente")
    v = obj[name]
    # bool é subclasse de int, mas não é um número válido aqui
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise DecodeError(f"campo '{name}' não numérico: {v!r}")
    if isinstance(v, float) and not v.is_integer():
        raise DecodeError(f"campo '{name}' não inteiro: {v!r}")
    return int(v)


def decode(data: bytes) -> RoundTripSample:
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"payload inválido: {e}") from e

    if not isinstance(obj, dict):
        raise DecodeError("payload não é um objeto JSON")

    device_id = obj.get("device_id")
    if not isinstance(device_id, str) or not device_id:
        raise DecodeError(f"campo 'device_id' ausente ou inválido: {device_id!r}")

    timestamp_ms = _int_field(obj, "timestamp")
    last_latency_ms = _int_field(obj, "last_latency")

    if timestamp_ms < 0:
        raise DecodeError(f"timestamp negativo: {timestamp_ms}")
    if last_latency_ms < NO_LATENCY:
        raise DecodeError(f"last_latency negativo: {last_latency_ms}")

    return RoundTripSample(
        device_id=device_id,
        timestamp_ms=timestamp_ms,
        last_latency_ms=last_latency_ms,
    )
