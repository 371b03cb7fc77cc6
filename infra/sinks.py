from __future__ import annotations

import structlog

from domain.models import SummaryRecord

log = structlog.get_logger(__name__)


class LogSummarySink:
    """Uma linha de log por janela fechada."""

    def handle(self, record: SummaryRecord) -> None:
        log.info(
            "window.summary",
            time_utc=record.label,
            average=round(record.average, 3) if record.average is not None else None,
            sample_count=record.sample_count,
        )
