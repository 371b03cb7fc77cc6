from __future__ import annotations

from dataclasses import dataclass

DEVICE_ID_FIELD = "{device_id}"


@dataclass(frozen=True)
class TopicScheme:
    """
    Templates de tópico por device. O único placeholder é {device_id}.

    report: probe -> recorder
    reply:  recorder -> probe (ack)
    command: qualquer mensagem aqui encerra o probe
    """
    report: str = "{device_id}/latency/report"
    reply: str = "{device_id}/latency/reply"
    command: str = "{device_id}/command"

    def report_for(self, device_id: str) -> str:
        return self.report.format(device_id=device_id)

    def reply_for(self, device_id: str) -> str:
        return self.reply.format(device_id=device_id)

    def command_for(self, device_id: str) -> str:
        return self.command.format(device_id=device_id)

    @property
    def merged(self) -> bool:
        # report == reply: o probe também recebe os próprios reports
        return self.report == self.reply
