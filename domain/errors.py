from __future__ import annotations


class HarnessError(Exception):
    """Base de todos os erros do harness."""


class DecodeError(HarnessError):
    """Payload malformado (JSON inválido, campo ausente ou com tipo errado)."""


class TransportError(HarnessError):
    pass


class ConnectError(TransportError):
    pass


class PublishError(TransportError):
    pass


class ConnectionLost(TransportError):
    pass


class ConfigError(HarnessError, ValueError):
    pass
