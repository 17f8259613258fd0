from __future__ import annotations


class PingError(Exception):
    pass


class ResolutionFailure(PingError):
    def __init__(self, host: str, reason: str) -> None:
        super().__init__(f"cannot resolve {host}: {reason}")
        self.host = host
        self.reason = reason


class TransportError(PingError):
    pass


class InsufficientData(PingError):
    pass
