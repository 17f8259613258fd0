"""ICMP echo (ping) client package."""

from ._version import __version__

__all__ = ["EchoSession", "Pinger", "StatsAccumulator", "__version__"]


def __getattr__(name: str):
    if name == "EchoSession":
        from .session import EchoSession

        return EchoSession
    if name == "Pinger":
        from .pinger import Pinger

        return Pinger
    if name == "StatsAccumulator":
        from .stats import StatsAccumulator

        return StatsAccumulator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
