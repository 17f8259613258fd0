from __future__ import annotations

import math
from dataclasses import dataclass

from .errors import InsufficientData


@dataclass(frozen=True)
class Report:
    transmitted: int
    received: int
    elapsed_s: float
    loss_pct: float | None
    rtt_min_ms: float | None
    rtt_avg_ms: float | None
    rtt_max_ms: float | None
    rtt_mdev_ms: float | None

    @property
    def lost(self) -> int:
        return self.transmitted - self.received


@dataclass
class StatsAccumulator:
    transmitted_count: int = 0
    received_count: int = 0
    rtt_min: float = math.inf
    rtt_max: float = 0.0
    rtt_sum: float = 0.0
    rtt_sum_sq: float = 0.0

    def record_transmit(self) -> None:
        self.transmitted_count += 1

    def record(self, rtt_ms: float) -> None:
        self.rtt_min = min(self.rtt_min, rtt_ms)
        self.rtt_max = max(self.rtt_max, rtt_ms)
        self.rtt_sum += rtt_ms
        self.rtt_sum_sq += rtt_ms * rtt_ms
        self.received_count += 1

    def loss_percent(self) -> float:
        if self.transmitted_count == 0:
            raise InsufficientData("no packets transmitted")
        lost = self.transmitted_count - self.received_count
        return lost / self.transmitted_count * 100.0

    def rtt_average(self) -> float:
        if self.received_count == 0:
            raise InsufficientData("no replies received")
        return self.rtt_sum / self.received_count

    def rtt_mdev(self) -> float:
        avg = self.rtt_average()
        # Rounding can push the variance a hair below zero for identical samples.
        variance = self.rtt_sum_sq / self.received_count - avg * avg
        return math.sqrt(max(0.0, variance))

    def finalize(self, elapsed_s: float) -> Report:
        loss_pct: float | None
        try:
            loss_pct = self.loss_percent()
        except InsufficientData:
            loss_pct = None

        if self.received_count == 0:
            return Report(
                transmitted=self.transmitted_count,
                received=0,
                elapsed_s=elapsed_s,
                loss_pct=loss_pct,
                rtt_min_ms=None,
                rtt_avg_ms=None,
                rtt_max_ms=None,
                rtt_mdev_ms=None,
            )
        return Report(
            transmitted=self.transmitted_count,
            received=self.received_count,
            elapsed_s=elapsed_s,
            loss_pct=loss_pct,
            rtt_min_ms=self.rtt_min,
            rtt_avg_ms=self.rtt_average(),
            rtt_max_ms=self.rtt_max,
            rtt_mdev_ms=self.rtt_mdev(),
        )
