"""Running per-session ride metrics."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..config import STOP_SPEED_THRESHOLD_KMH
from ..geo import LatLon, distance_meters
from ..models import Fix, SessionMetrics, StopEvent


@dataclass(frozen=True, slots=True)
class MetricsStep:
    """Metrics after one fix, plus the bookkeeping needed to continue."""

    metrics: SessionMetrics
    moving_samples: int
    moving_speed_sum_kmh: float
    last_location: Optional[LatLon]


class MetricsTracker:
    """Accumulate distance, speeds and stop totals for one session.

    Like the stop detector, :meth:`evaluate` is pure and :meth:`commit`
    applies the result once it has been stored.
    """

    def __init__(
        self,
        *,
        speed_threshold_kmh: float = STOP_SPEED_THRESHOLD_KMH,
        metrics: SessionMetrics | None = None,
    ) -> None:
        self.speed_threshold_kmh = speed_threshold_kmh
        self._metrics = metrics or SessionMetrics()
        self._moving_samples = 0
        self._moving_speed_sum_kmh = 0.0
        self._last_location: Optional[LatLon] = None

    @property
    def metrics(self) -> SessionMetrics:
        return self._metrics

    def evaluate(
        self, fix: Fix, *, stopped: bool, stop: Optional[StopEvent] = None
    ) -> MetricsStep:
        """Fold ``fix`` into the totals.

        Args:
            fix: The accepted fix.
            stopped: Detector state after this fix; no distance accrues while
                stopped.
            stop: The stop event confirmed by this fix, if any.
        """

        current = self._metrics
        distance_km = current.total_distance_km
        if not stopped and self._last_location is not None:
            distance_km += distance_meters(self._last_location, fix.location) / 1000.0

        samples = self._moving_samples
        speed_sum = self._moving_speed_sum_kmh
        speed_kmh = fix.speed_kmh
        if speed_kmh >= self.speed_threshold_kmh:
            samples += 1
            speed_sum += speed_kmh

        stop_count = current.stop_count
        stop_seconds = current.total_stop_seconds
        if stop is not None:
            stop_count += 1
            stop_seconds += stop.duration_seconds

        return MetricsStep(
            metrics=SessionMetrics(
                total_distance_km=distance_km,
                total_stop_seconds=stop_seconds,
                stop_count=stop_count,
                average_speed_kmh=speed_sum / samples if samples else 0.0,
                max_speed_kmh=max(current.max_speed_kmh, speed_kmh),
            ),
            moving_samples=samples,
            moving_speed_sum_kmh=speed_sum,
            last_location=fix.location,
        )

    def commit(self, step: MetricsStep, metrics: SessionMetrics | None = None) -> None:
        self._metrics = metrics or step.metrics
        self._moving_samples = step.moving_samples
        self._moving_speed_sum_kmh = step.moving_speed_sum_kmh
        self._last_location = step.last_location


__all__ = ["MetricsStep", "MetricsTracker"]
