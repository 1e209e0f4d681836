"""Aggregate statistics over a cluster's member stops."""

from __future__ import annotations

import statistics
from dataclasses import dataclass
from typing import Sequence

from ..errors import InvariantViolation
from ..geo import LatLon
from ..models import StopEvent


@dataclass(frozen=True, slots=True)
class ClusterStats:
    centroid: LatLon
    average_duration_seconds: float
    median_duration_seconds: int
    stop_count: int


def centroid(stops: Sequence[StopEvent]) -> LatLon:
    """Arithmetic mean of latitudes and of longitudes, recomputed in full."""

    if not stops:
        raise InvariantViolation("Cannot compute the centroid of no stops")
    return (
        statistics.fmean(s.latitude for s in stops),
        statistics.fmean(s.longitude for s in stops),
    )


def median_duration(durations: Sequence[int]) -> int:
    """Median in whole seconds.

    An even count averages the two central values and drops the fraction,
    so ``[15, 15, 20, 100]`` gives 17.
    """

    if not durations:
        raise InvariantViolation("Cannot compute the median of no durations")
    ordered = sorted(int(d) for d in durations)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) // 2


def summarize(stops: Sequence[StopEvent]) -> ClusterStats:
    durations = [s.duration_seconds for s in stops]
    return ClusterStats(
        centroid=centroid(stops),
        average_duration_seconds=statistics.fmean(durations),
        median_duration_seconds=median_duration(durations),
        stop_count=len(stops),
    )


__all__ = ["ClusterStats", "centroid", "median_duration", "summarize"]
