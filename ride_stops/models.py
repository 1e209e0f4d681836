"""Domain entities: raw fixes, stored waypoints, stop events, sessions, clusters.

Every entity validates its fields on construction and raises
:class:`~ride_stops.errors.ValidationError` instead of clamping. Entities are
frozen; updates produce new instances via :func:`dataclasses.replace`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Optional

from .config import (
    MIN_STOP_DURATION_SECONDS,
    PROBLEM_MIN_AVG_DURATION_SECONDS,
    PROBLEM_MIN_STOPS,
)
from .errors import InvariantViolation, ValidationError
from .geo import LatLon

MPS_TO_KMH = 3.6


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValidationError(message)


def _check_coordinates(latitude: float, longitude: float, label: str = "") -> None:
    prefix = f"{label} " if label else ""
    _require(
        math.isfinite(latitude) and -90.0 <= latitude <= 90.0,
        f"{prefix}latitude must be between -90 and 90 degrees (got {latitude})",
    )
    _require(
        math.isfinite(longitude) and -180.0 <= longitude <= 180.0,
        f"{prefix}longitude must be between -180 and 180 degrees (got {longitude})",
    )


def _check_speed(speed_mps: float, label: str = "speed") -> None:
    _require(
        math.isfinite(speed_mps) and speed_mps >= 0.0,
        f"{label} cannot be negative (got {speed_mps})",
    )


def _check_bearing(bearing: Optional[float]) -> None:
    if bearing is None:
        return
    _require(
        math.isfinite(bearing) and 0.0 <= bearing <= 360.0,
        f"bearing must be between 0 and 360 degrees (got {bearing})",
    )


def _check_accuracy(accuracy_m: Optional[float], *, required: bool) -> None:
    if accuracy_m is None:
        _require(not required, "accuracy is required")
        return
    _require(
        math.isfinite(accuracy_m) and accuracy_m > 0.0,
        f"accuracy must be positive (got {accuracy_m})",
    )


@dataclass(frozen=True, slots=True)
class Fix:
    """One raw GPS sample as delivered by a fix source.

    Attributes:
        latitude: Latitude in decimal degrees.
        longitude: Longitude in decimal degrees.
        speed_mps: Ground speed in metres/second.
        timestamp: Time of the fix (timezone-aware).
        bearing: Direction of travel in degrees, ``None`` when unknown.
        accuracy_m: Horizontal accuracy radius in metres, ``None`` when unknown.
    """

    latitude: float
    longitude: float
    speed_mps: float
    timestamp: datetime
    bearing: Optional[float] = None
    accuracy_m: Optional[float] = None

    def __post_init__(self) -> None:
        _check_coordinates(self.latitude, self.longitude)
        _check_speed(self.speed_mps)
        _check_bearing(self.bearing)
        _check_accuracy(self.accuracy_m, required=False)

    @property
    def speed_kmh(self) -> float:
        return self.speed_mps * MPS_TO_KMH

    @property
    def location(self) -> LatLon:
        return (self.latitude, self.longitude)


@dataclass(frozen=True, slots=True)
class Waypoint:
    """A persisted route point chosen by significance sampling."""

    session_id: int
    latitude: float
    longitude: float
    speed_mps: float
    timestamp: datetime
    accuracy_m: float
    bearing: Optional[float] = None
    id: Optional[int] = None

    def __post_init__(self) -> None:
        _check_coordinates(self.latitude, self.longitude)
        _check_speed(self.speed_mps)
        _check_bearing(self.bearing)
        _check_accuracy(self.accuracy_m, required=True)

    @classmethod
    def from_fix(cls, session_id: int, fix: Fix) -> "Waypoint":
        if fix.accuracy_m is None:
            raise ValidationError("Cannot store a fix without accuracy as a waypoint")
        return cls(
            session_id=session_id,
            latitude=fix.latitude,
            longitude=fix.longitude,
            speed_mps=fix.speed_mps,
            timestamp=fix.timestamp,
            accuracy_m=fix.accuracy_m,
            bearing=fix.bearing,
        )

    @property
    def speed_kmh(self) -> float:
        return self.speed_mps * MPS_TO_KMH

    @property
    def location(self) -> LatLon:
        return (self.latitude, self.longitude)


@dataclass(frozen=True, slots=True)
class StopEvent:
    """One confirmed stationary period within a session.

    ``timestamp`` is the start of the stop. ``cluster_id`` is the only field
    ever changed after creation, by the clustering step.
    """

    session_id: int
    latitude: float
    longitude: float
    duration_seconds: int
    timestamp: datetime
    speed_before_stop_mps: float
    sequence_number: int
    bearing: Optional[float] = None
    cluster_id: Optional[int] = None
    id: Optional[int] = None

    def __post_init__(self) -> None:
        _check_coordinates(self.latitude, self.longitude)
        _require(
            self.duration_seconds >= MIN_STOP_DURATION_SECONDS,
            f"duration must be at least {MIN_STOP_DURATION_SECONDS} seconds "
            f"(got {self.duration_seconds})",
        )
        _check_speed(self.speed_before_stop_mps, "speed before stop")
        _require(
            self.sequence_number >= 1,
            f"sequence number must start at 1 (got {self.sequence_number})",
        )
        _check_bearing(self.bearing)

    @property
    def location(self) -> LatLon:
        return (self.latitude, self.longitude)

    @property
    def speed_before_stop_kmh(self) -> float:
        return self.speed_before_stop_mps * MPS_TO_KMH


@dataclass(frozen=True, slots=True)
class SessionMetrics:
    """Running totals for one session."""

    total_distance_km: float = 0.0
    total_stop_seconds: int = 0
    stop_count: int = 0
    average_speed_kmh: float = 0.0
    max_speed_kmh: float = 0.0

    def __post_init__(self) -> None:
        _require(self.total_distance_km >= 0, "total distance cannot be negative")
        _require(self.total_stop_seconds >= 0, "total stop time cannot be negative")
        _require(self.stop_count >= 0, "stop count cannot be negative")
        _require(self.average_speed_kmh >= 0, "average speed cannot be negative")
        _require(self.max_speed_kmh >= 0, "max speed cannot be negative")


@dataclass(frozen=True, slots=True)
class Session:
    """One tracked ride. ``end_time`` is ``None`` while the session is active."""

    id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    metrics: SessionMetrics = field(default_factory=SessionMetrics)

    def __post_init__(self) -> None:
        if self.end_time is not None:
            _require(
                self.end_time >= self.start_time,
                "end time must not be before start time",
            )

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @property
    def duration_seconds(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds())

    @property
    def moving_time_seconds(self) -> Optional[int]:
        duration = self.duration_seconds
        if duration is None:
            return None
        return max(0, duration - self.metrics.total_stop_seconds)

    @property
    def total_distance_km(self) -> float:
        return self.metrics.total_distance_km

    @property
    def total_stop_seconds(self) -> int:
        return self.metrics.total_stop_seconds

    @property
    def stop_count(self) -> int:
        return self.metrics.stop_count

    @property
    def average_speed_kmh(self) -> float:
        return self.metrics.average_speed_kmh

    @property
    def max_speed_kmh(self) -> float:
        return self.metrics.max_speed_kmh


@dataclass(frozen=True, slots=True)
class Cluster:
    """Stops from any number of sessions aggregated around one location.

    ``id`` is ``None`` until the repository stores the cluster.
    """

    centroid_latitude: float
    centroid_longitude: float
    average_duration_seconds: float
    median_duration_seconds: int
    stop_count: int
    member_stop_ids: FrozenSet[int]
    last_updated: datetime
    id: Optional[int] = None

    def __post_init__(self) -> None:
        _check_coordinates(self.centroid_latitude, self.centroid_longitude, "centroid")
        _require(
            self.average_duration_seconds >= 0, "average duration cannot be negative"
        )
        _require(
            self.median_duration_seconds >= 0, "median duration cannot be negative"
        )
        if self.stop_count < 1 or not self.member_stop_ids:
            raise InvariantViolation("A cluster must contain at least one stop")
        if self.stop_count != len(self.member_stop_ids):
            raise InvariantViolation(
                f"Cluster {self.id} stop_count={self.stop_count} does not match "
                f"{len(self.member_stop_ids)} member stops"
            )

    @property
    def centroid(self) -> LatLon:
        return (self.centroid_latitude, self.centroid_longitude)

    def is_problem_intersection(
        self,
        min_stops: int = PROBLEM_MIN_STOPS,
        min_avg_duration_seconds: float = PROBLEM_MIN_AVG_DURATION_SECONDS,
    ) -> bool:
        """True for frequently hit or long-wait locations."""

        return (
            self.stop_count >= min_stops
            or self.average_duration_seconds >= min_avg_duration_seconds
        )


__all__ = [
    "MPS_TO_KMH",
    "Fix",
    "Waypoint",
    "StopEvent",
    "SessionMetrics",
    "Session",
    "Cluster",
]
