"""Significance sampling: keep only fixes that differ from the last stored one."""

from __future__ import annotations

from typing import Optional

from ..config import (
    SAMPLING_BEARING_CHANGE_DEG,
    SAMPLING_MAX_INTERVAL_SECONDS,
    SAMPLING_SPEED_CHANGE_KMH,
)
from ..geo import bearing_delta
from ..models import Fix, Waypoint
from ..utils import elapsed_seconds


def is_significant(
    fix: Fix,
    last_stored: Optional[Waypoint],
    *,
    stopped: bool = False,
    speed_change_kmh: float = SAMPLING_SPEED_CHANGE_KMH,
    bearing_change_deg: float = SAMPLING_BEARING_CHANGE_DEG,
    max_interval_seconds: float = SAMPLING_MAX_INTERVAL_SECONDS,
) -> bool:
    """Decide whether ``fix`` should become a waypoint.

    Args:
        fix: The accepted fix under consideration.
        last_stored: The session's latest waypoint, ``None`` for the first fix.
        stopped: Whether the stop detector is in a potential or confirmed stop.
        speed_change_kmh: Store when speed differs by more than this.
        bearing_change_deg: Store when bearing differs by more than this; only
            checked when both bearings are known.
        max_interval_seconds: Store once this much time has passed.

    Returns:
        True when any criterion holds.
    """

    if last_stored is None:
        return True
    if stopped:
        return True
    if elapsed_seconds(last_stored.timestamp, fix.timestamp) >= max_interval_seconds:
        return True
    if abs(fix.speed_kmh - last_stored.speed_kmh) > speed_change_kmh:
        return True
    if fix.bearing is not None and last_stored.bearing is not None:
        if bearing_delta(fix.bearing, last_stored.bearing) > bearing_change_deg:
            return True
    return False


class SignificanceSampler:
    """Per-session sampler remembering the last stored waypoint."""

    def __init__(
        self,
        *,
        speed_change_kmh: float = SAMPLING_SPEED_CHANGE_KMH,
        bearing_change_deg: float = SAMPLING_BEARING_CHANGE_DEG,
        max_interval_seconds: float = SAMPLING_MAX_INTERVAL_SECONDS,
        last_stored: Optional[Waypoint] = None,
    ) -> None:
        if max_interval_seconds <= 0:
            raise ValueError("max_interval_seconds must be positive")
        self.speed_change_kmh = speed_change_kmh
        self.bearing_change_deg = bearing_change_deg
        self.max_interval_seconds = max_interval_seconds
        self._last_stored = last_stored

    @property
    def last_stored(self) -> Optional[Waypoint]:
        return self._last_stored

    def should_store(self, fix: Fix, *, stopped: bool = False) -> bool:
        return is_significant(
            fix,
            self._last_stored,
            stopped=stopped,
            speed_change_kmh=self.speed_change_kmh,
            bearing_change_deg=self.bearing_change_deg,
            max_interval_seconds=self.max_interval_seconds,
        )

    def record(self, waypoint: Waypoint) -> None:
        """Make ``waypoint`` the reference for subsequent comparisons."""

        self._last_stored = waypoint

    def reset(self) -> None:
        self._last_stored = None


__all__ = ["SignificanceSampler", "is_significant"]
