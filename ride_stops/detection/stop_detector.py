"""Per-session stop detection state machine.

States are explicit values rather than loose fields::

    Moving ──slow fix──▶ PotentialStop ──held for confirm window──▶ ConfirmedStop
      ▲                     │  fast fix: false alarm                    │
      └─────────────────────┘  left tolerance radius: re-anchor         │
      ▲                                                                  │
      └──────────────────────────── fast fix ───────────────────────────┘

Evaluation is pure: :meth:`StopDetector.evaluate` computes the next state and
the stop event (if any) without touching the detector, and
:meth:`StopDetector.apply` commits it. The pipeline only commits once the
outcome has been persisted, so a failed write never advances the machine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from ..config import (
    MIN_STOP_DURATION_SECONDS,
    STOP_CONFIRM_SECONDS,
    STOP_SPEED_THRESHOLD_KMH,
    STOP_TOLERANCE_RADIUS_M,
)
from ..geo import distance_meters
from ..models import Fix, StopEvent
from ..utils import elapsed_seconds


class DetectorPhase(str, Enum):
    MOVING = "MOVING"
    POTENTIAL_STOP = "POTENTIAL_STOP"
    CONFIRMED_STOP = "CONFIRMED_STOP"


@dataclass(frozen=True, slots=True)
class Moving:
    """Riding. ``last_speed_mps`` is the speed of the latest fix seen here."""

    last_speed_mps: Optional[float] = None

    @property
    def phase(self) -> DetectorPhase:
        return DetectorPhase.MOVING


@dataclass(frozen=True, slots=True)
class PotentialStop:
    """Slow since ``anchor``; not yet long enough to count as a stop."""

    anchor: Fix
    speed_before_stop_mps: float

    @property
    def phase(self) -> DetectorPhase:
        return DetectorPhase.POTENTIAL_STOP


@dataclass(frozen=True, slots=True)
class ConfirmedStop:
    """A stop was recorded; waiting for the rider to move off."""

    event: StopEvent

    @property
    def phase(self) -> DetectorPhase:
        return DetectorPhase.CONFIRMED_STOP


StopState = Union[Moving, PotentialStop, ConfirmedStop]


@dataclass(frozen=True, slots=True)
class DetectorStep:
    """Result of evaluating one fix: the next state and an optional new stop."""

    state: StopState
    confirmed_count: int
    event: Optional[StopEvent] = None

    @property
    def is_stopped(self) -> bool:
        return not isinstance(self.state, Moving)


class StopDetector:
    """Classify a session's ordered fixes into stop events."""

    def __init__(
        self,
        session_id: int,
        *,
        speed_threshold_kmh: float = STOP_SPEED_THRESHOLD_KMH,
        confirm_seconds: float = STOP_CONFIRM_SECONDS,
        tolerance_radius_m: float = STOP_TOLERANCE_RADIUS_M,
        confirmed_count: int = 0,
    ) -> None:
        if speed_threshold_kmh <= 0:
            raise ValueError("speed_threshold_kmh must be positive")
        if confirm_seconds < MIN_STOP_DURATION_SECONDS:
            raise ValueError(
                f"confirm_seconds must be at least {MIN_STOP_DURATION_SECONDS}"
            )
        if tolerance_radius_m <= 0:
            raise ValueError("tolerance_radius_m must be positive")
        if confirmed_count < 0:
            raise ValueError("confirmed_count cannot be negative")
        self.session_id = session_id
        self.speed_threshold_kmh = speed_threshold_kmh
        self.confirm_seconds = confirm_seconds
        self.tolerance_radius_m = tolerance_radius_m
        self._state: StopState = Moving()
        self._confirmed_count = confirmed_count
        self._log = logging.getLogger(self.__class__.__name__)

    @property
    def state(self) -> StopState:
        return self._state

    @property
    def phase(self) -> DetectorPhase:
        return self._state.phase

    @property
    def is_stopped(self) -> bool:
        """True in POTENTIAL_STOP or CONFIRMED_STOP (read by the sampler)."""

        return not isinstance(self._state, Moving)

    @property
    def confirmed_count(self) -> int:
        return self._confirmed_count

    def evaluate(self, fix: Fix) -> DetectorStep:
        """Compute the transition for ``fix`` without changing the detector."""

        state = self._state
        slow = fix.speed_kmh < self.speed_threshold_kmh

        if isinstance(state, Moving):
            if not slow:
                return self._step(Moving(last_speed_mps=fix.speed_mps))
            before = (
                state.last_speed_mps
                if state.last_speed_mps is not None
                else fix.speed_mps
            )
            return self._step(PotentialStop(anchor=fix, speed_before_stop_mps=before))

        if isinstance(state, PotentialStop):
            if not slow:
                # False alarm.
                return self._step(Moving(last_speed_mps=fix.speed_mps))
            anchor = state.anchor
            if distance_meters(anchor.location, fix.location) > self.tolerance_radius_m:
                # Drifted away while slow: not a stop here, start over at this fix.
                return self._step(
                    PotentialStop(
                        anchor=fix,
                        speed_before_stop_mps=state.speed_before_stop_mps,
                    )
                )
            elapsed = elapsed_seconds(anchor.timestamp, fix.timestamp)
            if elapsed >= self.confirm_seconds:
                event = self._build_event(state, int(elapsed))
                return DetectorStep(
                    state=ConfirmedStop(event=event),
                    confirmed_count=self._confirmed_count + 1,
                    event=event,
                )
            return self._step(state)

        # ConfirmedStop: duration stays as recorded at confirmation.
        if not slow:
            return self._step(Moving(last_speed_mps=fix.speed_mps))
        return self._step(state)

    def apply(self, step: DetectorStep) -> None:
        """Commit a step produced by :meth:`evaluate` for the latest fix."""

        if step.event is not None:
            self._log.debug(
                "Stop #%d confirmed for session=%s (%ss at %.6f,%.6f)",
                step.event.sequence_number,
                self.session_id,
                step.event.duration_seconds,
                step.event.latitude,
                step.event.longitude,
            )
        self._state = step.state
        self._confirmed_count = step.confirmed_count

    def update(self, fix: Fix) -> Optional[StopEvent]:
        """Evaluate and commit in one go; returns the stop confirmed by ``fix``."""

        step = self.evaluate(fix)
        self.apply(step)
        return step.event

    def reset(self) -> None:
        """Back to MOVING with no anchor (session ended or discarded)."""

        self._state = Moving()

    def _step(self, state: StopState) -> DetectorStep:
        return DetectorStep(state=state, confirmed_count=self._confirmed_count)

    def _build_event(self, state: PotentialStop, duration_seconds: int) -> StopEvent:
        anchor = state.anchor
        return StopEvent(
            session_id=self.session_id,
            latitude=anchor.latitude,
            longitude=anchor.longitude,
            duration_seconds=duration_seconds,
            timestamp=anchor.timestamp,
            speed_before_stop_mps=state.speed_before_stop_mps,
            sequence_number=self._confirmed_count + 1,
            bearing=anchor.bearing,
        )


__all__ = [
    "DetectorPhase",
    "DetectorStep",
    "Moving",
    "PotentialStop",
    "ConfirmedStop",
    "StopState",
    "StopDetector",
]
