"""Per-fix classification: accuracy filter, stop detection, waypoint sampling."""

from .fix_filter import FixFilter, accept
from .sampler import SignificanceSampler, is_significant
from .stop_detector import (
    ConfirmedStop,
    DetectorPhase,
    DetectorStep,
    Moving,
    PotentialStop,
    StopDetector,
)

__all__ = [
    "FixFilter",
    "accept",
    "SignificanceSampler",
    "is_significant",
    "StopDetector",
    "DetectorPhase",
    "DetectorStep",
    "Moving",
    "PotentialStop",
    "ConfirmedStop",
]
