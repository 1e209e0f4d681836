"""Accuracy gate in front of the stateful detection components."""

from __future__ import annotations

import math

from ..config import MAX_ACCURACY_M
from ..models import Fix


def accept(fix: Fix, max_accuracy_m: float = MAX_ACCURACY_M) -> bool:
    """Return True when the fix is accurate enough to process.

    Fixes without an accuracy estimate are rejected. The boundary is
    inclusive: an accuracy equal to ``max_accuracy_m`` passes.
    """

    accuracy = fix.accuracy_m
    if accuracy is None or not math.isfinite(accuracy):
        return False
    return accuracy <= max_accuracy_m


class FixFilter:
    """Stateless accuracy filter with a configured threshold."""

    def __init__(self, max_accuracy_m: float = MAX_ACCURACY_M) -> None:
        if max_accuracy_m <= 0:
            raise ValueError("max_accuracy_m must be positive")
        self.max_accuracy_m = max_accuracy_m

    def accept(self, fix: Fix) -> bool:
        return accept(fix, self.max_accuracy_m)


__all__ = ["FixFilter", "accept"]
