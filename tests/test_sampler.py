"""Significance sampling of accepted fixes."""

from __future__ import annotations

from ride_stops.detection import SignificanceSampler, is_significant
from ride_stops.models import Waypoint

from factories import make_fix, riding_fixes


def _run(sampler: SignificanceSampler, fixes, stopped: bool = False):
    stored = []
    for fix in fixes:
        if sampler.should_store(fix, stopped=stopped):
            waypoint = Waypoint.from_fix(1, fix)
            sampler.record(waypoint)
            stored.append(waypoint)
    return stored


def test_uniform_motion_stores_first_fix_and_thirty_second_mark():
    sampler = SignificanceSampler()
    stored = _run(sampler, riding_fixes(0, 40))

    assert len(stored) == 2
    offsets = [(w.timestamp - stored[0].timestamp).total_seconds() for w in stored]
    assert offsets == [0.0, 30.0]


def test_first_fix_is_always_stored():
    assert is_significant(make_fix(0), None)


def test_speed_change_above_threshold():
    last = Waypoint.from_fix(1, make_fix(0, speed_kmh=20.0))
    assert is_significant(make_fix(1, speed_kmh=22.5), last)
    assert is_significant(make_fix(1, speed_kmh=17.5), last)
    assert not is_significant(make_fix(1, speed_kmh=21.5), last)


def test_bearing_change_uses_wraparound():
    last = Waypoint.from_fix(1, make_fix(0, bearing=355.0))
    assert not is_significant(make_fix(1, bearing=5.0), last)
    assert is_significant(make_fix(1, bearing=15.0), last)


def test_bearing_ignored_when_unknown():
    last = Waypoint.from_fix(1, make_fix(0, bearing=None))
    assert not is_significant(make_fix(1, bearing=180.0), last)
    last = Waypoint.from_fix(1, make_fix(0, bearing=0.0))
    assert not is_significant(make_fix(1, bearing=None), last)


def test_every_fix_stored_while_stopped():
    sampler = SignificanceSampler()
    stored = _run(sampler, [make_fix(i, speed_kmh=0.0) for i in range(10)], stopped=True)
    assert len(stored) == 10


def test_reset_forgets_last_stored():
    sampler = SignificanceSampler()
    _run(sampler, riding_fixes(0, 2))
    assert sampler.last_stored is not None
    sampler.reset()
    assert sampler.last_stored is None
    assert sampler.should_store(make_fix(5))
