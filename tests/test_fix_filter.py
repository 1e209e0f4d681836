import pytest

from ride_stops.detection import FixFilter, accept

from factories import make_fix


def test_accuracy_threshold_is_inclusive():
    assert accept(make_fix(accuracy=50.0)) is True
    assert accept(make_fix(accuracy=50.1)) is False
    assert accept(make_fix(accuracy=3.0)) is True


def test_unknown_accuracy_is_rejected():
    assert accept(make_fix(accuracy=None)) is False


def test_filter_uses_configured_threshold():
    strict = FixFilter(max_accuracy_m=10.0)
    assert strict.accept(make_fix(accuracy=10.0))
    assert not strict.accept(make_fix(accuracy=10.5))


def test_filter_rejects_non_positive_threshold():
    with pytest.raises(ValueError):
        FixFilter(max_accuracy_m=0)
