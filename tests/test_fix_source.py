import threading

import pytest

from ride_stops.errors import ValidationError
from ride_stops.fix_source import CsvFixSource, IterableFixSource, fix_from_record

from factories import BASE_TIME, riding_fixes

CSV = """timestamp,latitude,longitude,speed_mps,bearing,accuracy_m
2025-05-01T08:00:02Z,52.52002,13.405,5.0,0,4
2025-05-01T08:00:00Z,52.52000,13.405,5.0,0,4
2025-05-01T08:00:01Z,52.52001,13.405,5.0,,4
2025-05-01T08:00:03Z,152.0,13.405,5.0,0,4
not-a-time,52.52003,13.405,5.0,0,4
"""


def test_csv_source_sorts_and_skips_invalid_rows(tmp_path):
    path = tmp_path / "ride.csv"
    path.write_text(CSV)
    source = CsvFixSource(path)
    fixes = list(source)

    assert [f.timestamp for f in fixes] == [
        BASE_TIME,
        BASE_TIME.replace(second=1),
        BASE_TIME.replace(second=2),
    ]
    assert fixes[1].bearing is None
    assert fixes[0].accuracy_m == 4.0
    assert source.skipped == 2


def test_csv_source_optional_columns(tmp_path):
    path = tmp_path / "ride.csv"
    path.write_text(
        "timestamp,latitude,longitude,speed_mps\n2025-05-01T08:00:00Z,52.5,13.4,1.5\n"
    )
    (fix,) = list(CsvFixSource(path))
    assert fix.bearing is None
    assert fix.accuracy_m is None
    assert fix.speed_mps == 1.5


def test_csv_source_requires_columns(tmp_path):
    path = tmp_path / "ride.csv"
    path.write_text("timestamp,latitude\n2025-05-01T08:00:00Z,52.5\n")
    with pytest.raises(ValidationError):
        list(CsvFixSource(path))


def test_fix_from_record_rejects_missing_values():
    with pytest.raises(ValidationError):
        fix_from_record(
            {"timestamp": "2025-05-01T08:00:00Z", "latitude": None, "longitude": 1.0, "speed_mps": 1.0}
        )


def test_iterable_source_stops_on_cancel():
    cancel = threading.Event()
    source = IterableFixSource(riding_fixes(0, 10))
    seen = []
    for fix in source.fixes(cancel):
        seen.append(fix)
        if len(seen) == 3:
            cancel.set()
    assert len(seen) == 3
