"""Fix sources feeding a session pipeline.

A source yields :class:`~ride_stops.models.Fix` values in production order
and may go quiet for any length of time. Losing location permission or the
GPS service surfaces as :class:`~ride_stops.errors.PermissionOrServiceError`.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Event
from typing import Any, Iterable, Iterator, Mapping, Optional

import pandas as pd

from .errors import ValidationError
from .models import Fix
from .utils import to_utc_aware

REQUIRED_COLUMNS = ("timestamp", "latitude", "longitude", "speed_mps")
OPTIONAL_COLUMNS = ("bearing", "accuracy_m")


class FixSource(ABC):
    """Anything that can stream fixes for one session."""

    @abstractmethod
    def fixes(self, cancel_event: Event | None = None) -> Iterator[Fix]:
        """Yield fixes until exhausted or ``cancel_event`` is set."""

    def __iter__(self) -> Iterator[Fix]:
        return self.fixes()


class IterableFixSource(FixSource):
    """Wrap an in-memory iterable of fixes (tests, embedding)."""

    def __init__(self, fixes: Iterable[Fix]) -> None:
        self._fixes = fixes

    def fixes(self, cancel_event: Event | None = None) -> Iterator[Fix]:
        for fix in self._fixes:
            if cancel_event and cancel_event.is_set():
                return
            yield fix


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def fix_from_record(record: Mapping[str, Any]) -> Fix:
    """Build a fix from one CSV row; raises ValidationError on bad values."""

    timestamp = pd.Timestamp(record["timestamp"])
    if pd.isna(timestamp):
        raise ValidationError(f"Invalid timestamp: {record['timestamp']!r}")
    latitude = _optional_float(record.get("latitude"))
    longitude = _optional_float(record.get("longitude"))
    speed = _optional_float(record.get("speed_mps"))
    if latitude is None or longitude is None or speed is None:
        raise ValidationError("latitude, longitude and speed_mps are required")
    return Fix(
        latitude=latitude,
        longitude=longitude,
        speed_mps=speed,
        timestamp=to_utc_aware(timestamp.to_pydatetime()),
        bearing=_optional_float(record.get("bearing")),
        accuracy_m=_optional_float(record.get("accuracy_m")),
    )


class CsvFixSource(FixSource):
    """Replay a recorded ride from CSV.

    Columns: ``timestamp`` (ISO 8601), ``latitude``, ``longitude``,
    ``speed_mps`` and optionally ``bearing`` and ``accuracy_m``. Rows are
    replayed in timestamp order; rows with invalid values are skipped and
    counted in :attr:`skipped`.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.skipped = 0
        self._log = logging.getLogger(self.__class__.__name__)

    def _load(self) -> pd.DataFrame:
        frame = pd.read_csv(self.path)
        missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
        if missing:
            raise ValidationError(
                f"{self.path} is missing required columns: {', '.join(missing)}"
            )
        for column in OPTIONAL_COLUMNS:
            if column not in frame.columns:
                frame[column] = None
        frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True, errors="coerce")
        return frame.sort_values("timestamp", kind="stable")

    def fixes(self, cancel_event: Event | None = None) -> Iterator[Fix]:
        frame = self._load()
        self.skipped = 0
        for record in frame.to_dict(orient="records"):
            if cancel_event and cancel_event.is_set():
                return
            try:
                fix = fix_from_record(record)
            except ValidationError as exc:
                self.skipped += 1
                self._log.debug("Skipping row in %s: %s", self.path, exc)
                continue
            yield fix
        if self.skipped:
            self._log.warning("Skipped %d invalid rows in %s", self.skipped, self.path)


__all__ = [
    "FixSource",
    "IterableFixSource",
    "CsvFixSource",
    "fix_from_record",
    "REQUIRED_COLUMNS",
]
