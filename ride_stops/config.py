"""Central configuration for the ride stop tracker.

All values are constants imported by the rest of the package. Each one can
be overridden through an environment variable (optionally via a local
`.env`). Components accept the same values as keyword arguments, so the
constants here only provide the defaults.
"""

from __future__ import annotations

import os

from dotenv import load_dotenv


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


# Load .env from the current directory or any parent folder.
load_dotenv()


# ---------------------------------------------------------------------------
# Fix filtering
# ---------------------------------------------------------------------------
# Fixes with a reported horizontal accuracy worse than this (metres) are
# rejected before any stateful processing.
MAX_ACCURACY_M = _env_float("RIDE_MAX_ACCURACY_M", 50.0)


# ---------------------------------------------------------------------------
# Stop detection
# ---------------------------------------------------------------------------
# Fixes slower than this count as "not moving".
STOP_SPEED_THRESHOLD_KMH = _env_float("RIDE_STOP_SPEED_THRESHOLD_KMH", 5.0)

# Shortest stop that is ever recorded. Stop events below this duration fail
# validation, so the confirmation window may be raised but never lowered.
MIN_STOP_DURATION_SECONDS = 15

# Time a potential stop must last before it is confirmed.
STOP_CONFIRM_SECONDS = max(
    MIN_STOP_DURATION_SECONDS,
    _env_int("RIDE_STOP_CONFIRM_SECONDS", MIN_STOP_DURATION_SECONDS),
)

# Fixes farther than this from the stop anchor end a potential stop.
STOP_TOLERANCE_RADIUS_M = _env_float("RIDE_STOP_TOLERANCE_RADIUS_M", 10.0)


# ---------------------------------------------------------------------------
# Significance sampling
# ---------------------------------------------------------------------------
SAMPLING_SPEED_CHANGE_KMH = _env_float("RIDE_SAMPLING_SPEED_CHANGE_KMH", 2.0)
SAMPLING_BEARING_CHANGE_DEG = _env_float("RIDE_SAMPLING_BEARING_CHANGE_DEG", 15.0)
# A waypoint is always stored once this many seconds passed since the last one.
SAMPLING_MAX_INTERVAL_SECONDS = _env_int("RIDE_SAMPLING_MAX_INTERVAL_SECONDS", 30)


# ---------------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------------
# Stops within this distance of a cluster centroid join that cluster.
CLUSTER_RADIUS_M = _env_float("RIDE_CLUSTER_RADIUS_M", 10.0)

# Stop events are immutable, so member stops are cached between recomputes.
CLUSTER_STOP_CACHE_SIZE = _env_int("RIDE_CLUSTER_STOP_CACHE_SIZE", 4096)

# Thresholds used to flag "problem intersections".
PROBLEM_MIN_STOPS = _env_int("RIDE_PROBLEM_MIN_STOPS", 5)
PROBLEM_MIN_AVG_DURATION_SECONDS = _env_float(
    "RIDE_PROBLEM_MIN_AVG_DURATION_SECONDS", 60.0
)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
# SQLAlchemy URL used by the CLI. Relative sqlite paths resolve against the
# working directory.
DATABASE_URL = os.getenv("RIDE_DATABASE_URL", "sqlite:///ride_stops.db")

# Echo SQL statements (debugging only).
DATABASE_ECHO = _env_bool("RIDE_DATABASE_ECHO", False)

# Retries for a failed fix write before the fix is dropped.
STORAGE_MAX_RETRIES = _env_int("RIDE_STORAGE_MAX_RETRIES", 2)
# Base delay between retries; doubled per attempt.
STORAGE_BACKOFF_SECONDS = _env_float("RIDE_STORAGE_BACKOFF_SECONDS", 0.1)

# Default page size for session listings.
SESSION_PAGE_SIZE = _env_int("RIDE_SESSION_PAGE_SIZE", 20)
