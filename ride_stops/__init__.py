"""Ride stop tracker package."""

from .clustering import ClusterEngine
from .errors import (
    InvariantViolation,
    PermissionOrServiceError,
    StorageError,
    ValidationError,
)
from .main import main
from .models import Cluster, Fix, Session, StopEvent, Waypoint
from .services import SessionPipeline
from .storage import InMemoryRepository, SqlRepository

__all__ = [
    "main",
    "Fix",
    "Waypoint",
    "StopEvent",
    "Session",
    "Cluster",
    "SessionPipeline",
    "ClusterEngine",
    "InMemoryRepository",
    "SqlRepository",
    "ValidationError",
    "PermissionOrServiceError",
    "InvariantViolation",
    "StorageError",
]
