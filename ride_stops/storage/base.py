"""Repository contract consumed by the pipeline and the cluster engine.

Sessions own their waypoints and stop events (deleting a session removes
both). Clusters are independent: they reference stop ids without owning
them, and the code deleting stops must recalculate affected clusters itself.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, List, Optional, Sequence

from ..geo import BoundingBox
from ..models import Cluster, Session, SessionMetrics, StopEvent, Waypoint


@dataclass(frozen=True, slots=True)
class FixWrite:
    """Stored records for one processed fix (ids assigned)."""

    session: Session
    waypoint: Optional[Waypoint] = None
    stop: Optional[StopEvent] = None


@dataclass(frozen=True, slots=True)
class DeletedSession:
    """What a session delete removed, for follow-up cluster maintenance."""

    session_id: int
    stop_ids: FrozenSet[int] = field(default_factory=frozenset)
    cluster_ids: FrozenSet[int] = field(default_factory=frozenset)


class Repository(ABC):
    """Persistence for sessions, waypoints, stop events and clusters.

    Implementations must be safe to call from several threads. Each method
    is atomic: it either applies completely or raises
    :class:`~ride_stops.errors.StorageError` (or a domain error) and
    changes nothing.
    """

    # -- sessions -------------------------------------------------------

    @abstractmethod
    def create_session(self, start_time: datetime) -> Session:
        """Create an active session.

        Raises:
            SessionAlreadyActiveError: another session has no end time.
        """

    @abstractmethod
    def get_session(self, session_id: int) -> Optional[Session]: ...

    @abstractmethod
    def get_active_session(self) -> Optional[Session]:
        """Return the session without an end time.

        Raises:
            InvariantViolation: more than one active session exists.
        """

    @abstractmethod
    def list_sessions(self, limit: int, offset: int = 0) -> List[Session]:
        """Sessions ordered by start time, newest first."""

    @abstractmethod
    def count_sessions(self) -> int: ...

    @abstractmethod
    def finalize_session(self, session_id: int, end_time: datetime) -> Session:
        """Set the end time of an active session.

        Raises:
            NotFoundError: unknown session.
            SessionNotActiveError: the session already ended.
        """

    @abstractmethod
    def delete_session(
        self, session_id: int, *, allow_active: bool = False
    ) -> DeletedSession:
        """Delete a session with its waypoints and stops.

        Raises:
            NotFoundError: unknown session.
            SessionStateError: the session is active and ``allow_active`` is False.
        """

    @abstractmethod
    def discard_incomplete_sessions(self) -> int:
        """Delete every session without an end time; returns how many."""

    # -- per-fix writes -------------------------------------------------

    @abstractmethod
    def record_fix_outcome(
        self,
        session_id: int,
        *,
        metrics: SessionMetrics,
        waypoint: Optional[Waypoint] = None,
        stop: Optional[StopEvent] = None,
    ) -> FixWrite:
        """Store one fix's waypoint/stop and the session's new metrics together.

        Raises:
            SessionNotActiveError: the session is unknown or already ended.
        """

    # -- waypoints ------------------------------------------------------

    @abstractmethod
    def list_waypoints(self, session_id: int) -> List[Waypoint]:
        """Waypoints of a session in chronological order."""

    @abstractmethod
    def count_waypoints(self, session_id: Optional[int] = None) -> int: ...

    # -- stops ----------------------------------------------------------

    @abstractmethod
    def list_stops(self, session_id: int) -> List[StopEvent]:
        """Stops of a session ordered by sequence number."""

    @abstractmethod
    def get_stops(self, stop_ids: Sequence[int]) -> List[StopEvent]:
        """Existing stops among ``stop_ids`` (missing ids are skipped)."""

    @abstractmethod
    def list_all_stops(self) -> List[StopEvent]:
        """Every stop of every session ordered by (timestamp, id)."""

    # -- clusters -------------------------------------------------------

    @abstractmethod
    def get_cluster(self, cluster_id: int) -> Optional[Cluster]: ...

    @abstractmethod
    def list_clusters(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> List[Cluster]:
        """Clusters ordered by stop count (desc), then id."""

    @abstractmethod
    def find_clusters_in_box(self, box: BoundingBox) -> List[Cluster]:
        """Clusters whose centroid lies inside ``(min_lat, max_lat, min_lon, max_lon)``."""

    @abstractmethod
    def count_clusters(self) -> int: ...

    @abstractmethod
    def save_cluster(self, cluster: Cluster) -> Cluster:
        """Insert (``id is None``) or update a cluster.

        Member stops get their ``cluster_id`` pointed at the cluster; stops
        that left the member set get it cleared.

        Raises:
            NotFoundError: updating a cluster that no longer exists.
        """

    @abstractmethod
    def delete_cluster(self, cluster_id: int) -> None:
        """Delete a cluster and clear the reference on its member stops.

        Raises:
            NotFoundError: unknown cluster.
        """

    @abstractmethod
    def replace_clusters(self, clusters: Sequence[Cluster]) -> List[Cluster]:
        """Swap the whole cluster table for ``clusters`` in one step."""

    @abstractmethod
    def delete_clusters_updated_before(self, cutoff: datetime) -> int:
        """Delete clusters whose ``last_updated`` is older than ``cutoff``."""

    def close(self) -> None:
        """Release underlying resources."""


__all__ = ["Repository", "FixWrite", "DeletedSession"]
