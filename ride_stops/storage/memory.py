"""Thread-safe in-memory repository (tests, replays, embedding)."""

from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import datetime
from threading import RLock
from typing import Dict, List, Optional, Sequence

from ..errors import (
    InvariantViolation,
    NotFoundError,
    SessionAlreadyActiveError,
    SessionNotActiveError,
    SessionStateError,
)
from ..geo import BoundingBox
from ..models import Cluster, Session, SessionMetrics, StopEvent, Waypoint
from .base import DeletedSession, FixWrite, Repository


def _cluster_sort_key(cluster: Cluster) -> tuple[int, int]:
    return (-cluster.stop_count, cluster.id or 0)


class InMemoryRepository(Repository):
    """Dict-backed repository guarded by a single re-entrant lock."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._session_ids = itertools.count(1)
        self._waypoint_ids = itertools.count(1)
        self._stop_ids = itertools.count(1)
        self._cluster_ids = itertools.count(1)
        self._sessions: Dict[int, Session] = {}
        self._waypoints: Dict[int, List[Waypoint]] = {}
        self._stops: Dict[int, StopEvent] = {}
        self._session_stops: Dict[int, List[int]] = {}
        self._clusters: Dict[int, Cluster] = {}

    # -- sessions -------------------------------------------------------

    def create_session(self, start_time: datetime) -> Session:
        with self._lock:
            active = self._active_sessions()
            if active:
                raise SessionAlreadyActiveError(
                    f"Session {active[0].id} is still active"
                )
            session = Session(id=next(self._session_ids), start_time=start_time)
            self._sessions[session.id] = session
            self._waypoints[session.id] = []
            self._session_stops[session.id] = []
            return session

    def get_session(self, session_id: int) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def get_active_session(self) -> Optional[Session]:
        with self._lock:
            active = self._active_sessions()
            if len(active) > 1:
                raise InvariantViolation(
                    f"{len(active)} active sessions found: {[s.id for s in active]}"
                )
            return active[0] if active else None

    def list_sessions(self, limit: int, offset: int = 0) -> List[Session]:
        with self._lock:
            ordered = sorted(
                self._sessions.values(),
                key=lambda s: (s.start_time, s.id),
                reverse=True,
            )
        return ordered[offset : offset + limit]

    def count_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)

    def finalize_session(self, session_id: int, end_time: datetime) -> Session:
        with self._lock:
            session = self._require_session(session_id)
            if not session.is_active:
                raise SessionNotActiveError(f"Session {session_id} already ended")
            finalized = replace(session, end_time=end_time)
            self._sessions[session_id] = finalized
            return finalized

    def delete_session(
        self, session_id: int, *, allow_active: bool = False
    ) -> DeletedSession:
        with self._lock:
            session = self._require_session(session_id)
            if session.is_active and not allow_active:
                raise SessionStateError(f"Cannot delete active session {session_id}")
            return self._remove_session(session_id)

    def discard_incomplete_sessions(self) -> int:
        with self._lock:
            active = self._active_sessions()
            for session in active:
                self._remove_session(session.id)
            return len(active)

    # -- per-fix writes -------------------------------------------------

    def record_fix_outcome(
        self,
        session_id: int,
        *,
        metrics: SessionMetrics,
        waypoint: Optional[Waypoint] = None,
        stop: Optional[StopEvent] = None,
    ) -> FixWrite:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_active:
                raise SessionNotActiveError(
                    f"Session {session_id} is not accepting fixes"
                )
            if stop is not None:
                taken = {
                    self._stops[sid].sequence_number
                    for sid in self._session_stops[session_id]
                }
                if stop.sequence_number in taken:
                    raise InvariantViolation(
                        f"Stop sequence {stop.sequence_number} already used in "
                        f"session {session_id}"
                    )
            # Everything is validated; apply all writes.
            stored_waypoint = None
            if waypoint is not None:
                stored_waypoint = replace(
                    waypoint, session_id=session_id, id=next(self._waypoint_ids)
                )
                self._waypoints[session_id].append(stored_waypoint)
            stored_stop = None
            if stop is not None:
                stored_stop = replace(
                    stop, session_id=session_id, cluster_id=None, id=next(self._stop_ids)
                )
                self._stops[stored_stop.id] = stored_stop
                self._session_stops[session_id].append(stored_stop.id)
            updated = replace(session, metrics=metrics)
            self._sessions[session_id] = updated
            return FixWrite(session=updated, waypoint=stored_waypoint, stop=stored_stop)

    # -- waypoints ------------------------------------------------------

    def list_waypoints(self, session_id: int) -> List[Waypoint]:
        with self._lock:
            points = list(self._waypoints.get(session_id, []))
        return sorted(points, key=lambda p: (p.timestamp, p.id or 0))

    def count_waypoints(self, session_id: Optional[int] = None) -> int:
        with self._lock:
            if session_id is not None:
                return len(self._waypoints.get(session_id, []))
            return sum(len(points) for points in self._waypoints.values())

    # -- stops ----------------------------------------------------------

    def list_stops(self, session_id: int) -> List[StopEvent]:
        with self._lock:
            stops = [self._stops[sid] for sid in self._session_stops.get(session_id, [])]
        return sorted(stops, key=lambda s: s.sequence_number)

    def get_stops(self, stop_ids: Sequence[int]) -> List[StopEvent]:
        with self._lock:
            return [self._stops[sid] for sid in stop_ids if sid in self._stops]

    def list_all_stops(self) -> List[StopEvent]:
        with self._lock:
            stops = list(self._stops.values())
        return sorted(stops, key=lambda s: (s.timestamp, s.id or 0))

    # -- clusters -------------------------------------------------------

    def get_cluster(self, cluster_id: int) -> Optional[Cluster]:
        with self._lock:
            return self._clusters.get(cluster_id)

    def list_clusters(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> List[Cluster]:
        with self._lock:
            ordered = sorted(self._clusters.values(), key=_cluster_sort_key)
        if limit is None:
            return ordered[offset:]
        return ordered[offset : offset + limit]

    def find_clusters_in_box(self, box: BoundingBox) -> List[Cluster]:
        min_lat, max_lat, min_lon, max_lon = box
        with self._lock:
            return [
                c
                for c in self._clusters.values()
                if min_lat <= c.centroid_latitude <= max_lat
                and min_lon <= c.centroid_longitude <= max_lon
            ]

    def count_clusters(self) -> int:
        with self._lock:
            return len(self._clusters)

    def save_cluster(self, cluster: Cluster) -> Cluster:
        with self._lock:
            if cluster.id is None:
                stored = replace(cluster, id=next(self._cluster_ids))
                previous_members: frozenset[int] = frozenset()
            else:
                existing = self._clusters.get(cluster.id)
                if existing is None:
                    raise NotFoundError(f"Cluster {cluster.id} does not exist")
                stored = cluster
                previous_members = existing.member_stop_ids
            self._clusters[stored.id] = stored
            self._link_members(stored, previous_members)
            return stored

    def delete_cluster(self, cluster_id: int) -> None:
        with self._lock:
            cluster = self._clusters.pop(cluster_id, None)
            if cluster is None:
                raise NotFoundError(f"Cluster {cluster_id} does not exist")
            self._unlink_stops(cluster.member_stop_ids, cluster_id)

    def replace_clusters(self, clusters: Sequence[Cluster]) -> List[Cluster]:
        with self._lock:
            for stop_id, stop in list(self._stops.items()):
                if stop.cluster_id is not None:
                    self._stops[stop_id] = replace(stop, cluster_id=None)
            self._clusters.clear()
            stored: List[Cluster] = []
            for cluster in clusters:
                item = replace(cluster, id=next(self._cluster_ids))
                self._clusters[item.id] = item
                self._link_members(item, frozenset())
                stored.append(item)
            return stored

    def delete_clusters_updated_before(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [c for c in self._clusters.values() if c.last_updated < cutoff]
            for cluster in stale:
                self.delete_cluster(cluster.id)
            return len(stale)

    # -- helpers --------------------------------------------------------

    def _active_sessions(self) -> List[Session]:
        return [s for s in self._sessions.values() if s.is_active]

    def _require_session(self, session_id: int) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} does not exist")
        return session

    def _remove_session(self, session_id: int) -> DeletedSession:
        stop_ids = self._session_stops.pop(session_id, [])
        cluster_ids = set()
        for stop_id in stop_ids:
            stop = self._stops.pop(stop_id, None)
            if stop is not None and stop.cluster_id is not None:
                cluster_ids.add(stop.cluster_id)
        self._waypoints.pop(session_id, None)
        del self._sessions[session_id]
        return DeletedSession(
            session_id=session_id,
            stop_ids=frozenset(stop_ids),
            cluster_ids=frozenset(cluster_ids),
        )

    def _link_members(self, cluster: Cluster, previous_members: frozenset[int]) -> None:
        assert cluster.id is not None
        self._unlink_stops(previous_members - cluster.member_stop_ids, cluster.id)
        for stop_id in cluster.member_stop_ids:
            stop = self._stops.get(stop_id)
            if stop is not None and stop.cluster_id != cluster.id:
                self._stops[stop_id] = replace(stop, cluster_id=cluster.id)

    def _unlink_stops(self, stop_ids: frozenset[int], cluster_id: int) -> None:
        for stop_id in stop_ids:
            stop = self._stops.get(stop_id)
            if stop is not None and stop.cluster_id == cluster_id:
                self._stops[stop_id] = replace(stop, cluster_id=None)


__all__ = ["InMemoryRepository"]
