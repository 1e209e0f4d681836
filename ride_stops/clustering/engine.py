"""Group stop events from all sessions into recurring stop locations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from threading import Event, RLock
from typing import Callable, Iterable, List, Optional, Sequence

from cachetools import LRUCache

from ..config import (
    CLUSTER_RADIUS_M,
    CLUSTER_STOP_CACHE_SIZE,
    PROBLEM_MIN_AVG_DURATION_SECONDS,
    PROBLEM_MIN_STOPS,
)
from ..errors import NotFoundError
from ..geo import LatLon, bounding_box, distances_meters
from ..models import Cluster, StopEvent
from ..storage.base import Repository
from ..utils import utc_now
from .stats import centroid, summarize

Clock = Callable[[], datetime]

# Distances closer than this count as a tie.
_TIE_EPSILON_M = 1e-9


@dataclass(slots=True)
class _Draft:
    """Cluster under construction during a rebuild."""

    stops: List[StopEvent] = field(default_factory=list)
    center: LatLon = (0.0, 0.0)

    def add(self, stop: StopEvent) -> None:
        self.stops.append(stop)
        self.center = centroid(self.stops)

    def to_cluster(self, now: datetime) -> Cluster:
        stats = summarize(self.stops)
        return Cluster(
            centroid_latitude=stats.centroid[0],
            centroid_longitude=stats.centroid[1],
            average_duration_seconds=stats.average_duration_seconds,
            median_duration_seconds=stats.median_duration_seconds,
            stop_count=stats.stop_count,
            member_stop_ids=frozenset(s.id for s in self.stops if s.id is not None),
            last_updated=now,
        )


def _nearest_index(
    location: LatLon, centers: Sequence[LatLon], radius_m: float
) -> Optional[int]:
    """Index of the closest center within ``radius_m`` (inclusive), else None.

    Ties resolve to the lowest index.
    """

    if not centers:
        return None
    distances = distances_meters(
        location, [c[0] for c in centers], [c[1] for c in centers]
    )
    best: Optional[int] = None
    for idx, dist in enumerate(distances):
        if dist > radius_m:
            continue
        if best is None or dist < distances[best] - _TIE_EPSILON_M:
            best = idx
    return best


class ClusterEngine:
    """Assign stops to clusters and answer cluster analytics queries.

    A single re-entrant lock serializes every mutation so two sessions
    finishing together cannot race on the same centroid. Member stops are
    cached by id (their location and duration never change); deleted stops
    must be evicted with :meth:`forget_stops`.
    """

    def __init__(
        self,
        repository: Repository,
        *,
        radius_m: float = CLUSTER_RADIUS_M,
        stop_cache_size: int = CLUSTER_STOP_CACHE_SIZE,
        clock: Clock | None = None,
    ) -> None:
        if radius_m <= 0:
            raise ValueError("radius_m must be positive")
        self._log = logging.getLogger(self.__class__.__name__)
        self._repository = repository
        self.radius_m = radius_m
        self._clock = clock or utc_now
        self._lock = RLock()
        self._stop_cache: LRUCache[int, StopEvent] = LRUCache(
            maxsize=max(1, stop_cache_size)
        )

    # -- assignment -----------------------------------------------------

    def assign(self, stop: StopEvent) -> int:
        """Put ``stop`` into the nearest cluster in range or a new one.

        The stored copy of the stop decides whether it is already clustered,
        so passing a stale instance never clusters a stop twice.

        Returns:
            The id of the cluster the stop belongs to.

        Raises:
            NotFoundError: the stop is no longer stored.
        """

        if stop.id is None:
            raise ValueError("Only stored stops can be clustered")
        with self._lock:
            stored = self._repository.get_stops([stop.id])
            if not stored:
                raise NotFoundError(f"Stop {stop.id} does not exist")
            stop = stored[0]
            if stop.cluster_id is not None:
                return stop.cluster_id
            self._stop_cache[stop.id] = stop
            cluster = self._find_nearest(stop.location)
            if cluster is None:
                created = self._repository.save_cluster(
                    Cluster(
                        centroid_latitude=stop.latitude,
                        centroid_longitude=stop.longitude,
                        average_duration_seconds=float(stop.duration_seconds),
                        median_duration_seconds=stop.duration_seconds,
                        stop_count=1,
                        member_stop_ids=frozenset({stop.id}),
                        last_updated=self._clock(),
                    )
                )
                self._log.debug("Stop %s started cluster %s", stop.id, created.id)
                assert created.id is not None
                return created.id
            assert cluster.id is not None
            members = self._load_stops(cluster.member_stop_ids | {stop.id})
            self._store(cluster, members)
            self._log.debug(
                "Stop %s joined cluster %s (%d stops)",
                stop.id,
                cluster.id,
                len(members),
            )
            return cluster.id

    def assign_session(self, session_id: int) -> List[int]:
        """Cluster every not yet clustered stop of a session, in sequence order."""

        with self._lock:
            return [self.assign(s) for s in self._repository.list_stops(session_id)]

    def recalculate(self, cluster_id: int) -> Optional[Cluster]:
        """Recompute a cluster from its surviving members.

        Returns:
            The updated cluster, or None when no member is left and the
            cluster was deleted.

        Raises:
            NotFoundError: unknown cluster.
        """

        with self._lock:
            cluster = self._require_cluster(cluster_id)
            # Go to storage: cached entries may belong to deleted stops.
            members = self._repository.get_stops(sorted(cluster.member_stop_ids))
            if not members:
                self._repository.delete_cluster(cluster_id)
                self._log.info("Deleted cluster %s: no member stops left", cluster_id)
                return None
            for stop in members:
                assert stop.id is not None
                self._stop_cache[stop.id] = stop
            return self._store(cluster, members)

    def forget_stops(
        self, stop_ids: Iterable[int], cluster_ids: Iterable[int] = ()
    ) -> None:
        """Handle deleted stops: evict them and recalculate their clusters.

        Clusters still listing any of ``stop_ids`` are recalculated too, so a
        stale ``cluster_ids`` hint is harmless.
        """

        deleted = set(stop_ids)
        with self._lock:
            for stop_id in deleted:
                self._stop_cache.pop(stop_id, None)
            affected = set(cluster_ids)
            if deleted:
                affected.update(
                    c.id
                    for c in self._repository.list_clusters()
                    if c.id is not None and c.member_stop_ids & deleted
                )
            for cluster_id in sorted(affected):
                if self._repository.get_cluster(cluster_id) is None:
                    continue
                self.recalculate(cluster_id)

    def rebuild_all(self, cancel_event: Event | None = None) -> Optional[List[Cluster]]:
        """Re-derive every cluster from all stops in timestamp order.

        Clusters are built in memory and swapped in with one repository call,
        so a cancelled rebuild leaves the previous clusters untouched.

        Returns:
            The new clusters, or None when cancelled.
        """

        with self._lock:
            stops = self._repository.list_all_stops()
            self._log.info("Rebuilding clusters from %d stops", len(stops))
            drafts: List[_Draft] = []
            for stop in stops:
                if cancel_event and cancel_event.is_set():
                    self._log.info("Cluster rebuild cancelled; keeping previous clusters")
                    return None
                idx = _nearest_index(
                    stop.location, [d.center for d in drafts], self.radius_m
                )
                if idx is None:
                    draft = _Draft()
                    draft.add(stop)
                    drafts.append(draft)
                else:
                    drafts[idx].add(stop)
            if cancel_event and cancel_event.is_set():
                self._log.info("Cluster rebuild cancelled; keeping previous clusters")
                return None
            now = self._clock()
            stored = self._repository.replace_clusters(
                [d.to_cluster(now) for d in drafts]
            )
            self._stop_cache.clear()
            for stop in stops:
                if stop.id is not None:
                    self._stop_cache[stop.id] = stop
            self._log.info(
                "Rebuilt %d clusters from %d stops", len(stored), len(stops)
            )
            return stored

    # -- queries --------------------------------------------------------

    def list_clusters(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> List[Cluster]:
        return self._repository.list_clusters(limit=limit, offset=offset)

    def get_cluster(self, cluster_id: int) -> Cluster:
        return self._require_cluster(cluster_id)

    def count(self) -> int:
        return self._repository.count_clusters()

    def clusters_with_min_stops(self, min_stops: int) -> List[Cluster]:
        return [c for c in self._repository.list_clusters() if c.stop_count >= min_stops]

    def clusters_with_min_duration(self, min_average_seconds: float) -> List[Cluster]:
        """Clusters waiting at least ``min_average_seconds`` on average, longest first."""

        matches = [
            c
            for c in self._repository.list_clusters()
            if c.average_duration_seconds >= min_average_seconds
        ]
        return sorted(matches, key=lambda c: (-c.average_duration_seconds, c.id or 0))

    def most_frequent(self) -> Optional[Cluster]:
        top = self._repository.list_clusters(limit=1)
        return top[0] if top else None

    def longest_wait(self) -> Optional[Cluster]:
        ranked = self.clusters_with_min_duration(0.0)
        return ranked[0] if ranked else None

    def problem_clusters(
        self,
        min_stops: int = PROBLEM_MIN_STOPS,
        min_average_seconds: float = PROBLEM_MIN_AVG_DURATION_SECONDS,
    ) -> List[Cluster]:
        return [
            c
            for c in self._repository.list_clusters()
            if c.is_problem_intersection(min_stops, min_average_seconds)
        ]

    def cluster_stops(self, cluster_id: int) -> List[StopEvent]:
        """Member stops of a cluster in chronological order."""

        cluster = self._require_cluster(cluster_id)
        stops = self._repository.get_stops(sorted(cluster.member_stop_ids))
        return sorted(stops, key=lambda s: (s.timestamp, s.id or 0))

    # -- maintenance ----------------------------------------------------

    def delete_cluster(self, cluster_id: int) -> None:
        """Delete a cluster; its stops stay, unassigned."""

        with self._lock:
            self._repository.delete_cluster(cluster_id)
        self._log.info("Deleted cluster %s", cluster_id)

    def delete_stale(self, older_than_days: int) -> int:
        """Delete clusters not updated within ``older_than_days`` days."""

        if older_than_days < 0:
            raise ValueError("older_than_days cannot be negative")
        cutoff = self._clock() - timedelta(days=older_than_days)
        with self._lock:
            removed = self._repository.delete_clusters_updated_before(cutoff)
        if removed:
            self._log.info("Deleted %d clusters not updated since %s", removed, cutoff)
        return removed

    # -- helpers --------------------------------------------------------

    def _require_cluster(self, cluster_id: int) -> Cluster:
        cluster = self._repository.get_cluster(cluster_id)
        if cluster is None:
            raise NotFoundError(f"Cluster {cluster_id} does not exist")
        return cluster

    def _find_nearest(self, location: LatLon) -> Optional[Cluster]:
        box = bounding_box(location, self.radius_m)
        if box[2] < -180.0 or box[3] > 180.0:
            # The box wraps the antimeridian; scan everything.
            candidates = self._repository.list_clusters()
        else:
            candidates = self._repository.find_clusters_in_box(box)
        candidates = sorted(candidates, key=lambda c: c.id or 0)
        idx = _nearest_index(location, [c.centroid for c in candidates], self.radius_m)
        return candidates[idx] if idx is not None else None

    def _load_stops(self, stop_ids: Iterable[int]) -> List[StopEvent]:
        ids = sorted(set(stop_ids))
        found = {sid: self._stop_cache[sid] for sid in ids if sid in self._stop_cache}
        missing = [sid for sid in ids if sid not in found]
        if missing:
            for stop in self._repository.get_stops(missing):
                assert stop.id is not None
                self._stop_cache[stop.id] = stop
                found[stop.id] = stop
        return [found[sid] for sid in ids if sid in found]

    def _store(self, cluster: Cluster, members: Sequence[StopEvent]) -> Cluster:
        stats = summarize(members)
        updated = replace(
            cluster,
            centroid_latitude=stats.centroid[0],
            centroid_longitude=stats.centroid[1],
            average_duration_seconds=stats.average_duration_seconds,
            median_duration_seconds=stats.median_duration_seconds,
            stop_count=stats.stop_count,
            member_stop_ids=frozenset(s.id for s in members if s.id is not None),
            last_updated=self._clock(),
        )
        return self._repository.save_cluster(updated)


__all__ = ["ClusterEngine"]
