"""Per-session processing pipeline.

Owns the stop detector, significance sampler and metrics tracker of every
active session and applies a fix only after its outcome is stored. Fixes of
one session are handled one at a time under that session's lock.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..clustering import ClusterEngine
from ..config import (
    MAX_ACCURACY_M,
    SAMPLING_BEARING_CHANGE_DEG,
    SAMPLING_MAX_INTERVAL_SECONDS,
    SAMPLING_SPEED_CHANGE_KMH,
    SESSION_PAGE_SIZE,
    STOP_CONFIRM_SECONDS,
    STOP_SPEED_THRESHOLD_KMH,
    STOP_TOLERANCE_RADIUS_M,
    STORAGE_BACKOFF_SECONDS,
    STORAGE_MAX_RETRIES,
)
from ..detection import DetectorPhase, FixFilter, SignificanceSampler, StopDetector
from ..errors import (
    NotFoundError,
    PermissionOrServiceError,
    RideStopsError,
    SessionNotActiveError,
    SessionStateError,
    StorageError,
)
from ..fix_source import FixSource
from ..models import Fix, Session, SessionMetrics, StopEvent, Waypoint
from ..storage.base import DeletedSession, FixWrite, Repository
from ..utils import utc_now
from .metrics import MetricsTracker

Clock = Callable[[], datetime]


@dataclass(slots=True)
class PipelineConfig:
    max_accuracy_m: float = MAX_ACCURACY_M
    speed_threshold_kmh: float = STOP_SPEED_THRESHOLD_KMH
    confirm_seconds: float = STOP_CONFIRM_SECONDS
    tolerance_radius_m: float = STOP_TOLERANCE_RADIUS_M
    sampling_speed_change_kmh: float = SAMPLING_SPEED_CHANGE_KMH
    sampling_bearing_change_deg: float = SAMPLING_BEARING_CHANGE_DEG
    sampling_max_interval_seconds: float = SAMPLING_MAX_INTERVAL_SECONDS
    max_retries: int = STORAGE_MAX_RETRIES
    backoff_seconds: float = STORAGE_BACKOFF_SECONDS
    logger: logging.Logger | None = None


@dataclass(frozen=True, slots=True)
class FixOutcome:
    """What handling one fix produced."""

    accepted: bool
    phase: DetectorPhase
    waypoint: Optional[Waypoint] = None
    stop: Optional[StopEvent] = None


@dataclass(slots=True)
class _SessionState:
    detector: StopDetector
    sampler: SignificanceSampler
    metrics: MetricsTracker
    lock: threading.Lock = field(default_factory=threading.Lock)
    accepting: bool = True


class SessionPipeline:
    """Public API for recording rides: start, feed fixes, end."""

    def __init__(
        self,
        repository: Repository,
        cluster_engine: ClusterEngine | None = None,
        *,
        config: PipelineConfig | None = None,
        clustering_executor: Executor | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or PipelineConfig()
        self._log = self.config.logger or logging.getLogger(self.__class__.__name__)
        self._repository = repository
        self._cluster_engine = cluster_engine
        self._executor = clustering_executor
        self._clock = clock or utc_now
        self._sleep = sleep
        self._filter = FixFilter(self.config.max_accuracy_m)
        self._lock = threading.RLock()
        self._states: Dict[int, _SessionState] = {}
        self._pending: Set[Future] = set()
        # Finished sessions whose clustering failed; retried on the next run.
        self._unclustered: List[int] = []
        self._recovered = False

    # -- lifecycle ------------------------------------------------------

    def recover(self) -> int:
        """Discard sessions left unfinished by a crash; runs once per pipeline.

        Returns:
            Number of sessions discarded (0 on repeated calls).
        """

        with self._lock:
            if self._recovered:
                return 0
            discarded = self._repository.discard_incomplete_sessions()
            self._recovered = True
        if discarded:
            self._log.warning("Discarded %d incomplete sessions on startup", discarded)
        else:
            self._log.debug("Startup scan found no incomplete sessions")
        return discarded

    def start_session(self) -> int:
        """Begin a session and return its id.

        Raises:
            SessionAlreadyActiveError: a session is already active.
        """

        self.recover()
        with self._lock:
            session = self._repository.create_session(self._clock())
            self._states[session.id] = self._new_state(session.id)
        self._log.info("Started session %s", session.id)
        return session.id

    def handle_fix(self, session_id: int, fix: Fix) -> FixOutcome:
        """Run one fix through filter, detector, sampler and storage.

        Raises:
            SessionNotActiveError: the session is not accepting fixes.
            StorageError: the outcome could not be stored after retries; the
                fix is dropped and the session state is unchanged.
        """

        state = self._require_state(session_id)
        with state.lock:
            if not state.accepting:
                raise SessionNotActiveError(f"Session {session_id} is not accepting fixes")
            if not self._filter.accept(fix):
                return FixOutcome(accepted=False, phase=state.detector.phase)

            step = state.detector.evaluate(fix)
            stopped = step.is_stopped
            waypoint = None
            if state.sampler.should_store(fix, stopped=stopped):
                waypoint = Waypoint.from_fix(session_id, fix)
            metrics_step = state.metrics.evaluate(fix, stopped=stopped, stop=step.event)

            written = self._write(session_id, metrics_step.metrics, waypoint, step.event)

            state.detector.apply(step)
            if written.waypoint is not None:
                state.sampler.record(written.waypoint)
            state.metrics.commit(metrics_step, written.session.metrics)
            return FixOutcome(
                accepted=True,
                phase=step.state.phase,
                waypoint=written.waypoint,
                stop=written.stop,
            )

    def end_session(self, session_id: int) -> Session:
        """Finalize a session and queue clustering of its stops.

        A clustering failure is logged and the session is retried with the
        next clustering run; it never undoes the finalization.
        """

        state = self._require_state(session_id)
        with state.lock:
            session = self._repository.finalize_session(session_id, self._clock())
            state.accepting = False
            state.detector.reset()
            state.sampler.reset()
        with self._lock:
            self._states.pop(session_id, None)
        self._log.info(
            "Ended session %s: %.2f km, %d stops, %ss stopped",
            session_id,
            session.total_distance_km,
            session.stop_count,
            session.total_stop_seconds,
        )
        self._schedule_clustering(session_id)
        return session

    def abort_session(self, session_id: int) -> DeletedSession:
        """Discard the active session with everything it recorded."""

        state = self._require_state(session_id)
        with state.lock:
            deleted = self._repository.delete_session(session_id, allow_active=True)
            state.accepting = False
        with self._lock:
            self._states.pop(session_id, None)
        self._log.warning("Aborted session %s", session_id)
        self._forget(deleted)
        return deleted

    def get_active_session(self) -> Optional[Session]:
        self.recover()
        return self._repository.get_active_session()

    def consume(
        self,
        source: FixSource,
        session_id: int,
        cancel_event: threading.Event | None = None,
    ) -> int:
        """Feed every fix from ``source`` into the session.

        Stops early when ``cancel_event`` is set or the session stops
        accepting fixes. Losing the fix source leaves the session active and
        unfinalized for the caller to end or abort.

        Returns:
            Number of fixes handled.
        """

        handled = 0
        try:
            for fix in source.fixes(cancel_event):
                if cancel_event and cancel_event.is_set():
                    break
                if not self.is_accepting(session_id):
                    break
                try:
                    self.handle_fix(session_id, fix)
                except SessionNotActiveError:
                    # Ended or aborted from another thread.
                    break
                handled += 1
        except PermissionOrServiceError as exc:
            with self._lock:
                state = self._states.get(session_id)
            if state is not None:
                with state.lock:
                    state.accepting = False
            self._log.warning(
                "Fix source lost for session %s after %d fixes: %s",
                session_id,
                handled,
                exc,
            )
        return handled

    def is_accepting(self, session_id: int) -> bool:
        with self._lock:
            state = self._states.get(session_id)
        return state is not None and state.accepting

    # -- history --------------------------------------------------------

    def get_session(self, session_id: int) -> Session:
        session = self._repository.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} does not exist")
        return session

    def list_sessions(
        self, page: int = 0, page_size: int = SESSION_PAGE_SIZE
    ) -> List[Session]:
        """One page of sessions, newest first."""

        if page < 0 or page_size <= 0:
            raise ValueError("page must be >= 0 and page_size > 0")
        return self._repository.list_sessions(limit=page_size, offset=page * page_size)

    def count_sessions(self) -> int:
        return self._repository.count_sessions()

    def delete_session(self, session_id: int) -> DeletedSession:
        """Delete a finished session and repair the clusters it fed.

        Raises:
            SessionStateError: the session is still active.
            NotFoundError: unknown session.
        """

        with self._lock:
            if session_id in self._states:
                raise SessionStateError(f"Cannot delete active session {session_id}")
        deleted = self._repository.delete_session(session_id)
        self._log.info(
            "Deleted session %s with %d stops", session_id, len(deleted.stop_ids)
        )
        self._forget(deleted)
        return deleted

    # -- clustering -----------------------------------------------------

    @property
    def unclustered_sessions(self) -> Tuple[int, ...]:
        """Finished sessions waiting for a clustering retry."""

        with self._lock:
            return tuple(self._unclustered)

    def recluster_pending(self) -> int:
        """Retry clustering of sessions whose earlier run failed.

        Returns:
            Number of sessions clustered by this call.
        """

        if self._cluster_engine is None:
            return 0
        with self._lock:
            session_ids, self._unclustered = self._unclustered, []
        return self._cluster_sessions(session_ids)

    def wait_for_clustering(self, timeout: float | None = None) -> None:
        """Block until queued clustering jobs finish."""

        with self._lock:
            pending = list(self._pending)
        for future in pending:
            future.result(timeout=timeout)

    def close(self) -> None:
        self.wait_for_clustering()

    # -- helpers --------------------------------------------------------

    def _new_state(self, session_id: int) -> _SessionState:
        cfg = self.config
        return _SessionState(
            detector=StopDetector(
                session_id,
                speed_threshold_kmh=cfg.speed_threshold_kmh,
                confirm_seconds=cfg.confirm_seconds,
                tolerance_radius_m=cfg.tolerance_radius_m,
            ),
            sampler=SignificanceSampler(
                speed_change_kmh=cfg.sampling_speed_change_kmh,
                bearing_change_deg=cfg.sampling_bearing_change_deg,
                max_interval_seconds=cfg.sampling_max_interval_seconds,
            ),
            metrics=MetricsTracker(
                speed_threshold_kmh=cfg.speed_threshold_kmh,
                metrics=SessionMetrics(),
            ),
        )

    def _require_state(self, session_id: int) -> _SessionState:
        with self._lock:
            state = self._states.get(session_id)
        if state is None:
            raise SessionNotActiveError(f"Session {session_id} is not active")
        return state

    def _write(
        self,
        session_id: int,
        metrics: SessionMetrics,
        waypoint: Optional[Waypoint],
        stop: Optional[StopEvent],
    ) -> FixWrite:
        attempts = max(0, self.config.max_retries) + 1
        last_exc: StorageError | None = None
        for attempt in range(attempts):
            try:
                return self._repository.record_fix_outcome(
                    session_id, metrics=metrics, waypoint=waypoint, stop=stop
                )
            except StorageError as exc:
                last_exc = exc
                if attempt + 1 < attempts:
                    delay = self.config.backoff_seconds * (2**attempt)
                    self._log.warning(
                        "Storing fix for session %s failed (attempt %d/%d): %s; "
                        "retrying in %.2fs",
                        session_id,
                        attempt + 1,
                        attempts,
                        exc,
                        delay,
                    )
                    self._sleep(delay)
        self._log.error(
            "Dropping fix for session %s after %d attempts: %s",
            session_id,
            attempts,
            last_exc,
        )
        raise StorageError(
            f"Could not store fix for session {session_id}: {last_exc}"
        ) from last_exc

    def _schedule_clustering(self, session_id: int) -> None:
        if self._cluster_engine is None:
            return
        with self._lock:
            session_ids = self._unclustered + [session_id]
            self._unclustered = []
        if self._executor is None:
            self._cluster_sessions(session_ids)
            return
        future = self._executor.submit(self._cluster_sessions, session_ids)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._clustering_done)

    def _clustering_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._log.error(
                "Clustering job failed", exc_info=(type(exc), exc, exc.__traceback__)
            )

    def _cluster_sessions(self, session_ids: List[int]) -> int:
        """Cluster each session's stops; failed sessions are queued for retry."""

        assert self._cluster_engine is not None
        clustered = 0
        for session_id in session_ids:
            try:
                cluster_ids = self._cluster_engine.assign_session(session_id)
            except RideStopsError as exc:
                self._log.error(
                    "Clustering stops of session %s failed, will retry: %s",
                    session_id,
                    exc,
                )
                with self._lock:
                    if session_id not in self._unclustered:
                        self._unclustered.append(session_id)
                continue
            clustered += 1
            self._log.info(
                "Clustered %d stops of session %s into %d clusters",
                len(cluster_ids),
                session_id,
                len(set(cluster_ids)),
            )
        return clustered

    def _forget(self, deleted: DeletedSession) -> None:
        if self._cluster_engine is None or not deleted.stop_ids:
            return
        self._cluster_engine.forget_stops(deleted.stop_ids, deleted.cluster_ids)


__all__ = ["SessionPipeline", "PipelineConfig", "FixOutcome"]
