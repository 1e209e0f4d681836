"""End-to-end session processing through the pipeline API."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterator

import pytest

from ride_stops.clustering import ClusterEngine
from ride_stops.detection import DetectorPhase
from ride_stops.errors import (
    NotFoundError,
    PermissionOrServiceError,
    SessionAlreadyActiveError,
    SessionNotActiveError,
    SessionStateError,
    StorageError,
)
from ride_stops.fix_source import FixSource, IterableFixSource
from ride_stops.models import Fix, SessionMetrics, Waypoint
from ride_stops.services import PipelineConfig, SessionPipeline

from factories import BASE_LAT, make_fix, make_stop, north_of, riding_fixes, standing_fixes


def _ride_with_one_stop():
    """Ride 10 s, stand 20 s, ride 20 s."""
    return (
        riding_fixes(0, 10)
        + standing_fixes(10, 20)
        + riding_fixes(30, 20, lat=north_of(BASE_LAT, 60.0))
    )


def _feed(pipeline: SessionPipeline, session_id: int, fixes):
    return [pipeline.handle_fix(session_id, fix) for fix in fixes]


def _refuse_cluster(cluster):
    raise StorageError("cluster table locked")


class FailingAfter(FixSource):
    """Yields some fixes, then loses the location service."""

    def __init__(self, fixes, exc: Exception) -> None:
        self._fixes = list(fixes)
        self._exc = exc

    def fixes(self, cancel_event=None) -> Iterator[Fix]:
        yield from self._fixes
        raise self._exc


def test_start_session_and_active_lookup(pipeline):
    session_id = pipeline.start_session()
    active = pipeline.get_active_session()
    assert active is not None
    assert active.id == session_id
    assert active.is_active


def test_second_session_is_rejected_without_touching_first(pipeline, clock):
    session_id = pipeline.start_session()
    before = pipeline.get_session(session_id)
    clock.advance(60)
    with pytest.raises(SessionAlreadyActiveError):
        pipeline.start_session()
    assert pipeline.get_active_session() == before
    assert pipeline.count_sessions() == 1


def test_ride_with_one_stop(pipeline, repository, clock):
    session_id = pipeline.start_session()
    outcomes = _feed(pipeline, session_id, _ride_with_one_stop())

    stops = [o.stop for o in outcomes if o.stop is not None]
    assert len(stops) == 1
    assert stops[0].id is not None
    assert stops[0].duration_seconds == 15
    assert stops[0].sequence_number == 1
    assert outcomes[25].phase is DetectorPhase.CONFIRMED_STOP
    assert outcomes[-1].phase is DetectorPhase.MOVING

    clock.advance(50)
    session = pipeline.end_session(session_id)
    assert not session.is_active
    assert session.stop_count == 1
    assert session.total_stop_seconds == 15
    assert session.max_speed_kmh == pytest.approx(20.0)
    assert session.average_speed_kmh == pytest.approx(20.0)
    assert session.duration_seconds == 50

    (stored,) = repository.list_stops(session_id)
    assert stored.cluster_id is not None
    assert repository.count_clusters() == 1
    assert pipeline.get_active_session() is None


def test_waypoints_sampled_with_every_stopped_fix(pipeline, repository):
    session_id = pipeline.start_session()
    _feed(pipeline, session_id, _ride_with_one_stop())
    # First fix, all 20 stationary fixes, and the speed jump when riding off.
    assert repository.count_waypoints(session_id) == 22


def test_inaccurate_fix_is_ignored(pipeline, repository):
    session_id = pipeline.start_session()
    outcome = pipeline.handle_fix(session_id, make_fix(0, accuracy=80.0))
    assert not outcome.accepted
    assert outcome.waypoint is None
    assert repository.count_waypoints(session_id) == 0

    outcome = pipeline.handle_fix(session_id, make_fix(1, accuracy=None))
    assert not outcome.accepted


def test_distance_accumulates_while_moving(pipeline):
    session_id = pipeline.start_session()
    _feed(pipeline, session_id, riding_fixes(0, 10))
    session = pipeline.get_session(session_id)
    assert session.total_distance_km == pytest.approx(0.05, rel=1e-3)


def test_fixes_rejected_after_end(pipeline):
    session_id = pipeline.start_session()
    pipeline.end_session(session_id)
    with pytest.raises(SessionNotActiveError):
        pipeline.handle_fix(session_id, make_fix(0))
    with pytest.raises(SessionNotActiveError):
        pipeline.end_session(session_id)


def test_crash_recovery_discards_unfinished_sessions(repository, clock):
    done = repository.create_session(clock())
    repository.record_fix_outcome(
        done.id,
        metrics=SessionMetrics(),
        waypoint=Waypoint.from_fix(done.id, make_fix(0)),
        stop=make_stop(session_id=done.id),
    )
    repository.finalize_session(done.id, clock())
    crashed = repository.create_session(clock())
    repository.record_fix_outcome(
        crashed.id,
        metrics=SessionMetrics(),
        waypoint=Waypoint.from_fix(crashed.id, make_fix(0)),
        stop=make_stop(session_id=crashed.id),
    )

    pipeline = SessionPipeline(repository, clock=clock)
    assert pipeline.recover() == 1
    assert pipeline.recover() == 0

    assert repository.get_session(crashed.id) is None
    assert repository.count_waypoints(crashed.id) == 0
    assert repository.list_stops(crashed.id) == []
    kept = repository.get_session(done.id)
    assert kept is not None
    assert kept.start_time == crashed.start_time
    assert repository.count_waypoints(done.id) == 1


def test_start_session_runs_recovery_first(repository, clock):
    repository.create_session(clock())
    pipeline = SessionPipeline(repository, clock=clock)
    session_id = pipeline.start_session()
    assert [s.id for s in pipeline.list_sessions()] == [session_id]


def test_failed_write_leaves_state_untouched(repository, clock, monkeypatch, caplog):
    pipeline = SessionPipeline(
        repository,
        clock=clock,
        config=PipelineConfig(max_retries=2, backoff_seconds=0.0),
        sleep=lambda _seconds: None,
    )
    session_id = pipeline.start_session()
    _feed(pipeline, session_id, riding_fixes(0, 3))
    original = repository.record_fix_outcome
    calls = []

    def broken(*args, **kwargs):
        calls.append(args)
        raise StorageError("disk full")

    monkeypatch.setattr(repository, "record_fix_outcome", broken)
    slow_fix = make_fix(3, speed_kmh=0.0)
    with caplog.at_level(logging.WARNING, logger="SessionPipeline"):
        with pytest.raises(StorageError):
            pipeline.handle_fix(session_id, slow_fix)
    assert len(calls) == 3
    assert "dropping fix" in caplog.text.lower()

    monkeypatch.setattr(repository, "record_fix_outcome", original)
    outcome = pipeline.handle_fix(session_id, slow_fix)
    assert outcome.phase is DetectorPhase.POTENTIAL_STOP
    assert outcome.waypoint is not None


def test_transient_write_failure_is_retried(repository, clock, monkeypatch):
    pipeline = SessionPipeline(
        repository,
        clock=clock,
        config=PipelineConfig(max_retries=2, backoff_seconds=0.5),
        sleep=lambda _seconds: None,
    )
    session_id = pipeline.start_session()
    original = repository.record_fix_outcome
    failures = [StorageError("locked")]

    def flaky(*args, **kwargs):
        if failures:
            raise failures.pop()
        return original(*args, **kwargs)

    monkeypatch.setattr(repository, "record_fix_outcome", flaky)
    outcome = pipeline.handle_fix(session_id, make_fix(0))
    assert outcome.accepted
    assert outcome.waypoint is not None
    assert repository.count_waypoints(session_id) == 1


def test_consume_drains_source(pipeline, repository):
    session_id = pipeline.start_session()
    handled = pipeline.consume(IterableFixSource(_ride_with_one_stop()), session_id)
    assert handled == 50
    assert len(repository.list_stops(session_id)) == 1


def test_consume_honours_cancel_event(pipeline):
    session_id = pipeline.start_session()
    cancel = threading.Event()
    cancel.set()
    assert pipeline.consume(IterableFixSource(riding_fixes(0, 10)), session_id, cancel) == 0


def test_source_loss_leaves_session_unfinalized(pipeline, caplog):
    session_id = pipeline.start_session()
    source = FailingAfter(riding_fixes(0, 5), PermissionOrServiceError("GPS disabled"))
    with caplog.at_level(logging.WARNING, logger="SessionPipeline"):
        handled = pipeline.consume(source, session_id)

    assert handled == 5
    assert "gps disabled" in caplog.text.lower()
    active = pipeline.get_active_session()
    assert active is not None and active.id == session_id
    assert not pipeline.is_accepting(session_id)
    with pytest.raises(SessionNotActiveError):
        pipeline.handle_fix(session_id, make_fix(10))

    ended = pipeline.end_session(session_id)
    assert not ended.is_active


def test_abort_session_discards_everything(pipeline, repository):
    session_id = pipeline.start_session()
    _feed(pipeline, session_id, _ride_with_one_stop())
    deleted = pipeline.abort_session(session_id)

    assert len(deleted.stop_ids) == 1
    assert repository.get_session(session_id) is None
    assert pipeline.get_active_session() is None
    new_id = pipeline.start_session()
    assert pipeline.get_active_session().id == new_id


def test_delete_session_repairs_clusters(pipeline, repository, clock):
    ids = []
    for _ in range(2):
        session_id = pipeline.start_session()
        _feed(pipeline, session_id, _ride_with_one_stop())
        clock.advance(60)
        pipeline.end_session(session_id)
        ids.append(session_id)
    (cluster,) = repository.list_clusters()
    assert cluster.stop_count == 2

    active_id = pipeline.start_session()
    with pytest.raises(SessionStateError):
        pipeline.delete_session(active_id)

    pipeline.delete_session(ids[0])
    (cluster,) = repository.list_clusters()
    assert cluster.stop_count == 1

    pipeline.delete_session(ids[1])
    assert repository.count_clusters() == 0
    with pytest.raises(NotFoundError):
        pipeline.delete_session(ids[1])


def test_list_sessions_pages_newest_first(pipeline, clock):
    ids = []
    for _ in range(3):
        session_id = pipeline.start_session()
        clock.advance(60)
        pipeline.end_session(session_id)
        ids.append(session_id)
    assert [s.id for s in pipeline.list_sessions(page=0, page_size=2)] == [ids[2], ids[1]]
    assert [s.id for s in pipeline.list_sessions(page=1, page_size=2)] == [ids[0]]
    with pytest.raises(ValueError):
        pipeline.list_sessions(page=-1)


def test_clustering_runs_on_executor(repository, clock):
    engine = ClusterEngine(repository, clock=clock)
    with ThreadPoolExecutor(max_workers=1) as executor:
        pipeline = SessionPipeline(
            repository, engine, clustering_executor=executor, clock=clock
        )
        session_id = pipeline.start_session()
        _feed(pipeline, session_id, _ride_with_one_stop())
        pipeline.end_session(session_id)
        pipeline.wait_for_clustering(timeout=5)

    assert repository.count_clusters() == 1
    (stop,) = repository.list_stops(session_id)
    assert stop.cluster_id is not None


def test_pipeline_without_engine_skips_clustering(repository, clock):
    pipeline = SessionPipeline(repository, clock=clock)
    session_id = pipeline.start_session()
    _feed(pipeline, session_id, _ride_with_one_stop())
    pipeline.end_session(session_id)
    assert repository.count_clusters() == 0
    (stop,) = repository.list_stops(session_id)
    assert stop.cluster_id is None


def test_failed_clustering_is_retried_with_next_session(
    pipeline, repository, monkeypatch, caplog
):
    original = repository.save_cluster
    session_id = pipeline.start_session()
    _feed(pipeline, session_id, _ride_with_one_stop())
    monkeypatch.setattr(repository, "save_cluster", _refuse_cluster)
    with caplog.at_level(logging.ERROR, logger="SessionPipeline"):
        session = pipeline.end_session(session_id)

    assert session.end_time is not None
    assert not repository.get_session(session_id).is_active
    (stop,) = repository.list_stops(session_id)
    assert stop.cluster_id is None
    assert repository.count_clusters() == 0
    assert pipeline.unclustered_sessions == (session_id,)
    assert "will retry" in caplog.text

    monkeypatch.setattr(repository, "save_cluster", original)
    pipeline.end_session(pipeline.start_session())

    (stop,) = repository.list_stops(session_id)
    assert stop.cluster_id is not None
    assert repository.count_clusters() == 1
    assert pipeline.unclustered_sessions == ()


def test_recluster_pending_retries_failed_sessions(pipeline, repository, monkeypatch):
    original = repository.save_cluster
    session_id = pipeline.start_session()
    _feed(pipeline, session_id, _ride_with_one_stop())
    monkeypatch.setattr(repository, "save_cluster", _refuse_cluster)
    pipeline.end_session(session_id)
    assert pipeline.recluster_pending() == 0
    assert pipeline.unclustered_sessions == (session_id,)

    monkeypatch.setattr(repository, "save_cluster", original)
    assert pipeline.recluster_pending() == 1
    assert pipeline.unclustered_sessions == ()
    (stop,) = repository.list_stops(session_id)
    assert stop.cluster_id is not None


def test_finished_clustering_jobs_are_released(repository, clock):
    engine = ClusterEngine(repository, clock=clock)
    executor = ThreadPoolExecutor(max_workers=1)
    pipeline = SessionPipeline(
        repository, engine, clustering_executor=executor, clock=clock
    )
    for _ in range(20):
        session_id = pipeline.start_session()
        clock.advance(60)
        pipeline.end_session(session_id)
    executor.shutdown(wait=True)

    assert pipeline._pending == set()
    assert pipeline.unclustered_sessions == ()
    pipeline.wait_for_clustering(timeout=1)


def test_clustering_failure_on_executor_is_logged_not_raised(
    repository, clock, monkeypatch, caplog
):
    engine = ClusterEngine(repository, clock=clock)
    monkeypatch.setattr(repository, "save_cluster", _refuse_cluster)
    with ThreadPoolExecutor(max_workers=1) as executor:
        pipeline = SessionPipeline(
            repository, engine, clustering_executor=executor, clock=clock
        )
        session_id = pipeline.start_session()
        _feed(pipeline, session_id, _ride_with_one_stop())
        with caplog.at_level(logging.ERROR, logger="SessionPipeline"):
            pipeline.end_session(session_id)
            pipeline.wait_for_clustering(timeout=5)

    assert pipeline.unclustered_sessions == (session_id,)
    assert "will retry" in caplog.text
