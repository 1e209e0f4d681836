"""SQLAlchemy-specific behaviour: error wrapping, datetimes, stored invariants."""

from __future__ import annotations

from datetime import timezone

import pytest
from sqlalchemy import update

from ride_stops.errors import InvariantViolation, StorageError
from ride_stops.models import Cluster, SessionMetrics
from ride_stops.storage.sql import Base, ClusterRow, SqlRepository

from factories import BASE_TIME, make_stop


def _stored_cluster(repo: SqlRepository) -> Cluster:
    session = repo.create_session(BASE_TIME)
    stop = repo.record_fix_outcome(
        session.id, metrics=SessionMetrics(), stop=make_stop(session_id=session.id)
    ).stop
    return repo.save_cluster(
        Cluster(
            centroid_latitude=stop.latitude,
            centroid_longitude=stop.longitude,
            average_duration_seconds=20.0,
            median_duration_seconds=20,
            stop_count=1,
            member_stop_ids=frozenset({stop.id}),
            last_updated=BASE_TIME,
        )
    )


def test_datetimes_round_trip_as_utc(sql_repo):
    session = sql_repo.create_session(BASE_TIME)
    loaded = sql_repo.get_session(session.id)
    assert loaded.start_time == BASE_TIME
    assert loaded.start_time.tzinfo == timezone.utc


def test_stop_count_mismatch_fails_loudly(sql_repo):
    cluster = _stored_cluster(sql_repo)
    with sql_repo._engine.begin() as conn:
        conn.execute(update(ClusterRow).values(stop_count=3))
    with pytest.raises(InvariantViolation):
        sql_repo.get_cluster(cluster.id)


def test_database_errors_become_storage_errors(sql_repo):
    Base.metadata.drop_all(sql_repo._engine)
    with pytest.raises(StorageError):
        sql_repo.count_sessions()
    with pytest.raises(StorageError):
        sql_repo.create_session(BASE_TIME)


def test_file_database_persists_between_repositories(tmp_path):
    url = f"sqlite:///{tmp_path / 'rides.db'}"
    first = SqlRepository.from_url(url)
    session = first.create_session(BASE_TIME)
    first.finalize_session(session.id, BASE_TIME)
    first.close()

    second = SqlRepository.from_url(url)
    try:
        assert [s.id for s in second.list_sessions(limit=10)] == [session.id]
    finally:
        second.close()
