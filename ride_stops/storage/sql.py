"""SQLAlchemy-backed repository.

Cluster membership lives in its own ``cluster_members`` table instead of an
id list inside the cluster row. ``stops.cluster_id`` is the nullable
back-reference. Membership rows are not cascaded from stops, so a deleted
stop stays listed until the cluster is recalculated, same as the in-memory
repository. All datetimes are stored as naive UTC.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from threading import RLock
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session as OrmSession,
    mapped_column,
    relationship,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from ..config import DATABASE_ECHO, DATABASE_URL
from ..errors import (
    NotFoundError,
    InvariantViolation,
    SessionAlreadyActiveError,
    SessionNotActiveError,
    SessionStateError,
    StorageError,
)
from ..geo import BoundingBox
from ..models import Cluster, Session, SessionMetrics, StopEvent, Waypoint
from ..utils import to_utc_aware
from .base import DeletedSession, FixWrite, Repository


class Base(DeclarativeBase):
    pass


class SessionRow(Base):
    __tablename__ = "sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    total_distance_km: Mapped[float] = mapped_column(Float, default=0.0)
    total_stop_seconds: Mapped[int] = mapped_column(Integer, default=0)
    stop_count: Mapped[int] = mapped_column(Integer, default=0)
    average_speed_kmh: Mapped[float] = mapped_column(Float, default=0.0)
    max_speed_kmh: Mapped[float] = mapped_column(Float, default=0.0)

    waypoints: Mapped[List["WaypointRow"]] = relationship(
        back_populates="session", cascade="all, delete-orphan"
    )
    stops: Mapped[List["StopRow"]] = relationship(
        back_populates="session", cascade="all, delete-orphan"
    )


class WaypointRow(Base):
    __tablename__ = "waypoints"
    __table_args__ = (Index("ix_waypoints_session_time", "session_id", "timestamp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    speed_mps: Mapped[float] = mapped_column(Float, nullable=False)
    bearing: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    accuracy_m: Mapped[float] = mapped_column(Float, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    session: Mapped[SessionRow] = relationship(back_populates="waypoints")


class ClusterRow(Base):
    __tablename__ = "clusters"
    __table_args__ = (
        Index("ix_clusters_centroid", "centroid_latitude", "centroid_longitude"),
        # Never reuse ids of deleted clusters.
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    centroid_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    centroid_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    average_duration_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    median_duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    stop_count: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    last_updated: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class StopRow(Base):
    __tablename__ = "stops"
    __table_args__ = (
        UniqueConstraint("session_id", "sequence_number", name="uq_stop_sequence"),
        Index("ix_stops_timestamp", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    speed_before_stop_mps: Mapped[float] = mapped_column(Float, nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    bearing: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    cluster_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("clusters.id", ondelete="SET NULL"), nullable=True, index=True
    )

    session: Mapped[SessionRow] = relationship(back_populates="stops")


class ClusterMemberRow(Base):
    __tablename__ = "cluster_members"

    cluster_id: Mapped[int] = mapped_column(
        ForeignKey("clusters.id", ondelete="CASCADE"), primary_key=True
    )
    # Plain integer: deleting a stop must not silently shrink the member set.
    stop_id: Mapped[int] = mapped_column(Integer, primary_key=True)


def _to_db(value: datetime) -> datetime:
    return to_utc_aware(value).replace(tzinfo=None)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return to_utc_aware(value)


def _session_to_domain(row: SessionRow) -> Session:
    return Session(
        id=row.id,
        start_time=to_utc_aware(row.start_time),
        end_time=_from_db(row.end_time),
        metrics=SessionMetrics(
            total_distance_km=row.total_distance_km,
            total_stop_seconds=row.total_stop_seconds,
            stop_count=row.stop_count,
            average_speed_kmh=row.average_speed_kmh,
            max_speed_kmh=row.max_speed_kmh,
        ),
    )


def _waypoint_to_domain(row: WaypointRow) -> Waypoint:
    return Waypoint(
        id=row.id,
        session_id=row.session_id,
        latitude=row.latitude,
        longitude=row.longitude,
        speed_mps=row.speed_mps,
        timestamp=to_utc_aware(row.timestamp),
        accuracy_m=row.accuracy_m,
        bearing=row.bearing,
    )


def _stop_to_domain(row: StopRow) -> StopEvent:
    return StopEvent(
        id=row.id,
        session_id=row.session_id,
        latitude=row.latitude,
        longitude=row.longitude,
        duration_seconds=row.duration_seconds,
        timestamp=to_utc_aware(row.timestamp),
        speed_before_stop_mps=row.speed_before_stop_mps,
        sequence_number=row.sequence_number,
        bearing=row.bearing,
        cluster_id=row.cluster_id,
    )


def _cluster_to_domain(row: ClusterRow, member_ids: Iterable[int]) -> Cluster:
    return Cluster(
        id=row.id,
        centroid_latitude=row.centroid_latitude,
        centroid_longitude=row.centroid_longitude,
        average_duration_seconds=row.average_duration_seconds,
        median_duration_seconds=row.median_duration_seconds,
        stop_count=row.stop_count,
        member_stop_ids=frozenset(member_ids),
        last_updated=to_utc_aware(row.last_updated),
    )


def _apply_metrics(row: SessionRow, metrics: SessionMetrics) -> None:
    row.total_distance_km = metrics.total_distance_km
    row.total_stop_seconds = metrics.total_stop_seconds
    row.stop_count = metrics.stop_count
    row.average_speed_kmh = metrics.average_speed_kmh
    row.max_speed_kmh = metrics.max_speed_kmh


def _apply_cluster(row: ClusterRow, cluster: Cluster) -> None:
    row.centroid_latitude = cluster.centroid_latitude
    row.centroid_longitude = cluster.centroid_longitude
    row.average_duration_seconds = cluster.average_duration_seconds
    row.median_duration_seconds = cluster.median_duration_seconds
    row.stop_count = cluster.stop_count
    row.last_updated = _to_db(cluster.last_updated)


def build_engine(url: str = DATABASE_URL, *, echo: bool = DATABASE_ECHO) -> Engine:
    """Create an engine; SQLite connections may be shared across threads."""

    if url.startswith("sqlite"):
        kwargs: Dict[str, object] = {"connect_args": {"check_same_thread": False}}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            # One shared connection, otherwise every checkout sees an empty DB.
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(url, echo=echo, pool_pre_ping=True)


class SqlRepository(Repository):
    """Repository over any SQLAlchemy-supported database."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        # Serializes access; SQLite shares one connection across threads.
        self._lock = RLock()
        try:
            Base.metadata.create_all(engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Unable to initialise schema: {exc}") from exc

    @classmethod
    def from_url(
        cls, url: str = DATABASE_URL, *, echo: bool = DATABASE_ECHO
    ) -> "SqlRepository":
        return cls(build_engine(url, echo=echo))

    @contextmanager
    def _transaction(self) -> Iterator[OrmSession]:
        with self._lock:
            db = self._session_factory()
            try:
                yield db
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise StorageError(str(exc)) from exc
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def close(self) -> None:
        self._engine.dispose()

    # -- sessions -------------------------------------------------------

    def create_session(self, start_time: datetime) -> Session:
        with self._transaction() as db:
            active_id = db.scalar(
                select(SessionRow.id).where(SessionRow.end_time.is_(None)).limit(1)
            )
            if active_id is not None:
                raise SessionAlreadyActiveError(f"Session {active_id} is still active")
            row = SessionRow(
                start_time=_to_db(start_time),
                end_time=None,
                total_distance_km=0.0,
                total_stop_seconds=0,
                stop_count=0,
                average_speed_kmh=0.0,
                max_speed_kmh=0.0,
            )
            db.add(row)
            db.flush()
            return _session_to_domain(row)

    def get_session(self, session_id: int) -> Optional[Session]:
        with self._transaction() as db:
            row = db.get(SessionRow, session_id)
            return _session_to_domain(row) if row is not None else None

    def get_active_session(self) -> Optional[Session]:
        with self._transaction() as db:
            rows = db.scalars(
                select(SessionRow).where(SessionRow.end_time.is_(None))
            ).all()
            if len(rows) > 1:
                raise InvariantViolation(
                    f"{len(rows)} active sessions found: {[r.id for r in rows]}"
                )
            return _session_to_domain(rows[0]) if rows else None

    def list_sessions(self, limit: int, offset: int = 0) -> List[Session]:
        with self._transaction() as db:
            rows = db.scalars(
                select(SessionRow)
                .order_by(SessionRow.start_time.desc(), SessionRow.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return [_session_to_domain(r) for r in rows]

    def count_sessions(self) -> int:
        with self._transaction() as db:
            return int(db.scalar(select(func.count()).select_from(SessionRow)) or 0)

    def finalize_session(self, session_id: int, end_time: datetime) -> Session:
        with self._transaction() as db:
            row = self._require_session(db, session_id)
            if row.end_time is not None:
                raise SessionNotActiveError(f"Session {session_id} already ended")
            row.end_time = _to_db(end_time)
            db.flush()
            return _session_to_domain(row)

    def delete_session(
        self, session_id: int, *, allow_active: bool = False
    ) -> DeletedSession:
        with self._transaction() as db:
            row = self._require_session(db, session_id)
            if row.end_time is None and not allow_active:
                raise SessionStateError(f"Cannot delete active session {session_id}")
            return self._remove_session(db, row)

    def discard_incomplete_sessions(self) -> int:
        with self._transaction() as db:
            rows = db.scalars(
                select(SessionRow).where(SessionRow.end_time.is_(None))
            ).all()
            for row in rows:
                self._remove_session(db, row)
            return len(rows)

    # -- per-fix writes -------------------------------------------------

    def record_fix_outcome(
        self,
        session_id: int,
        *,
        metrics: SessionMetrics,
        waypoint: Optional[Waypoint] = None,
        stop: Optional[StopEvent] = None,
    ) -> FixWrite:
        with self._transaction() as db:
            session_row = db.get(SessionRow, session_id)
            if session_row is None or session_row.end_time is not None:
                raise SessionNotActiveError(
                    f"Session {session_id} is not accepting fixes"
                )
            waypoint_row = None
            if waypoint is not None:
                waypoint_row = WaypointRow(
                    session_id=session_id,
                    latitude=waypoint.latitude,
                    longitude=waypoint.longitude,
                    speed_mps=waypoint.speed_mps,
                    bearing=waypoint.bearing,
                    accuracy_m=waypoint.accuracy_m,
                    timestamp=_to_db(waypoint.timestamp),
                )
                db.add(waypoint_row)
            stop_row = None
            if stop is not None:
                taken = db.scalar(
                    select(StopRow.id).where(
                        StopRow.session_id == session_id,
                        StopRow.sequence_number == stop.sequence_number,
                    )
                )
                if taken is not None:
                    raise InvariantViolation(
                        f"Stop sequence {stop.sequence_number} already used in "
                        f"session {session_id}"
                    )
                stop_row = StopRow(
                    session_id=session_id,
                    latitude=stop.latitude,
                    longitude=stop.longitude,
                    duration_seconds=stop.duration_seconds,
                    timestamp=_to_db(stop.timestamp),
                    speed_before_stop_mps=stop.speed_before_stop_mps,
                    sequence_number=stop.sequence_number,
                    bearing=stop.bearing,
                    cluster_id=None,
                )
                db.add(stop_row)
            _apply_metrics(session_row, metrics)
            db.flush()
            return FixWrite(
                session=_session_to_domain(session_row),
                waypoint=_waypoint_to_domain(waypoint_row) if waypoint_row else None,
                stop=_stop_to_domain(stop_row) if stop_row else None,
            )

    # -- waypoints ------------------------------------------------------

    def list_waypoints(self, session_id: int) -> List[Waypoint]:
        with self._transaction() as db:
            rows = db.scalars(
                select(WaypointRow)
                .where(WaypointRow.session_id == session_id)
                .order_by(WaypointRow.timestamp, WaypointRow.id)
            ).all()
            return [_waypoint_to_domain(r) for r in rows]

    def count_waypoints(self, session_id: Optional[int] = None) -> int:
        with self._transaction() as db:
            stmt = select(func.count()).select_from(WaypointRow)
            if session_id is not None:
                stmt = stmt.where(WaypointRow.session_id == session_id)
            return int(db.scalar(stmt) or 0)

    # -- stops ----------------------------------------------------------

    def list_stops(self, session_id: int) -> List[StopEvent]:
        with self._transaction() as db:
            rows = db.scalars(
                select(StopRow)
                .where(StopRow.session_id == session_id)
                .order_by(StopRow.sequence_number)
            ).all()
            return [_stop_to_domain(r) for r in rows]

    def get_stops(self, stop_ids: Sequence[int]) -> List[StopEvent]:
        ids = list(stop_ids)
        if not ids:
            return []
        with self._transaction() as db:
            rows = db.scalars(select(StopRow).where(StopRow.id.in_(ids))).all()
            by_id = {r.id: _stop_to_domain(r) for r in rows}
        return [by_id[sid] for sid in ids if sid in by_id]

    def list_all_stops(self) -> List[StopEvent]:
        with self._transaction() as db:
            rows = db.scalars(
                select(StopRow).order_by(StopRow.timestamp, StopRow.id)
            ).all()
            return [_stop_to_domain(r) for r in rows]

    # -- clusters -------------------------------------------------------

    def get_cluster(self, cluster_id: int) -> Optional[Cluster]:
        with self._transaction() as db:
            row = db.get(ClusterRow, cluster_id)
            if row is None:
                return None
            return self._clusters_to_domain(db, [row])[0]

    def list_clusters(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> List[Cluster]:
        with self._transaction() as db:
            stmt = (
                select(ClusterRow)
                .order_by(ClusterRow.stop_count.desc(), ClusterRow.id)
                .offset(offset)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return self._clusters_to_domain(db, db.scalars(stmt).all())

    def find_clusters_in_box(self, box: BoundingBox) -> List[Cluster]:
        min_lat, max_lat, min_lon, max_lon = box
        with self._transaction() as db:
            rows = db.scalars(
                select(ClusterRow).where(
                    ClusterRow.centroid_latitude.between(min_lat, max_lat),
                    ClusterRow.centroid_longitude.between(min_lon, max_lon),
                )
            ).all()
            return self._clusters_to_domain(db, rows)

    def count_clusters(self) -> int:
        with self._transaction() as db:
            return int(db.scalar(select(func.count()).select_from(ClusterRow)) or 0)

    def save_cluster(self, cluster: Cluster) -> Cluster:
        with self._transaction() as db:
            if cluster.id is None:
                row = ClusterRow()
                _apply_cluster(row, cluster)
                db.add(row)
                db.flush()
            else:
                row = db.get(ClusterRow, cluster.id)
                if row is None:
                    raise NotFoundError(f"Cluster {cluster.id} does not exist")
                _apply_cluster(row, cluster)
            self._write_members(db, row.id, cluster.member_stop_ids)
            db.flush()
            return _cluster_to_domain(row, cluster.member_stop_ids)

    def delete_cluster(self, cluster_id: int) -> None:
        with self._transaction() as db:
            row = db.get(ClusterRow, cluster_id)
            if row is None:
                raise NotFoundError(f"Cluster {cluster_id} does not exist")
            self._drop_cluster(db, row)

    def replace_clusters(self, clusters: Sequence[Cluster]) -> List[Cluster]:
        with self._transaction() as db:
            db.execute(update(StopRow).values(cluster_id=None))
            db.execute(delete(ClusterMemberRow))
            db.execute(delete(ClusterRow))
            stored: List[Cluster] = []
            for cluster in clusters:
                row = ClusterRow()
                _apply_cluster(row, cluster)
                db.add(row)
                db.flush()
                self._write_members(db, row.id, cluster.member_stop_ids)
                stored.append(_cluster_to_domain(row, cluster.member_stop_ids))
            return stored

    def delete_clusters_updated_before(self, cutoff: datetime) -> int:
        with self._transaction() as db:
            rows = db.scalars(
                select(ClusterRow).where(ClusterRow.last_updated < _to_db(cutoff))
            ).all()
            for row in rows:
                self._drop_cluster(db, row)
            return len(rows)

    # -- helpers --------------------------------------------------------

    @staticmethod
    def _require_session(db: OrmSession, session_id: int) -> SessionRow:
        row = db.get(SessionRow, session_id)
        if row is None:
            raise NotFoundError(f"Session {session_id} does not exist")
        return row

    @staticmethod
    def _remove_session(db: OrmSession, row: SessionRow) -> DeletedSession:
        pairs = db.execute(
            select(StopRow.id, StopRow.cluster_id).where(StopRow.session_id == row.id)
        ).all()
        session_id = row.id
        db.delete(row)
        db.flush()
        return DeletedSession(
            session_id=session_id,
            stop_ids=frozenset(stop_id for stop_id, _ in pairs),
            cluster_ids=frozenset(cid for _, cid in pairs if cid is not None),
        )

    @staticmethod
    def _clusters_to_domain(
        db: OrmSession, rows: Sequence[ClusterRow]
    ) -> List[Cluster]:
        if not rows:
            return []
        members: Dict[int, List[int]] = {row.id: [] for row in rows}
        pairs = db.execute(
            select(ClusterMemberRow.cluster_id, ClusterMemberRow.stop_id).where(
                ClusterMemberRow.cluster_id.in_(list(members))
            )
        ).all()
        for cluster_id, stop_id in pairs:
            members[cluster_id].append(stop_id)
        return [_cluster_to_domain(row, members[row.id]) for row in rows]

    @staticmethod
    def _write_members(db: OrmSession, cluster_id: int, member_ids: Iterable[int]) -> None:
        ids = sorted(set(member_ids))
        db.execute(
            delete(ClusterMemberRow).where(
                ClusterMemberRow.cluster_id == cluster_id,
                ClusterMemberRow.stop_id.not_in(ids),
            )
        )
        existing = set(
            db.scalars(
                select(ClusterMemberRow.stop_id).where(
                    ClusterMemberRow.cluster_id == cluster_id
                )
            ).all()
        )
        for stop_id in ids:
            if stop_id not in existing:
                db.add(ClusterMemberRow(cluster_id=cluster_id, stop_id=stop_id))
        db.execute(
            update(StopRow)
            .where(StopRow.cluster_id == cluster_id, StopRow.id.not_in(ids))
            .values(cluster_id=None)
        )
        if ids:
            db.execute(
                update(StopRow).where(StopRow.id.in_(ids)).values(cluster_id=cluster_id)
            )

    @staticmethod
    def _drop_cluster(db: OrmSession, row: ClusterRow) -> None:
        db.execute(
            update(StopRow).where(StopRow.cluster_id == row.id).values(cluster_id=None)
        )
        db.execute(delete(ClusterMemberRow).where(ClusterMemberRow.cluster_id == row.id))
        db.delete(row)


__all__ = ["SqlRepository", "build_engine"]
