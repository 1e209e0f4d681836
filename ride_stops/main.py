"""Command line entry point and composition root."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Sequence

import pandas as pd

from .clustering import ClusterEngine
from .config import (
    DATABASE_URL,
    PROBLEM_MIN_AVG_DURATION_SECONDS,
    PROBLEM_MIN_STOPS,
    SESSION_PAGE_SIZE,
)
from .errors import RideStopsError
from .fix_source import CsvFixSource
from .models import Cluster, Session
from .services import SessionPipeline
from .storage import Repository, SqlRepository
from .utils import format_duration

LOGGER = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO,
            format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        )


def _session_rows(sessions: Sequence[Session]) -> List[Dict[str, Any]]:
    return [
        {
            "id": s.id,
            "start": s.start_time.isoformat(timespec="seconds"),
            "end": s.end_time.isoformat(timespec="seconds") if s.end_time else "active",
            "distance_km": round(s.total_distance_km, 2),
            "avg_kmh": round(s.average_speed_kmh, 1),
            "max_kmh": round(s.max_speed_kmh, 1),
            "stops": s.stop_count,
            "stopped": format_duration(s.total_stop_seconds),
        }
        for s in sessions
    ]


def _cluster_rows(clusters: Sequence[Cluster]) -> List[Dict[str, Any]]:
    return [
        {
            "id": c.id,
            "latitude": round(c.centroid_latitude, 6),
            "longitude": round(c.centroid_longitude, 6),
            "stops": c.stop_count,
            "avg_wait": format_duration(c.average_duration_seconds),
            "median_wait": format_duration(c.median_duration_seconds),
            "problem": c.is_problem_intersection(),
        }
        for c in clusters
    ]


def _print_table(rows: List[Dict[str, Any]], empty_message: str) -> None:
    if not rows:
        print(empty_message)
        return
    print(pd.DataFrame(rows).to_string(index=False))


def _cmd_replay(args: argparse.Namespace, repository: Repository) -> int:
    path = Path(args.file)
    if not path.is_file():
        LOGGER.error("Fix file not found: %s", path)
        return 2
    engine = ClusterEngine(repository)
    cancel_event = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel_event.set())
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="clustering") as executor:
        pipeline = SessionPipeline(
            repository, engine, clustering_executor=executor
        )
        try:
            session_id = pipeline.start_session()
            source = CsvFixSource(path)
            handled = pipeline.consume(source, session_id, cancel_event)
            if cancel_event.is_set():
                pipeline.abort_session(session_id)
                LOGGER.warning("Replay interrupted; session %s discarded", session_id)
                return 130
            session = pipeline.end_session(session_id)
            pipeline.wait_for_clustering()
        finally:
            signal.signal(signal.SIGINT, previous)
    LOGGER.info("Replayed %d fixes from %s", handled, path)
    _print_table(_session_rows([session]), "")
    stops = repository.list_stops(session.id)
    for stop in stops:
        print(
            f"  stop #{stop.sequence_number} at {stop.latitude:.6f},{stop.longitude:.6f} "
            f"for {format_duration(stop.duration_seconds)} (cluster {stop.cluster_id})"
        )
    return 0


def _cmd_sessions(args: argparse.Namespace, repository: Repository) -> int:
    pipeline = SessionPipeline(repository)
    sessions = pipeline.list_sessions(page=args.page, page_size=args.page_size)
    _print_table(_session_rows(sessions), "No sessions recorded")
    print(f"{pipeline.count_sessions()} sessions in total")
    return 0


def _cmd_clusters(args: argparse.Namespace, repository: Repository) -> int:
    engine = ClusterEngine(repository)
    if args.problem:
        clusters = engine.problem_clusters(args.min_stops, args.min_average)
    elif args.longest_wait:
        clusters = engine.clusters_with_min_duration(args.min_average)
    else:
        clusters = engine.clusters_with_min_stops(args.min_stops)
    if args.limit is not None:
        clusters = clusters[: args.limit]
    _print_table(_cluster_rows(clusters), "No clusters found")
    return 0


def _cmd_rebuild(args: argparse.Namespace, repository: Repository) -> int:
    engine = ClusterEngine(repository)
    cancel_event = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel_event.set())
    try:
        rebuilt = engine.rebuild_all(cancel_event)
    finally:
        signal.signal(signal.SIGINT, previous)
    if rebuilt is None:
        LOGGER.warning("Rebuild cancelled; clusters unchanged")
        return 130
    print(f"Rebuilt {len(rebuilt)} clusters")
    return 0


def _cmd_prune(args: argparse.Namespace, repository: Repository) -> int:
    removed = ClusterEngine(repository).delete_stale(args.older_than_days)
    print(f"Deleted {removed} stale clusters")
    return 0


def _cmd_delete_session(args: argparse.Namespace, repository: Repository) -> int:
    pipeline = SessionPipeline(repository, ClusterEngine(repository))
    deleted = pipeline.delete_session(args.session_id)
    print(
        f"Deleted session {deleted.session_id} "
        f"({len(deleted.stop_ids)} stops, {len(deleted.cluster_ids)} clusters updated)"
    )
    return 0


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ride_stops", description="Detect and analyse stops on bike rides"
    )
    parser.add_argument(
        "--database",
        default=DATABASE_URL,
        help="SQLAlchemy database URL (default: RIDE_DATABASE_URL or %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    replay = sub.add_parser("replay", help="Record a session from a CSV of fixes")
    replay.add_argument("file", help="CSV with timestamp,latitude,longitude,speed_mps")
    replay.set_defaults(handler=_cmd_replay)

    sessions = sub.add_parser("sessions", help="List recorded sessions")
    sessions.add_argument("--page", type=int, default=0)
    sessions.add_argument("--page-size", type=int, default=SESSION_PAGE_SIZE)
    sessions.set_defaults(handler=_cmd_sessions)

    clusters = sub.add_parser("clusters", help="List stop clusters")
    clusters.add_argument("--min-stops", type=int, default=1)
    clusters.add_argument(
        "--min-average", type=float, default=PROBLEM_MIN_AVG_DURATION_SECONDS
    )
    mode = clusters.add_mutually_exclusive_group()
    mode.add_argument(
        "--problem",
        action="store_true",
        help=f"Only problem intersections (defaults: {PROBLEM_MIN_STOPS} stops "
        f"or {PROBLEM_MIN_AVG_DURATION_SECONDS:g}s average)",
    )
    mode.add_argument(
        "--longest-wait",
        action="store_true",
        help="Order by average wait, keeping clusters at or above --min-average",
    )
    clusters.add_argument("--limit", type=int)
    clusters.set_defaults(handler=_cmd_clusters)

    rebuild = sub.add_parser("rebuild-clusters", help="Re-derive all clusters")
    rebuild.set_defaults(handler=_cmd_rebuild)

    prune = sub.add_parser("prune-clusters", help="Delete clusters not updated recently")
    prune.add_argument("--older-than-days", type=int, default=90)
    prune.set_defaults(handler=_cmd_prune)

    delete = sub.add_parser("delete-session", help="Delete a finished session")
    delete.add_argument("session_id", type=int)
    delete.set_defaults(handler=_cmd_delete_session)

    args = parser.parse_args(argv)
    if args.command == "clusters" and args.problem and args.min_stops == 1:
        args.min_stops = PROBLEM_MIN_STOPS
    return args


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    _setup_logging(args.verbose)
    try:
        repository = SqlRepository.from_url(args.database)
    except RideStopsError as exc:
        LOGGER.error("Cannot open database %s: %s", args.database, exc)
        return 1
    try:
        # Crash recovery runs before any command reads or writes sessions.
        SessionPipeline(repository).recover()
        return args.handler(args, repository)
    except RideStopsError as exc:
        LOGGER.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        repository.close()


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
