"""Global pytest fixtures & helpers.

Adds project root to path and provides a controllable clock plus ready-made
repositories and pipelines. Builders for fixes and stops live in
`factories.py`.
"""
from __future__ import annotations

import os
import sys
from typing import Iterator

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from ride_stops.clustering import ClusterEngine
from ride_stops.services import SessionPipeline
from ride_stops.storage import InMemoryRepository, SqlRepository

from factories import FakeClock


# --- Fixtures --------------------------------------------------------
@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def sql_repo() -> Iterator[SqlRepository]:
    repo = SqlRepository.from_url("sqlite://")
    yield repo
    repo.close()


@pytest.fixture(params=["memory", "sql"])
def repository(request):
    if request.param == "memory":
        yield InMemoryRepository()
        return
    repo = SqlRepository.from_url("sqlite://")
    yield repo
    repo.close()


@pytest.fixture
def cluster_engine(repository, clock) -> ClusterEngine:
    return ClusterEngine(repository, clock=clock)


@pytest.fixture
def pipeline(repository, cluster_engine, clock) -> SessionPipeline:
    return SessionPipeline(
        repository, cluster_engine, clock=clock, sleep=lambda _seconds: None
    )
