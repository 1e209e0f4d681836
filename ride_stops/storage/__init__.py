"""Persistence backends behind the :class:`Repository` contract."""

from .base import DeletedSession, FixWrite, Repository
from .memory import InMemoryRepository
from .sql import SqlRepository, build_engine

__all__ = [
    "Repository",
    "FixWrite",
    "DeletedSession",
    "InMemoryRepository",
    "SqlRepository",
    "build_engine",
]
