"""Spatial clustering of stop events across sessions."""

from .engine import ClusterEngine
from .stats import ClusterStats, centroid, median_duration, summarize

__all__ = ["ClusterEngine", "ClusterStats", "centroid", "median_duration", "summarize"]
