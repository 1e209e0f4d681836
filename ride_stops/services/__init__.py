"""Service layer package.

Exports the session pipeline consumed by the CLI and embedding applications.
"""

from .metrics import MetricsStep, MetricsTracker
from .session_pipeline import FixOutcome, PipelineConfig, SessionPipeline

__all__ = [
    "SessionPipeline",
    "PipelineConfig",
    "FixOutcome",
    "MetricsTracker",
    "MetricsStep",
]
