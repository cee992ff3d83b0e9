"""JSON logging, health endpoints and in-process metrics for the chaser.

Batch runs and CLI commands tag their log lines with a trace ID so one
cycle can be followed through the log stream.
"""
import uuid
from typing import Optional

from . import health
from . import logging as logging_module
from . import metrics


def set_trace_id(trace_id: Optional[str] = None) -> str:
    """Bind a trace ID to the current thread, generating one if needed."""
    trace_id = trace_id or str(uuid.uuid4())
    logging_module.set_trace_id(trace_id)
    return trace_id


def init_observability(enable_metrics: bool = True) -> None:
    logging_module.init_logging()
    if not enable_metrics:
        metrics.reset_metrics()


__all__ = [
    "logging_module",
    "health",
    "metrics",
    "set_trace_id",
    "init_observability",
]
