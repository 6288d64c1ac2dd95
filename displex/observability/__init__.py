"""
Observability module - Logging, Metrics, and Tracing.
"""

from displex.observability.logging import get_logger, log_context, setup_logging
from displex.observability.metrics import metrics
from displex.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
