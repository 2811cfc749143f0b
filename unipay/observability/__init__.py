"""
Observability module - Logging, Metrics, and Tracing.
"""

from unipay.observability.logging import get_logger, log_context, setup_logging
from unipay.observability.metrics import metrics
from unipay.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
