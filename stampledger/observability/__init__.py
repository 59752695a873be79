"""
Observability module - Logging, Metrics, and Tracing.
"""

from stampledger.observability.logging import get_logger, log_context, setup_logging
from stampledger.observability.metrics import metrics
from stampledger.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
