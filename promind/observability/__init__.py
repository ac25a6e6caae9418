"""
Observability module - Logging and Metrics.
"""

from promind.observability.logging import get_logger, log_context, setup_logging
from promind.observability.metrics import metrics

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
]
