"""
Observability module - Logging, Metrics, and Tracing.
"""

from benefit_grant.observability.logging import get_logger, log_context, setup_logging
from benefit_grant.observability.metrics import metrics
from benefit_grant.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
