"""
Observability Module for the Sync Engine

Provides:
- Structured logging with correlation IDs
- Metrics collection (jobs, batches, processing times)
"""

from core.observability.metrics import MetricsCollector

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
]
