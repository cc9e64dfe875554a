"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobflow.observability.logging import (
    bind_context,
    clear_context,
    setup_logging,
)
from jobflow.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
    start_metrics_server,
)
from jobflow.observability.tracing import (
    get_tracer,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
)

__all__ = [
    "setup_logging",
    "bind_context",
    "clear_context",
    "setup_metrics",
    "start_metrics_server",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "instrument_fastapi",
    "instrument_sqlalchemy",
]
