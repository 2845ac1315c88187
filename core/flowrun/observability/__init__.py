"""
Observability module for run correlation and structured logging.

- Automatic run/node context propagation via ContextVar
- Structured JSON logging for production
- Human-readable logging for development
"""

from flowrun.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
    "StructuredFormatter",
    "HumanReadableFormatter",
]
