"""Per-query tracing and performance logging for the discovery core."""

from .instrumentation import instrument_stage, timed_stage, traced_query
from .logging_utils import configure_logging
from .trace import (
    QueryTrace,
    get_current_trace,
    reset_current_trace,
    set_current_trace,
)

__all__ = [
    "QueryTrace",
    "configure_logging",
    "get_current_trace",
    "instrument_stage",
    "reset_current_trace",
    "set_current_trace",
    "timed_stage",
    "traced_query",
]
