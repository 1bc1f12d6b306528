from __future__ import annotations

import logging
from contextlib import contextmanager
from functools import wraps
from time import perf_counter
from typing import Callable, Iterator, ParamSpec, TypeVar

from .logging_utils import PERF_LEVEL_NUM, PERF_LOGGER_NAME
from .trace import QueryTrace, get_current_trace, reset_current_trace, set_current_trace

P = ParamSpec("P")
R = TypeVar("R")

perf_logger = logging.getLogger(PERF_LOGGER_NAME)


@contextmanager
def timed_stage(stage: str):
    started = perf_counter()
    try:
        yield
    finally:
        trace = get_current_trace()
        if trace is not None:
            trace.record_stage_time(stage, (perf_counter() - started) * 1000.0)


def instrument_stage(stage: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            with timed_stage(stage):
                return func(*args, **kwargs)

        return wrapper

    return decorator


@contextmanager
def traced_query(kind: str, **labels: object) -> Iterator[QueryTrace]:
    """Open a trace for one core query and emit a PERF line when it ends.

    Nested calls reuse the outer trace so a search that geocodes is logged once.
    """
    existing = get_current_trace()
    if existing is not None:
        yield existing
        return

    trace = QueryTrace(kind=kind, labels=dict(labels))
    token = set_current_trace(trace)
    try:
        yield trace
    finally:
        trace.finalize()
        perf_logger.log(PERF_LEVEL_NUM, "query_trace %s labels=%r", trace.to_log_value(), trace.labels)
        reset_current_trace(token)
