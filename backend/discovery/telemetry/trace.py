from __future__ import annotations

import json
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from uuid import UUID, uuid4

_TRACE_CONTEXT: ContextVar["QueryTrace | None"] = ContextVar("query_trace", default=None)

STAGES = ("cache", "db", "geocode")


def _round_or_none(value: float | None) -> float | None:
    if value is None:
        return None
    return round(value, 3)


@dataclass
class QueryTrace:
    kind: str
    request_id: UUID = field(default_factory=uuid4)
    labels: dict[str, object] = field(default_factory=dict)
    request_start_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stage_times_ms: dict[str, float] = field(default_factory=dict)
    cache_hit: bool = False
    cache_degraded: bool = False
    result_count: int | None = None
    total_time_ms: float | None = None
    _request_perf_counter_start: float = field(default_factory=perf_counter, repr=False)

    def record_stage_time(self, stage: str, duration_ms: float) -> None:
        if stage not in STAGES:
            return
        self.stage_times_ms[stage] = self.stage_times_ms.get(stage, 0.0) + duration_ms

    def mark_cache_hit(self) -> None:
        self.cache_hit = True

    def mark_cache_degraded(self) -> None:
        self.cache_degraded = True

    def set_result_count(self, result_count: int) -> None:
        self.result_count = result_count

    def finalize(self) -> None:
        if self.total_time_ms is None:
            self.total_time_ms = (perf_counter() - self._request_perf_counter_start) * 1000.0

    def to_log_value(self) -> str:
        payload = {
            "request_id": str(self.request_id),
            "kind": self.kind,
            "cache_hit": self.cache_hit,
            "cache_degraded": self.cache_degraded,
            "result_count": self.result_count,
            "total_time_ms": _round_or_none(self.total_time_ms),
        }
        for stage in STAGES:
            payload[f"{stage}_time_ms"] = _round_or_none(self.stage_times_ms.get(stage))
        return json.dumps(payload, separators=(",", ":"))


def get_current_trace() -> QueryTrace | None:
    return _TRACE_CONTEXT.get()


def set_current_trace(trace: QueryTrace) -> Token:
    return _TRACE_CONTEXT.set(trace)


def reset_current_trace(token: Token) -> None:
    _TRACE_CONTEXT.reset(token)
