"""
Request-scoped tracing for TractScout recommendation runs.

Provides a thread-local TraceContext that records:
  - Per-stage timing (resolve, fetch, score) with error counts
  - Per-outbound-call timing (service, endpoint, elapsed_ms, status, provider status)
  - End-of-request summary (total_elapsed, total_api_calls, outcome)

Usage:
    from ts_trace import TraceContext, get_trace, set_trace, clear_trace

    ctx = TraceContext(trace_id="scan-1")
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

    # In API clients:
    trace = get_trace()
    if trace:
        trace.record_api_call(...)

Worker threads do not inherit thread-locals, so the orchestrator passes the
parent context into each task and calls set_trace() there.  list.append is
atomic under the GIL, so a single context can be shared across threads.
"""

import time
import threading
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

logger = logging.getLogger(__name__)


# =============================================================================
# Data classes for trace records
# =============================================================================

@dataclass
class APICallRecord:
    """One outbound HTTP call (FCC, Census Geocoder, ACS, TIGERweb) or cache event."""
    service: str          # "fcc_area" | "census_geocoder" | "census_acs" | "tigerweb" | "area_cache"
    endpoint: str
    elapsed_ms: int
    status_code: int
    provider_status: str = ""   # e.g. "timeout", "cache_hit", "stale_cache"
    stage: str = ""


@dataclass
class StageRecord:
    """One orchestration stage (resolve, fetch, score)."""
    stage_name: str
    elapsed_ms: int = 0
    items: int = 0
    errors: int = 0


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing data for a single recommend() call."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    model_version: str = ""
    _current_stage: str = ""

    def start_stage(self, name: str):
        self._current_stage = name

    def end_stage(self):
        self._current_stage = ""

    def record_stage(self, stage_name: str, start_ts: float, end_ts: float,
                     items: int = 0, errors: int = 0):
        rec = StageRecord(
            stage_name=stage_name,
            elapsed_ms=int((end_ts - start_ts) * 1000),
            items=items,
            errors=errors,
        )
        self.stages.append(rec)
        logger.info(
            "  [stage] trace=%s %s %dms items=%d errors=%d",
            self.trace_id, stage_name, rec.elapsed_ms, items, errors,
        )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            stage=self._current_stage,
        )
        self.api_calls.append(rec)
        logger.debug(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id,
            self._current_stage or "-",
            service,
            endpoint,
            elapsed_ms,
            status_code,
            provider_status,
        )

    def network_calls(self) -> int:
        """Outbound HTTP calls only (cache events excluded)."""
        return sum(1 for c in self.api_calls if c.service != "area_cache")

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        errors = sum(s.errors for s in self.stages)
        items = sum(s.items for s in self.stages)

        if errors and items == errors:
            outcome = "error"
        elif not items:
            outcome = "empty"
        elif errors:
            outcome = "partial"
        else:
            outcome = "success"

        result = {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": self.network_calls(),
            "cache_events": len(self.api_calls) - self.network_calls(),
            "stages": [
                {"stage": s.stage_name, "elapsed_ms": s.elapsed_ms,
                 "items": s.items, "errors": s.errors}
                for s in self.stages
            ],
            "final_outcome": outcome,
        }
        if self.model_version:
            result["model_version"] = self.model_version
        return result

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d cache_events=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["cache_events"],
            s["final_outcome"],
        )


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current thread's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    """Clear the current trace context."""
    _trace_local.ctx = None
