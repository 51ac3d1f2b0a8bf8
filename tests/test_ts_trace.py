"""Unit tests for ts_trace.py — request-scoped tracing.

Tests cover: TraceContext lifecycle, stage recording, API call recording,
summary computation, and thread-local storage.
"""

import time
import threading

from ts_trace import (
    TraceContext,
    get_trace,
    set_trace,
    clear_trace,
)


# =========================================================================
# TraceContext basics
# =========================================================================

class TestTraceContextInit:
    def test_defaults(self):
        ctx = TraceContext(trace_id="test-1")
        assert ctx.trace_id == "test-1"
        assert ctx.stages == []
        assert ctx.api_calls == []
        assert ctx.model_version == ""
        assert ctx._current_stage == ""
        assert ctx.request_start > 0


# =========================================================================
# Stage lifecycle
# =========================================================================

class TestStageRecording:
    def test_record_stage(self):
        ctx = TraceContext(trace_id="test-1")
        t0 = time.time()
        ctx.record_stage("resolve", t0, t0 + 0.5, items=4, errors=1)

        assert len(ctx.stages) == 1
        stage = ctx.stages[0]
        assert stage.stage_name == "resolve"
        assert stage.elapsed_ms == 500
        assert (stage.items, stage.errors) == (4, 1)

    def test_start_and_end_stage(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.start_stage("fetch")
        assert ctx._current_stage == "fetch"

        ctx.end_stage()
        assert ctx._current_stage == ""


# =========================================================================
# API call recording
# =========================================================================

class TestApiCallRecording:
    def test_record_api_call(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.start_stage("fetch")
        ctx.record_api_call(
            service="census_acs",
            endpoint="acs5",
            elapsed_ms=150,
            status_code=200,
            provider_status="OK",
        )

        assert len(ctx.api_calls) == 1
        call = ctx.api_calls[0]
        assert call.service == "census_acs"
        assert call.endpoint == "acs5"
        assert call.elapsed_ms == 150
        assert call.status_code == 200
        assert call.provider_status == "OK"
        assert call.stage == "fetch"

    def test_cache_events_not_network_calls(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.record_api_call("fcc_area", "block/find", 80, 200)
        ctx.record_api_call("area_cache", "36119025300", 0, 0, "cache_hit")

        assert ctx.network_calls() == 1


# =========================================================================
# Summary
# =========================================================================

class TestSummary:
    def test_success_outcome(self):
        ctx = TraceContext(trace_id="test-1")
        t = time.time()
        ctx.record_stage("resolve", t, t + 0.1, items=3)
        ctx.record_stage("fetch", t + 0.1, t + 0.2, items=2)

        s = ctx.summary_dict()
        assert s["trace_id"] == "test-1"
        assert s["final_outcome"] == "success"
        assert s["total_api_calls"] == 0
        assert s["total_elapsed_ms"] >= 0
        assert [st["stage"] for st in s["stages"]] == ["resolve", "fetch"]

    def test_partial_outcome(self):
        ctx = TraceContext(trace_id="test-1")
        t = time.time()
        ctx.record_stage("fetch", t, t, items=3, errors=1)

        assert ctx.summary_dict()["final_outcome"] == "partial"

    def test_error_outcome(self):
        ctx = TraceContext(trace_id="test-1")
        t = time.time()
        ctx.record_stage("resolve", t, t, items=2, errors=2)

        assert ctx.summary_dict()["final_outcome"] == "error"

    def test_empty_outcome(self):
        ctx = TraceContext(trace_id="test-1")
        assert ctx.summary_dict()["final_outcome"] == "empty"

    def test_cache_events_counted_separately(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.record_api_call("census_acs", "acs5", 120, 200)
        ctx.record_api_call("area_cache", "36119025300", 0, 0, "cache_hit")
        ctx.record_api_call("area_cache", "36119025400", 0, 0, "stale_cache")

        s = ctx.summary_dict()
        assert s["total_api_calls"] == 1
        assert s["cache_events"] == 2

    def test_model_version_included(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.model_version = "1.0.0"
        assert ctx.summary_dict()["model_version"] == "1.0.0"

    def test_model_version_absent_when_empty(self):
        ctx = TraceContext(trace_id="test-1")
        assert "model_version" not in ctx.summary_dict()

    def test_log_summary(self, caplog):
        ctx = TraceContext(trace_id="test-log")
        with caplog.at_level("INFO", logger="ts_trace"):
            ctx.log_summary()
        assert "trace=test-log" in caplog.text


# =========================================================================
# Thread-local storage
# =========================================================================

class TestThreadLocal:
    def test_set_and_get(self):
        ctx = TraceContext(trace_id="test-tls")
        set_trace(ctx)
        assert get_trace() is ctx
        clear_trace()

    def test_clear(self):
        set_trace(TraceContext(trace_id="test"))
        clear_trace()
        assert get_trace() is None

    def test_initially_none(self):
        clear_trace()
        assert get_trace() is None

    def test_isolation_between_threads(self):
        """Each thread should have its own trace context."""
        results = {}

        def worker(name):
            ctx = TraceContext(trace_id=name)
            set_trace(ctx)
            time.sleep(0.01)
            results[name] = get_trace().trace_id
            clear_trace()

        t1 = threading.Thread(target=worker, args=("thread-1",))
        t2 = threading.Thread(target=worker, args=("thread-2",))
        t1.start()
        t2.start()
        t1.join()
        t2.join()

        assert results["thread-1"] == "thread-1"
        assert results["thread-2"] == "thread-2"
