"""Prometheus metrics for completion calls, pipeline runs and locking.

Provides:
- track_completion_call(): Context manager for completion call metrics
- track_stage(): Context manager timing a pipeline stage
- render_metrics(): Prometheus exposition text for the invoking web layer
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest

# ── Completion Metrics ───────────────────────────────────────────────────────

completion_requests_total = Counter(
    "completion_requests_total",
    "Total completion service requests",
    ["operation", "status"],
)

completion_request_duration_seconds = Histogram(
    "completion_request_duration_seconds",
    "Completion service request duration in seconds",
    ["operation"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

completion_tokens_used_total = Counter(
    "completion_tokens_used_total",
    "Total completion tokens consumed",
    ["operation", "token_type"],
)

# ── Pipeline Metrics ─────────────────────────────────────────────────────────

pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Pipeline runs by outcome",
    ["outcome"],
)

pipeline_stage_duration_seconds = Histogram(
    "pipeline_stage_duration_seconds",
    "Pipeline stage duration in seconds",
    ["stage"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0),
)

pipeline_lock_attempts_total = Counter(
    "pipeline_lock_attempts_total",
    "Pipeline lock acquisition attempts",
    ["outcome"],
)


@asynccontextmanager
async def track_completion_call(operation: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks completion call metrics.

    Usage:
        async with track_completion_call("define_topics") as tracker:
            result = await call_llm(...)
            tracker["prompt_tokens"] = usage.prompt_tokens
            tracker["completion_tokens"] = usage.completion_tokens

    Records duration, request count (success/error) and token usage
    (if set in the tracker dict).
    """
    tracker: dict[str, Any] = {
        "prompt_tokens": 0,
        "completion_tokens": 0,
    }
    start_time = time.perf_counter()
    status = "success"

    try:
        yield tracker
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time

        completion_requests_total.labels(operation=operation, status=status).inc()
        completion_request_duration_seconds.labels(operation=operation).observe(duration)

        if tracker.get("prompt_tokens"):
            completion_tokens_used_total.labels(
                operation=operation, token_type="prompt"
            ).inc(tracker["prompt_tokens"])

        if tracker.get("completion_tokens"):
            completion_tokens_used_total.labels(
                operation=operation, token_type="completion"
            ).inc(tracker["completion_tokens"])


@asynccontextmanager
async def track_stage(stage: str) -> AsyncGenerator[None, None]:
    """Observe the wall-clock duration of a pipeline stage."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        pipeline_stage_duration_seconds.labels(stage=stage).observe(
            time.perf_counter() - start_time
        )


def render_metrics() -> bytes:
    """Generate Prometheus exposition format output."""
    return generate_latest(REGISTRY)
