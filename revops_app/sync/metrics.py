"""Prometheus metrics helpers for the sync engine."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_pages_counter = Counter(
    "sync_pages_total",
    "Pages fetched from external sources by outcome.",
    ["source", "outcome"],
)
_page_duration = Histogram(
    "sync_page_duration_seconds",
    "Duration of one page invocation (fetch, stage and merge) in seconds.",
    ["source"],
    buckets=(0.25, 0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)
_merge_actions = Counter(
    "sync_merge_actions_total",
    "Identity merge outcomes by source and action.",
    ["source", "action"],
)
_retries_counter = Counter(
    "sync_http_retries_total",
    "Retried outbound API calls by source and reason.",
    ["source", "reason"],
)
_rate_limit_wait = Histogram(
    "sync_rate_limit_wait_seconds",
    "Time spent waiting for a rate limiter token.",
    ["source"],
    buckets=(0, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
_circuit_state = Gauge(
    "sync_circuit_state",
    "Circuit breaker state (0 closed, 1 half-open, 2 open).",
    ["name"],
)
_runs_reaped = Counter(
    "sync_runs_reaped_total",
    "Active runs failed by the stale-run reaper.",
    ["source"],
)
_runs_finished = Counter(
    "sync_runs_finished_total",
    "Runs reaching a terminal status.",
    ["source", "status"],
)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


def record_page(*, source: str, outcome: str, duration_seconds: float | None = None) -> None:
    """Count a page invocation and observe its duration."""

    _pages_counter.labels(source=source, outcome=outcome).inc()
    if duration_seconds is not None:
        _page_duration.labels(source=source).observe(max(duration_seconds, 0.0))


def record_merge_action(source: str, action: str, count: int = 1) -> None:
    if count <= 0:
        return
    _merge_actions.labels(source=source, action=action).inc(count)


def record_retry(source: str, reason: str) -> None:
    _retries_counter.labels(source=source, reason=reason).inc()


def record_rate_limit_wait(source: str, waited_seconds: float) -> None:
    _rate_limit_wait.labels(source=source).observe(max(waited_seconds, 0.0))


def record_circuit_state(name: str, state: Literal["closed", "half_open", "open"]) -> None:
    """Publish the breaker state as a gauge value."""

    _circuit_state.labels(name=name).set(_CIRCUIT_STATE_VALUES.get(state, 0))


def record_run_reaped(source: str) -> None:
    _runs_reaped.labels(source=source).inc()


def record_run_finished(source: str, status: str) -> None:
    _runs_finished.labels(source=source, status=status).inc()
