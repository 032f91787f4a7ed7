"""Circuit breaker guarding the webhook write path.

Before a webhook touches the database a bounded ``SELECT 1`` probe runs. A
failed or slow probe opens the breaker; while open, deliveries are
acknowledged without writes until the cool-down elapses and a half-open
probe is allowed through.

States:
- CLOSED: probes run on every call
- OPEN: calls short-circuit without probing
- HALF_OPEN: the cool-down elapsed, the next probe decides
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Callable

from flask import Flask
from sqlalchemy import text

from revops_app.sync.errors import summarize_error
from revops_app.sync.metrics import record_circuit_state

logger = logging.getLogger(__name__)

EXTENSION_KEY = "sync_circuit_breaker"


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class DatastoreHealthProbe:
    """Issue ``SELECT 1`` on a worker thread and give up after ``timeout_seconds``."""

    def __init__(self, engine, *, timeout_seconds: float = 2.0) -> None:
        self.engine = engine
        self.timeout_seconds = timeout_seconds

    def _select_one(self) -> None:
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))

    def __call__(self) -> None:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync-health-probe")
        try:
            future = executor.submit(self._select_one)
            try:
                future.result(timeout=self.timeout_seconds)
            except FuturesTimeoutError as exc:
                raise TimeoutError(f"Datastore probe exceeded {self.timeout_seconds:.1f}s") from exc
        finally:
            executor.shutdown(wait=False)


@dataclass
class CircuitSnapshot:
    state: CircuitState
    consecutive_failures: int
    opened_at: float | None
    last_error: str | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }


class CircuitBreaker:
    """Thread-safe breaker around a health probe callable."""

    def __init__(
        self,
        probe: Callable[[], Any],
        *,
        name: str = "datastore",
        failure_threshold: int = 1,
        reset_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.probe = probe
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.reset_seconds = max(0.0, float(reset_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._last_error: str | None = None
        record_circuit_state(self.name, self._state.value)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            self._maybe_half_open()
            return CircuitSnapshot(
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                opened_at=self._opened_at,
                last_error=self._last_error,
            )

    def _maybe_half_open(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self.reset_seconds:
            self._state = CircuitState.HALF_OPEN
            record_circuit_state(self.name, self._state.value)

    def _record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit %s closed after successful probe", self.name)
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None
            self._last_error = None
        record_circuit_state(self.name, CircuitState.CLOSED.value)

    def _record_failure(self, exc: BaseException) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = summarize_error(exc)
            if self._state == CircuitState.HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
            state = self._state
        record_circuit_state(self.name, state.value)
        logger.warning(
            "Circuit %s probe failed: %s",
            self.name,
            self._last_error,
            extra={"sync_circuit": self.name, "sync_circuit_state": state.value},
        )

    def allow(self) -> bool:
        """Probe the datastore unless the breaker is open; True means writes may proceed."""

        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                return False
        try:
            self.probe()
        except Exception as exc:
            self._record_failure(exc)
            return False
        self._record_success()
        return True

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None
            self._last_error = None
        record_circuit_state(self.name, CircuitState.CLOSED.value)


def get_datastore_breaker(app: Flask) -> CircuitBreaker:
    """Return the app's datastore breaker, creating it from config on first use."""

    breaker: CircuitBreaker | None = app.extensions.get(EXTENSION_KEY)
    if breaker is None:
        from revops_app.models import db

        with app.app_context():
            engine = db.engine
        probe = DatastoreHealthProbe(
            engine,
            timeout_seconds=float(app.config.get("SYNC_HEALTH_PROBE_TIMEOUT", 2.0)),
        )
        breaker = CircuitBreaker(
            probe,
            failure_threshold=int(app.config.get("SYNC_CIRCUIT_FAILURE_THRESHOLD", 1)),
            reset_seconds=float(app.config.get("SYNC_CIRCUIT_RESET_SECONDS", 30.0)),
        )
        app.extensions[EXTENSION_KEY] = breaker
    return breaker
