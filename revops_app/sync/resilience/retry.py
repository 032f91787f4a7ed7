"""Retry policy for outbound API calls.

Retries only classified transient failures: connection errors, timeouts,
HTTP 429 and 5xx (surfaced as ``TransientAdapterError``). Platform
rejections and configuration errors are raised immediately.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, TypeVar

import requests

from revops_app.sync.errors import SyncError, TransientAdapterError, summarize_error
from revops_app.sync.metrics import record_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryAttempt:
    """One failed attempt kept in the retry history."""

    attempt: int
    error: str
    reason: str
    delay_seconds: float


class RetryExhaustedError(SyncError):
    """Raised when all retry attempts fail.

    Attributes:
        attempts: Total number of attempts made.
        last_error: The exception from the final attempt.
        history: Every failed attempt, oldest first.
    """

    def __init__(
        self,
        attempts: int,
        last_error: BaseException,
        history: List[RetryAttempt],
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        self.history = history
        super().__init__(
            f"Request failed after {attempts} attempt(s). Last error: {summarize_error(last_error, limit=150)}"
        )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    budget_seconds: float = 90.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(config.get("SYNC_RETRY_MAX_ATTEMPTS", 5))),
            base_delay=max(0.0, float(config.get("SYNC_RETRY_BASE_DELAY", 0.5))),
            max_delay=max(0.0, float(config.get("SYNC_RETRY_MAX_DELAY", 30.0))),
            budget_seconds=max(0.0, float(config.get("SYNC_RETRY_BUDGET_SECONDS", 90.0))),
        )

    def backoff(self, attempt: int, rng: random.Random | None = None) -> float:
        """Full-jitter exponential delay for the given (1-based) attempt."""
        ceiling = min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))
        if ceiling <= 0:
            return 0.0
        return (rng or random).uniform(0.0, ceiling)


def classify_retryable(exc: BaseException) -> str | None:
    """Return a retry reason for transient failures, else ``None``."""

    if isinstance(exc, TransientAdapterError):
        if exc.status_code == 429:
            return "rate_limited"
        if exc.status_code is not None and exc.status_code >= 500:
            return "server_error"
        return "transient"
    if isinstance(exc, requests.Timeout):
        return "timeout"
    if isinstance(exc, requests.ConnectionError):
        return "connection"
    return None


def call_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    source: str = "unknown",
    idempotent: bool = True,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    rng: random.Random | None = None,
) -> T:
    """Run ``operation`` with exponential backoff and full jitter.

    Non-idempotent operations get exactly one attempt. ``Retry-After``
    hints carried by ``TransientAdapterError`` replace the computed delay.

    Raises:
        RetryExhaustedError: If every permitted attempt failed transiently,
            or the next delay would exceed the total budget.
    """
    history: List[RetryAttempt] = []
    max_attempts = policy.max_attempts if idempotent else 1
    started = clock()

    for attempt in range(1, max_attempts + 1):
        try:
            result = operation()
        except Exception as exc:
            reason = classify_retryable(exc)
            if reason is None:
                raise

            delay = policy.backoff(attempt, rng)
            retry_after = getattr(exc, "retry_after", None)
            if retry_after is not None:
                delay = max(0.0, float(retry_after))
            history.append(
                RetryAttempt(attempt=attempt, error=summarize_error(exc), reason=reason, delay_seconds=delay)
            )

            if attempt >= max_attempts:
                raise RetryExhaustedError(attempts=attempt, last_error=exc, history=history) from exc
            elapsed = clock() - started
            if elapsed + delay > policy.budget_seconds:
                logger.warning(
                    "Retry budget exhausted for %s after %d attempt(s)",
                    source,
                    attempt,
                    extra={"sync_source": source, "sync_retry_elapsed": round(elapsed, 3)},
                )
                raise RetryExhaustedError(attempts=attempt, last_error=exc, history=history) from exc

            record_retry(source, reason)
            logger.warning(
                "Attempt %d/%d for %s failed (%s); retrying in %.2fs",
                attempt,
                max_attempts,
                source,
                reason,
                delay,
                extra={"sync_source": source, "sync_retry_reason": reason},
            )
            if delay > 0:
                sleep(delay)
            continue

        if attempt > 1:
            logger.info("Call for %s succeeded on attempt %d/%d", source, attempt, max_attempts)
        return result

    # Unreachable: the loop either returns or raises.
    raise AssertionError("retry loop exited without result")
