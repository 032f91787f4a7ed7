"""
Exception hierarchy for the sync engine.

Only ``PlatformRejectedError`` and ``RetryExhaustedError`` (raised from
``revops_app.sync.resilience.retry``) terminate a run; the remaining classes
describe conditions callers handle locally.
"""

from __future__ import annotations

MAX_ERROR_LENGTH = 200


def summarize_error(error: object, *, limit: int = MAX_ERROR_LENGTH) -> str:
    """Collapse an error (or raw response body) into a short single line."""

    text = " ".join(str(error or "").split())
    if not text:
        text = type(error).__name__ if isinstance(error, BaseException) else "unknown error"
    if len(text) > limit:
        return text[: limit - 3].rstrip() + "..."
    return text


class SyncError(RuntimeError):
    """Base class for sync engine failures."""


class AdapterError(SyncError):
    """Raised by source adapters when a page cannot be fetched."""

    def __init__(self, message: str, *, source: str | None = None, status_code: int | None = None):
        super().__init__(summarize_error(message))
        self.source = source
        self.status_code = status_code


class TransientAdapterError(AdapterError):
    """Retryable failure: connection problems, timeouts, 429 or 5xx."""

    def __init__(
        self,
        message: str,
        *,
        source: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, source=source, status_code=status_code)
        self.retry_after = retry_after


class PlatformRejectedError(AdapterError):
    """The external platform refused the request (4xx or an error envelope)."""


class AdapterConfigError(AdapterError):
    """The adapter is missing credentials or other required settings."""


class RunStateError(ValueError):
    """Raised when a run transition is not allowed from its current status."""

    def __init__(self, message: str, *, run_id: int | None = None, status: str | None = None):
        super().__init__(message)
        self.run_id = run_id
        self.status = status


class MissingExternalIdentifier(ValueError):
    """Raised when a raw contact arrives without its source identifier."""

    def __init__(self, source: str) -> None:
        super().__init__(
            f"No external identifier supplied for source '{source}'. Identity merge requires external_id."
        )
        self.source = source


class CommandValidationError(ValueError):
    """Raised when an operator command payload fails validation."""


class UnknownSourceError(ValueError):
    """Raised when a request names a source that is not enabled in SYNC_SOURCES."""

    def __init__(self, source: str, enabled: tuple[str, ...] = ()) -> None:
        allowed = ", ".join(enabled) or "none"
        super().__init__(f"Unknown or disabled sync source '{source}'. Enabled sources: {allowed}.")
        self.source = source
