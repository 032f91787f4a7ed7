"""
Rate-limited, retrying HTTP client shared by the API adapters.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Mapping

import requests

from revops_app.sync.errors import PlatformRejectedError, TransientAdapterError, summarize_error
from revops_app.sync.resilience.rate_limit import TokenBucket
from revops_app.sync.resilience.retry import RetryPolicy, call_with_retry

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""

    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class ApiClient:
    """Thin ``requests`` wrapper: one token per call, retries on transient failures."""

    def __init__(
        self,
        *,
        source: str,
        base_url: str,
        session: requests.Session | None = None,
        limiter: TokenBucket | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.source = source
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.limiter = limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def url_for(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _send(
        self,
        method: str,
        url: str,
        *,
        allow_statuses: tuple[int, ...],
        **kwargs: Any,
    ) -> requests.Response:
        if self.limiter is not None:
            self.limiter.acquire()
        response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        status = response.status_code
        if status in allow_statuses:
            return response
        if status == 429 or status >= 500:
            raise TransientAdapterError(
                f"{self.source} returned HTTP {status}",
                source=self.source,
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 400:
            raise PlatformRejectedError(
                f"{self.source} rejected request (HTTP {status}): {summarize_error(response.text, limit=120)}",
                source=self.source,
                status_code=status,
            )
        return response

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        data: Any = None,
        headers: Mapping[str, str] | None = None,
        auth: Any = None,
        idempotency_key: str | None = None,
        idempotent: bool | None = None,
        allow_statuses: tuple[int, ...] = (),
    ) -> requests.Response:
        """
        Issue a request through the limiter and retry policy.

        Safe methods are always retried; other methods only when an
        ``idempotency_key`` is supplied (sent as ``Idempotency-Key``) or the
        caller passes ``idempotent=True``.
        """

        method = method.upper()
        merged_headers = dict(headers or {})
        if idempotency_key:
            merged_headers["Idempotency-Key"] = idempotency_key
        if idempotent is None:
            idempotent = method in SAFE_METHODS or bool(idempotency_key)
        url = self.url_for(path)

        def _operation() -> requests.Response:
            return self._send(
                method,
                url,
                allow_statuses=allow_statuses,
                params=params,
                json=json,
                data=data,
                headers=merged_headers,
                auth=auth,
            )

        started = time.perf_counter()
        response = call_with_retry(
            _operation,
            policy=self.retry_policy,
            source=self.source,
            idempotent=idempotent,
            sleep=self.sleep,
        )
        self.logger.debug(
            "%s %s -> %s",
            method,
            url,
            response.status_code,
            extra={
                "sync_source": self.source,
                "sync_http_status": response.status_code,
                "sync_http_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return response

    def get_json(self, path: str, **kwargs: Any) -> Mapping[str, Any]:
        response = self.request("GET", path, **kwargs)
        return self.decode(response)

    def decode(self, response: requests.Response) -> Mapping[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise PlatformRejectedError(
                f"{self.source} returned a non-JSON body (HTTP {response.status_code})",
                source=self.source,
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, Mapping):
            raise PlatformRejectedError(
                f"{self.source} returned an unexpected JSON shape",
                source=self.source,
                status_code=response.status_code,
            )
        return payload
