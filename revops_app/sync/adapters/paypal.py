"""
PayPal transaction search adapter (page number inside a fixed date window).

The window is frozen into the cursor when a run starts so every replay of a
page asks PayPal for exactly the same slice.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from revops_app.sync.contracts import FetchedPage, RawContact
from revops_app.sync.errors import AdapterConfigError, PlatformRejectedError

from .base import SourceAdapter
from .http import ApiClient

MAX_PAYPAL_PAGE_SIZE = 500
END_DATE_SAFETY_MARGIN = timedelta(minutes=10)
MAX_LOOKBACK = timedelta(days=3 * 365 - 7)
_PAID_STATUSES = frozenset({"s", "success", "completed"})


def format_paypal_date(value: datetime) -> str:
    """ISO-8601 without fractional seconds, as the reporting API requires."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_paypal_date(value: str) -> datetime:
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def map_paypal_status(status: str | None, event_code: str | None) -> str:
    status_lower = (status or "").lower()
    event_lower = (event_code or "").lower()
    if status_lower in _PAID_STATUSES or "completed" in event_lower:
        return "paid"
    if status_lower in {"d", "denied", "failed", "r", "reversed", "refunded"}:
        return "failed"
    return "pending"


def clamp_window(
    start: datetime | None,
    end: datetime | None,
    *,
    now: datetime,
    default_days: int,
) -> tuple[datetime, datetime]:
    """End is capped to ten minutes ago; start never reaches past the lookback limit."""

    safe_end = now - END_DATE_SAFETY_MARGIN
    earliest = now - MAX_LOOKBACK
    start = start or now - timedelta(days=default_days)
    end = min(end or safe_end, safe_end)
    start = max(start, earliest)
    if start > end:
        start = end
    return start, end


class PayPalAdapter(SourceAdapter):
    name = "paypal"
    cursor_kind = "page"

    def __init__(
        self,
        *,
        client: ApiClient,
        client_id: str | None,
        secret: str | None,
        default_window_days: int = 31,
        now: Callable[[], datetime] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        if not client_id or not secret:
            raise AdapterConfigError("PAYPAL_CLIENT_ID and PAYPAL_SECRET must be configured.", source=self.name)
        self.client = client
        self.client_id = client_id
        self.secret = secret
        self.default_window_days = default_window_days
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._access_token: str | None = None

    def initial_cursor(self) -> dict[str, Any]:
        start, end = clamp_window(None, None, now=self._now(), default_days=self.default_window_days)
        return {"page": 1, "start_date": format_paypal_date(start), "end_date": format_paypal_date(end)}

    def _get_access_token(self) -> str:
        if self._access_token:
            return self._access_token
        response = self.client.request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            idempotent=True,
        )
        token = self.client.decode(response).get("access_token")
        if not token:
            raise PlatformRejectedError("PayPal token response did not include an access token", source=self.name)
        self._access_token = str(token)
        return self._access_token

    def fetch_page(self, cursor: Mapping[str, Any] | None, page_size: int) -> FetchedPage:
        cursor = dict(cursor or self.initial_cursor())
        page = max(1, int(cursor.get("page") or 1))
        start, end = clamp_window(
            parse_paypal_date(cursor["start_date"]) if cursor.get("start_date") else None,
            parse_paypal_date(cursor["end_date"]) if cursor.get("end_date") else None,
            now=self._now(),
            default_days=self.default_window_days,
        )
        window = {"start_date": format_paypal_date(start), "end_date": format_paypal_date(end)}
        response = self.client.request(
            "GET",
            "/v1/reporting/transactions",
            params={
                **window,
                "page_size": min(MAX_PAYPAL_PAGE_SIZE, max(1, page_size)),
                "page": page,
                "fields": "transaction_info,payer_info,cart_info",
            },
            headers={"Authorization": f"Bearer {self._get_access_token()}", "Content-Type": "application/json"},
            allow_statuses=(400, 404),
        )
        if response.status_code in (400, 404):
            # An empty window is reported as an error rather than an empty list.
            if response.status_code == 404 or "NO_DATA" in (response.text or ""):
                return FetchedPage.empty({"page": page, **window})
            raise PlatformRejectedError(
                f"PayPal rejected transaction search (HTTP {response.status_code})",
                source=self.name,
                status_code=response.status_code,
            )
        payload = self.client.decode(response)
        transactions = list(payload.get("transaction_details") or [])
        total_pages = int(payload.get("total_pages") or 1)
        return self.build_page(
            transactions,
            next_cursor={"page": page + 1, **window},
            has_more=page < total_pages,
        )

    @classmethod
    def parse_record(cls, record: Mapping[str, Any]) -> RawContact | None:
        payer = record.get("payer_info") or {}
        info = record.get("transaction_info") or {}
        email = (payer.get("email_address") or "").strip().lower() or None
        account_id = payer.get("account_id")
        if not email and not account_id:
            return None
        name = payer.get("payer_name") or {}
        full_name = " ".join(
            part for part in (name.get("given_name") or "", name.get("surname") or "") if part
        ).strip() or name.get("alternate_full_name")
        status = map_paypal_status(info.get("transaction_status"), info.get("transaction_event_code"))
        phone_info = payer.get("phone_number")
        phone = phone_info.get("national_number") if isinstance(phone_info, Mapping) else None
        return RawContact(
            source=cls.name,
            external_id=str(account_id or email),
            email=email,
            phone=phone,
            full_name=full_name or None,
            lifecycle_stage="CUSTOMER" if status == "paid" else None,
            tracking_data={"paypal_payer_id": account_id} if account_id else {},
            raw=dict(record),
        )
