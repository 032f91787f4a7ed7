"""
Stripe customers adapter (``starting_after`` token pagination).
"""

from __future__ import annotations

from typing import Any, Mapping

from revops_app.sync.contracts import FetchedPage, RawContact
from revops_app.sync.errors import AdapterConfigError

from .base import SourceAdapter
from .http import ApiClient

MAX_STRIPE_PAGE_SIZE = 100


class StripeAdapter(SourceAdapter):
    name = "stripe"
    cursor_kind = "token"

    def __init__(self, *, client: ApiClient, secret_key: str | None, **kwargs) -> None:
        super().__init__(**kwargs)
        if not secret_key:
            raise AdapterConfigError("STRIPE_SECRET_KEY must be configured.", source=self.name)
        self.client = client
        self.secret_key = secret_key

    def fetch_page(self, cursor: Mapping[str, Any] | None, page_size: int) -> FetchedPage:
        limit = min(MAX_STRIPE_PAGE_SIZE, max(1, page_size))
        params: dict[str, Any] = {"limit": limit}
        starting_after = (cursor or {}).get("starting_after")
        if starting_after:
            params["starting_after"] = starting_after
        payload = self.client.get_json(
            "/v1/customers",
            params=params,
            headers={"Authorization": f"Bearer {self.secret_key}"},
        )
        customers = list(payload.get("data") or [])
        # The cursor is the id of the last customer on the page.
        next_cursor: Mapping[str, Any] | None = dict(cursor or {})
        if customers:
            next_cursor = {"starting_after": customers[-1].get("id")}
        return self.build_page(
            customers,
            next_cursor=next_cursor,
            has_more=bool(payload.get("has_more")) and bool(customers),
        )

    @classmethod
    def parse_record(cls, record: Mapping[str, Any]) -> RawContact | None:
        email = (record.get("email") or "").strip()
        if not email:
            return None
        metadata = record.get("metadata") if isinstance(record.get("metadata"), Mapping) else {}
        tracking = {"stripe_customer_id": record.get("id")}
        tracking.update({str(key): value for key, value in (metadata or {}).items()})
        return RawContact(
            source=cls.name,
            external_id=record.get("id"),
            email=email,
            phone=(record.get("phone") or None),
            full_name=(record.get("name") or None),
            tracking_data=tracking,
            raw=dict(record),
        )
