"""
ManyChat subscribers adapter (page-number pagination).
"""

from __future__ import annotations

from typing import Any, Mapping

from revops_app.sync.contracts import FetchedPage, RawContact, coerce_tags
from revops_app.sync.errors import AdapterConfigError, PlatformRejectedError

from .base import SourceAdapter
from .http import ApiClient


def _text(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class ManyChatAdapter(SourceAdapter):
    name = "manychat"
    cursor_kind = "page"

    def __init__(self, *, client: ApiClient, api_key: str | None, **kwargs) -> None:
        super().__init__(**kwargs)
        if not api_key:
            raise AdapterConfigError("MANYCHAT_API_KEY must be configured.", source=self.name)
        self.client = client
        self.api_key = api_key

    def initial_cursor(self) -> dict[str, Any]:
        return {"page": 1}

    def fetch_page(self, cursor: Mapping[str, Any] | None, page_size: int) -> FetchedPage:
        page = max(1, int((cursor or {}).get("page") or 1))
        payload = self.client.get_json(
            "/fb/subscriber/getSubscribers",
            params={"page": page, "limit": page_size},
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
        )
        if payload.get("status") != "success":
            raise PlatformRejectedError(
                f"ManyChat API returned error: {payload.get('message') or 'Unknown'}",
                source=self.name,
            )
        subscribers = list(payload.get("data") or [])
        return self.build_page(
            subscribers,
            next_cursor={"page": page + 1},
            has_more=len(subscribers) >= page_size,
        )

    @classmethod
    def parse_record(cls, record: Mapping[str, Any]) -> RawContact | None:
        first = _text(record.get("first_name")) or ""
        last = _text(record.get("last_name")) or ""
        full_name = " ".join(part for part in (first, last) if part) or _text(record.get("name"))
        custom_fields = record.get("custom_fields") or []
        tracking: dict[str, Any] = {}
        if isinstance(custom_fields, list):
            for item in custom_fields:
                if isinstance(item, Mapping) and item.get("name") and item.get("value") not in (None, ""):
                    tracking[str(item["name"])] = item["value"]
        return RawContact(
            source=cls.name,
            external_id=_text(record.get("id")),
            email=_text(record.get("email")),
            phone=_text(record.get("phone")) or _text(record.get("whatsapp_phone")),
            full_name=full_name,
            tags=coerce_tags(record.get("tags")),
            wa_opt_in=record.get("optin_whatsapp") is True,
            sms_opt_in=record.get("optin_sms") is True,
            email_opt_in=record.get("optin_email") is not False,
            tracking_data=tracking,
            raw=dict(record),
        )
