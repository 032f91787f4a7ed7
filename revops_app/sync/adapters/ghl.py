"""
GoHighLevel contacts adapter (offset pagination).
"""

from __future__ import annotations

from typing import Any, Mapping

from revops_app.sync.contracts import FetchedPage, RawContact, coerce_tags
from revops_app.sync.errors import AdapterConfigError

from .base import SourceAdapter
from .http import ApiClient

GHL_API_VERSION = "2021-07-28"

# dndSettings channel key -> RawContact field
_DND_CHANNELS = {
    "whatsApp": "wa_opt_in",
    "sms": "sms_opt_in",
    "email": "email_opt_in",
}

_ADDRESS_KEYS = ("country", "city", "state", "address1", "postalCode")


def _text(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_tracking_data(record: Mapping[str, Any]) -> dict[str, Any]:
    """Collect attribution, address and custom fields from an API contact or webhook body."""

    attribution = record.get("attributionSource") or {}
    if not isinstance(attribution, Mapping):
        attribution = {}
    tracking: dict[str, Any] = {
        "utm_source": attribution.get("utmSource") or attribution.get("sessionSource"),
        "utm_medium": attribution.get("utmMedium") or attribution.get("medium"),
        "utm_campaign": attribution.get("utmCampaign") or attribution.get("campaign"),
        "utm_content": attribution.get("utmContent"),
        "utm_term": attribution.get("utmTerm"),
        "ghl_source": record.get("source"),
        "ghl_date_added": record.get("dateAdded"),
        "ghl_location_id": record.get("locationId"),
        "ghl_assigned_to": record.get("assignedTo"),
        "company_name": record.get("companyName"),
    }
    address = {key: record[key] for key in _ADDRESS_KEYS if record.get(key)}
    if address:
        tracking["address"] = address

    custom_fields: dict[str, Any] = {}
    for item in record.get("customFields") or ():
        if not isinstance(item, Mapping):
            continue
        key = item.get("key") or item.get("id")
        if key and item.get("value") not in (None, ""):
            custom_fields[str(key)] = item["value"]
    if custom_fields:
        tracking["custom_fields"] = custom_fields
    return {key: value for key, value in tracking.items() if value not in (None, "")}


class GHLAdapter(SourceAdapter):
    name = "ghl"
    cursor_kind = "offset"

    def __init__(self, *, client: ApiClient, api_key: str | None, location_id: str | None, **kwargs) -> None:
        super().__init__(**kwargs)
        if not api_key or not location_id:
            raise AdapterConfigError("GHL_API_KEY and GHL_LOCATION_ID must be configured.", source=self.name)
        self.client = client
        self.api_key = api_key
        self.location_id = location_id

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Version": GHL_API_VERSION,
            "Accept": "application/json",
        }

    def initial_cursor(self) -> dict[str, Any]:
        return {"offset": 0}

    def fetch_page(self, cursor: Mapping[str, Any] | None, page_size: int) -> FetchedPage:
        offset = int((cursor or {}).get("offset") or 0)
        payload = self.client.get_json(
            "/contacts/",
            params={"locationId": self.location_id, "limit": page_size, "skip": offset},
            headers=self.headers,
        )
        contacts = list(payload.get("contacts") or [])
        self.logger.info(
            "Fetched %d GHL contacts at offset %d",
            len(contacts),
            offset,
            extra={"sync_source": self.name, "sync_offset": offset},
        )
        return self.build_page(
            contacts,
            next_cursor={"offset": offset + len(contacts)},
            has_more=len(contacts) >= page_size,
        )

    @classmethod
    def parse_record(cls, record: Mapping[str, Any]) -> RawContact | None:
        first = _text(record.get("firstName")) or ""
        last = _text(record.get("lastName")) or ""
        full_name = " ".join(part for part in (first, last) if part) or _text(record.get("name"))
        if not full_name:
            full_name = _text(record.get("contactName"))

        # A channel is opted out while its DND status is active or global DND is on.
        global_dnd = record.get("dnd") is True
        dnd = record.get("dndSettings") or {}
        opt_ins: dict[str, bool] = {}
        for channel, field_name in _DND_CHANNELS.items():
            settings = dnd.get(channel) if isinstance(dnd, Mapping) else None
            status = settings.get("status") if isinstance(settings, Mapping) else None
            opt_ins[field_name] = not global_dnd and status != "active"

        return RawContact(
            source=cls.name,
            external_id=_text(record.get("id")),
            email=_text(record.get("email")),
            phone=_text(record.get("phone")) or _text(record.get("phoneNumber")),
            full_name=full_name,
            tags=coerce_tags(record.get("tags")),
            tracking_data=build_tracking_data(record),
            raw=dict(record),
            **opt_ins,
        )
