"""Canonical contact ingest contract.

Every input (API page, webhook delivery, CSV row, merge RPC body) funnels
into ``RawContact`` before it reaches the identity merger. Field specs carry
the header aliases accepted from CSV files and loosely-typed JSON payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence, Tuple


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a canonical contact field."""

    name: str
    description: str
    required: bool = False
    aliases: Tuple[str, ...] = ()

    def headers(self) -> Tuple[str, ...]:
        return (self.name, *self.aliases)


CONTACT_CANONICAL_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec(
        name="source",
        description="Source platform key (ghl, manychat, stripe, paypal, csv, web).",
        aliases=("source_system", "platform"),
    ),
    FieldSpec(
        name="external_id",
        description="Stable identifier supplied by the source platform.",
        required=True,
        aliases=("externalid", "source_id", "contact_id", "contactid", "record_id", "id"),
    ),
    FieldSpec(
        name="email",
        description="Primary email address.",
        aliases=("email_address", "emailaddress", "primary_email"),
    ),
    FieldSpec(
        name="phone",
        description="Primary phone number in any common format.",
        aliases=("phone_number", "phonenumber", "phone_e164", "mobile", "whatsapp_phone"),
    ),
    FieldSpec(
        name="full_name",
        description="Display name.",
        aliases=("fullname", "name", "display_name"),
    ),
    FieldSpec(
        name="first_name",
        description="Given name, combined with last_name when full_name is absent.",
        aliases=("firstname", "given_name", "first"),
    ),
    FieldSpec(
        name="last_name",
        description="Family name.",
        aliases=("lastname", "surname", "last"),
    ),
    FieldSpec(
        name="tags",
        description="Tag list or comma-separated tag string.",
        aliases=("tag", "labels"),
    ),
    FieldSpec(
        name="wa_opt_in",
        description="WhatsApp consent (true/false/blank).",
        aliases=("waoptin", "whatsapp_opt_in", "optin_whatsapp"),
    ),
    FieldSpec(
        name="sms_opt_in",
        description="SMS consent (true/false/blank).",
        aliases=("smsoptin", "optin_sms"),
    ),
    FieldSpec(
        name="email_opt_in",
        description="Email consent (true/false/blank).",
        aliases=("emailoptin", "optin_email"),
    ),
    FieldSpec(
        name="lifecycle_stage",
        description="Lifecycle stage (LEAD, TRIAL, CUSTOMER).",
        aliases=("lifecyclestage", "stage"),
    ),
    FieldSpec(
        name="tracking_data",
        description="Map of tracking keys (UTM parameters, click ids, custom fields).",
        aliases=("trackingdata", "tracking"),
    ),
)

_TRUE_TOKENS = frozenset({"1", "true", "yes", "y", "on", "subscribed", "opted_in"})
_FALSE_TOKENS = frozenset({"0", "false", "no", "n", "off", "unsubscribed", "opted_out"})


def normalize_header(header: str) -> str:
    """Normalize a header or JSON key for comparison (case/space/dash agnostic)."""

    token = str(header).strip().lower()
    for char in (" ", "-", "."):
        token = token.replace(char, "_")
    return token


def get_contact_alias_map() -> Mapping[str, str]:
    mapping: dict[str, str] = {}
    for field_spec in CONTACT_CANONICAL_FIELDS:
        for header in field_spec.headers():
            mapping[normalize_header(header)] = field_spec.name
    return mapping


def get_contact_required_headers() -> Tuple[str, ...]:
    return tuple(field_spec.name for field_spec in CONTACT_CANONICAL_FIELDS if field_spec.required)


def required_headers_missing(headers: Iterable[str]) -> Tuple[str, ...]:
    """Return the required canonical fields none of whose aliases appear in ``headers``."""

    alias_map = get_contact_alias_map()
    present = {alias_map.get(normalize_header(header)) for header in headers}
    return tuple(name for name in get_contact_required_headers() if name not in present)


def coerce_opt_in(value: object | None) -> bool | None:
    """Tri-state consent parsing; unknown tokens stay unknown."""

    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    token = str(value).strip().lower()
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    return None


def coerce_tags(value: object | None) -> Tuple[str, ...]:
    """Accept a list of strings, a list of ``{"name": ...}`` objects, or a CSV string."""

    if value is None:
        return ()
    if isinstance(value, str):
        items: Iterable[object] = value.split(",")
    elif isinstance(value, Mapping):
        items = (value.get("name"),)
    elif isinstance(value, Iterable):
        items = value
    else:
        items = (value,)

    tags: list[str] = []
    seen: set[str] = set()
    for item in items:
        if isinstance(item, Mapping):
            item = item.get("name")
        if item is None:
            continue
        tag = str(item).strip()
        if tag and tag not in seen:
            seen.add(tag)
            tags.append(tag)
    return tuple(tags)


def _clean_text(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class RawContact:
    """One external contact mapped onto the canonical ingest shape."""

    source: str
    external_id: str | None
    email: str | None = None
    phone: str | None = None
    full_name: str | None = None
    tags: Tuple[str, ...] = ()
    wa_opt_in: bool | None = None
    sms_opt_in: bool | None = None
    email_opt_in: bool | None = None
    lifecycle_stage: str | None = None
    tracking_data: Mapping[str, Any] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_mapping(cls, source: str, payload: Mapping[str, Any]) -> "RawContact":
        """Build a contact from a loosely-keyed mapping (CSV row, RPC body, webhook)."""

        alias_map = get_contact_alias_map()
        values: dict[str, Any] = {}
        for raw_key, value in payload.items():
            canonical = alias_map.get(normalize_header(raw_key))
            if canonical is None or canonical in values and values[canonical] not in (None, ""):
                continue
            values[canonical] = value

        full_name = _clean_text(values.get("full_name"))
        if not full_name:
            parts = [_clean_text(values.get("first_name")), _clean_text(values.get("last_name"))]
            full_name = " ".join(part for part in parts if part) or None

        tracking = values.get("tracking_data")
        external_id = _clean_text(values.get("external_id"))
        stage = _clean_text(values.get("lifecycle_stage"))
        return cls(
            source=(_clean_text(values.get("source")) or source).lower(),
            external_id=external_id,
            email=_clean_text(values.get("email")),
            phone=_clean_text(values.get("phone")),
            full_name=full_name,
            tags=coerce_tags(values.get("tags")),
            wa_opt_in=coerce_opt_in(values.get("wa_opt_in")),
            sms_opt_in=coerce_opt_in(values.get("sms_opt_in")),
            email_opt_in=coerce_opt_in(values.get("email_opt_in")),
            lifecycle_stage=stage.upper() if stage else None,
            tracking_data=dict(tracking) if isinstance(tracking, Mapping) else {},
            raw=dict(payload),
        )

    def to_payload(self) -> dict[str, Any]:
        """Canonical JSON form; ``from_mapping`` reads it back unchanged."""

        return {
            "source": self.source,
            "external_id": self.external_id,
            "email": self.email,
            "phone": self.phone,
            "full_name": self.full_name,
            "tags": list(self.tags),
            "wa_opt_in": self.wa_opt_in,
            "sms_opt_in": self.sms_opt_in,
            "email_opt_in": self.email_opt_in,
            "lifecycle_stage": self.lifecycle_stage,
            "tracking_data": dict(self.tracking_data),
        }


def contacts_from_rows(source: str, rows: Sequence[Mapping[str, Any]]) -> Tuple[RawContact, ...]:
    return tuple(RawContact.from_mapping(source, row) for row in rows)
