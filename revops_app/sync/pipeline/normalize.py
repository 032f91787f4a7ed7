"""
Normalization helpers applied to every contact before identity matching.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Tuple

from revops_app.sync.contracts import RawContact

MAX_EMAIL_LENGTH = 255

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
E164_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")
TEMPLATE_PLACEHOLDER = re.compile(r"\{\{.*?\}\}")
PHONE_EXTENSION = re.compile(r"\s*(?:ext\.?|extension|x|#)\s*\d+\s*$", re.IGNORECASE)
NON_DIGIT = re.compile(r"\D")

ABSENT_TOKENS = frozenset({"", "null", "undefined", "none", "nan", "n/a"})


def sanitize_text(value: object | None) -> str | None:
    """Trim text and treat template placeholders and null-ish tokens as absent."""

    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in ABSENT_TOKENS:
        return None
    if TEMPLATE_PLACEHOLDER.search(text):
        return None
    return text


def normalize_email(value: object | None) -> str | None:
    text = sanitize_text(value)
    if text is None:
        return None
    email = text.lower()
    if len(email) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(email):
        return None
    return email


def normalize_phone(value: object | None, *, default_country_code: str = "1") -> str | None:
    """
    Normalize a phone number to E.164.

    Extensions and formatting are stripped, a ``00`` international prefix
    becomes ``+`` and bare ten-digit numbers receive ``default_country_code``.
    Anything that still is not E.164 is treated as absent.
    """

    text = sanitize_text(value)
    if text is None:
        return None
    text = PHONE_EXTENSION.sub("", text)
    has_plus = text.startswith("+")
    digits = NON_DIGIT.sub("", text)
    if not digits:
        return None

    if not has_plus:
        if digits.startswith("00"):
            digits = digits[2:]
        elif len(digits) == 10:
            digits = f"{default_country_code.lstrip('+')}{digits}"
        else:
            digits = digits.lstrip("0")

    candidate = f"+{digits}"
    if not E164_PATTERN.match(candidate):
        return None
    return candidate


def sanitize_tags(tags: Tuple[str, ...] | list[str] | None) -> Tuple[str, ...]:
    cleaned: list[str] = []
    seen: set[str] = set()
    for tag in tags or ():
        text = sanitize_text(tag)
        if text and text not in seen:
            seen.add(text)
            cleaned.append(text)
    return tuple(cleaned)


def sanitize_tracking(tracking: Mapping[str, Any] | None) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, value in (tracking or {}).items():
        if isinstance(value, Mapping):
            nested = sanitize_tracking(value)
            if nested:
                cleaned[str(key)] = nested
            continue
        if isinstance(value, str):
            value = sanitize_text(value)
        if value is not None:
            cleaned[str(key)] = value
    return cleaned


@dataclass(frozen=True)
class NormalizedContact:
    """A ``RawContact`` after sanitizing, with normalized match keys."""

    source: str
    external_id: str | None
    email: str | None
    phone_e164: str | None
    full_name: str | None
    tags: Tuple[str, ...] = ()
    wa_opt_in: bool | None = None
    sms_opt_in: bool | None = None
    email_opt_in: bool | None = None
    lifecycle_stage: str | None = None
    tracking_data: Mapping[str, Any] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def has_strong_identifier(self) -> bool:
        return bool(self.email or self.phone_e164)

    def field_values(self) -> dict[str, Any]:
        """Values keyed by ``CanonicalCustomer`` attribute name."""
        return {
            "email": self.email,
            "phone_e164": self.phone_e164,
            "full_name": self.full_name,
            "tags": list(self.tags),
            "wa_opt_in": self.wa_opt_in,
            "sms_opt_in": self.sms_opt_in,
            "email_opt_in": self.email_opt_in,
            "lifecycle_stage": self.lifecycle_stage,
            "tracking_data": dict(self.tracking_data),
        }


def normalize_contact(contact: RawContact, *, default_country_code: str = "1") -> NormalizedContact:
    stage = sanitize_text(contact.lifecycle_stage)
    return NormalizedContact(
        source=contact.source.lower(),
        external_id=sanitize_text(contact.external_id),
        email=normalize_email(contact.email),
        phone_e164=normalize_phone(contact.phone, default_country_code=default_country_code),
        full_name=sanitize_text(contact.full_name),
        tags=sanitize_tags(contact.tags),
        wa_opt_in=contact.wa_opt_in,
        sms_opt_in=contact.sms_opt_in,
        email_opt_in=contact.email_opt_in,
        lifecycle_stage=stage.upper() if stage else None,
        tracking_data=sanitize_tracking(contact.tracking_data),
        raw=contact.to_payload(),
    )
