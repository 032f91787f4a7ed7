"""Page and cursor shapes shared by the paginator and every source adapter."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Mapping, Tuple

from .contact import RawContact


@dataclass(frozen=True)
class FetchedPage:
    """
    Result of ``fetch_page``.

    ``next_cursor`` is taken from the last record of the page and replays
    exactly the following page. ``raw_count`` counts every record the platform
    returned, including ones the adapter dropped (``skipped``).
    """

    records: Tuple[RawContact, ...]
    next_cursor: Mapping[str, Any] | None
    has_more: bool
    raw_count: int = 0
    skipped: int = 0

    @classmethod
    def empty(cls, cursor: Mapping[str, Any] | None = None) -> "FetchedPage":
        return cls(records=(), next_cursor=cursor, has_more=False, raw_count=0, skipped=0)


def encode_cursor(cursor: Mapping[str, Any] | None) -> str | None:
    """Serialize a cursor into an opaque URL-safe token."""

    if cursor is None:
        return None
    raw = json.dumps(dict(cursor), sort_keys=True, separators=(",", ":"), default=str)
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(token: str | None) -> dict[str, Any] | None:
    """Inverse of ``encode_cursor``; raises ``ValueError`` for malformed tokens."""

    if token is None or str(token).strip() == "":
        return None
    text = str(token).strip()
    padded = text + "=" * (-len(text) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValueError("cursor is not a valid token") from exc
    if not isinstance(data, dict):
        raise ValueError("cursor must decode to an object")
    return data
