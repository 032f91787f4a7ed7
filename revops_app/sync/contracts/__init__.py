"""Canonical ingest contract helpers for sync adapters."""

from __future__ import annotations

from .contact import (
    CONTACT_CANONICAL_FIELDS,
    FieldSpec,
    RawContact,
    coerce_opt_in,
    coerce_tags,
    contacts_from_rows,
    get_contact_alias_map,
    normalize_header,
    required_headers_missing,
)
from .paging import FetchedPage, decode_cursor, encode_cursor

__all__ = [
    "CONTACT_CANONICAL_FIELDS",
    "FetchedPage",
    "FieldSpec",
    "RawContact",
    "coerce_opt_in",
    "coerce_tags",
    "contacts_from_rows",
    "decode_cursor",
    "encode_cursor",
    "get_contact_alias_map",
    "normalize_header",
    "required_headers_missing",
]
