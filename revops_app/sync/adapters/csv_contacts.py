"""CSV loader for contact uploads.

Validates the header row against the contact contract, streams rows and maps
each one onto ``RawContact`` so uploads are staged and merged exactly like API
pages. Columns outside the contract are kept as tracking data.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from typing import IO, Iterator, Sequence

from revops_app.sync.contracts import RawContact, get_contact_alias_map, normalize_header

IDENTIFIER_FIELDS: tuple[str, ...] = ("external_id", "email", "phone")


class CSVAdapterError(Exception):
    """Base exception for CSV loader failures."""


class CSVHeaderError(CSVAdapterError):
    """Raised when the header row cannot identify contacts."""

    def __init__(self, *, missing: Sequence[str] | None = None, duplicates: Sequence[str] | None = None) -> None:
        details: list[str] = []
        if missing:
            details.append(f"At least one identifier column is required: {', '.join(missing)}.")
        if duplicates:
            details.append(
                "Duplicate canonical columns detected: "
                + ", ".join(sorted(duplicates))
                + ". Ensure each canonical field appears only once."
            )
        message = "CSV header validation failed. " + " ".join(details) if details else "CSV header validation failed."
        super().__init__(message)
        self.missing = tuple(missing or ())
        self.duplicates = tuple(duplicates or ())


@dataclass(frozen=True)
class ContactCSVRow:
    sequence_number: int
    source_line: int
    contact: RawContact


@dataclass
class ContactCSVStatistics:
    rows_processed: int = 0
    rows_skipped_blank: int = 0
    rows_rejected: int = 0
    errors: list[str] = field(default_factory=list)


def _sanitize_header(header: str | None) -> str:
    return (header or "").strip().lstrip("﻿")


def _row_is_blank(row: dict[str, object | None]) -> bool:
    return all(value is None or (isinstance(value, str) and value.strip() == "") for value in row.values())


class ContactCSVAdapter:
    """CSV reader producing ``RawContact`` rows for one logical source."""

    def __init__(self, file_obj: IO[str], *, source: str = "csv", skip_blank_rows: bool = True) -> None:
        self._file_obj = file_obj
        self.source = source.lower()
        self.skip_blank_rows = skip_blank_rows
        self.statistics = ContactCSVStatistics()
        self._canonical_by_header: dict[str, str | None] = {}

    def _validate_headers(self, raw_headers: Sequence[str]) -> None:
        alias_map = get_contact_alias_map()
        seen: set[str] = set()
        duplicates: list[str] = []
        mapping: dict[str, str | None] = {}
        for header in raw_headers:
            sanitized = _sanitize_header(header)
            canonical = alias_map.get(normalize_header(sanitized))
            if canonical is not None:
                if canonical in seen:
                    duplicates.append(canonical)
                seen.add(canonical)
            mapping[header] = canonical
        missing = () if seen.intersection(IDENTIFIER_FIELDS) else IDENTIFIER_FIELDS
        if missing or duplicates:
            raise CSVHeaderError(missing=missing, duplicates=duplicates)
        self._canonical_by_header = mapping

    def iter_contacts(self) -> Iterator[ContactCSVRow]:
        self._file_obj.seek(0)
        reader = csv.DictReader(self._file_obj)
        if reader.fieldnames is None:
            raise CSVHeaderError(missing=IDENTIFIER_FIELDS)
        self._validate_headers(reader.fieldnames)

        for sequence_number, raw_row in enumerate(reader, start=1):
            if self.skip_blank_rows and _row_is_blank(raw_row):
                self.statistics.rows_skipped_blank += 1
                continue

            canonical_row: dict[str, object | None] = {}
            extras: dict[str, object] = {}
            for header, value in raw_row.items():
                if header is None:
                    continue
                canonical = self._canonical_by_header.get(header)
                if canonical is None:
                    if value not in (None, ""):
                        extras[_sanitize_header(header)] = value
                    continue
                canonical_row[canonical] = value
            canonical_row.setdefault("source", self.source)
            if extras:
                canonical_row["tracking_data"] = {"custom_fields": extras}

            contact = RawContact.from_mapping(self.source, canonical_row)
            if not contact.external_id:
                fallback = contact.email or contact.phone
                if not fallback:
                    self.statistics.rows_rejected += 1
                    self.statistics.errors.append(f"Row {reader.line_num}: no external_id, email or phone")
                    continue
                contact = RawContact.from_mapping(self.source, {**canonical_row, "external_id": fallback.lower()})

            self.statistics.rows_processed += 1
            yield ContactCSVRow(sequence_number=sequence_number, source_line=reader.line_num, contact=contact)
