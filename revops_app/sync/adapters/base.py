"""Common adapter interface for paginated sources."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from revops_app.sync.contracts import FetchedPage, RawContact


class SourceAdapter:
    """
    Maps one platform's native pagination onto ``fetch_page``.

    Subclasses set ``name`` and ``cursor_kind`` and implement ``fetch_page``
    and ``parse_record``. ``parse_record`` returns ``None`` for records the
    source never syncs (e.g. Stripe customers without email).
    """

    name: str = ""
    cursor_kind: str = "offset"
    stages_records: bool = True

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(f"revops_app.sync.adapters.{self.name or 'base'}")

    def initial_cursor(self) -> dict[str, Any] | None:
        return None

    def fetch_page(self, cursor: Mapping[str, Any] | None, page_size: int) -> FetchedPage:
        raise NotImplementedError

    @classmethod
    def parse_record(cls, record: Mapping[str, Any]) -> RawContact | None:
        return RawContact.from_mapping(cls.name, record)

    def build_page(
        self,
        raw_records: Iterable[Mapping[str, Any]],
        *,
        next_cursor: Mapping[str, Any] | None,
        has_more: bool,
    ) -> FetchedPage:
        raw_list = list(raw_records)
        contacts = []
        skipped = 0
        for record in raw_list:
            contact = self.parse_record(record)
            if contact is None:
                skipped += 1
                continue
            contacts.append(contact)
        return FetchedPage(
            records=tuple(contacts),
            next_cursor=dict(next_cursor) if next_cursor is not None else None,
            has_more=has_more,
            raw_count=len(raw_list),
            skipped=skipped,
        )
