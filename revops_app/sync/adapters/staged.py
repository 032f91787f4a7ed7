"""
Drain adapter over unprocessed staging rows (keyset pagination).

Rows are read in ``(fetched_at, id)`` order and re-parsed with the parser of
the source that produced them, so a drain merges exactly what a live fetch
would have merged.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping

from sqlalchemy import and_, or_

from revops_app.models import StagingRecord, as_utc, db
from revops_app.sync.contracts import FetchedPage, RawContact

from .base import SourceAdapter


class StagedRecordsAdapter(SourceAdapter):
    name = "staged"
    cursor_kind = "keyset"
    stages_records = False

    def __init__(
        self,
        *,
        parser: Callable[[str, Mapping[str, Any]], RawContact | None],
        target_source: str | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.parser = parser
        self.target_source = target_source.lower() if target_source else None

    def fetch_page(self, cursor: Mapping[str, Any] | None, page_size: int) -> FetchedPage:
        query = db.session.query(StagingRecord).filter(StagingRecord.processed_at.is_(None))
        if self.target_source:
            query = query.filter(StagingRecord.source == self.target_source)
        if cursor and cursor.get("ts") and cursor.get("id") is not None:
            ts = as_utc(datetime.fromisoformat(str(cursor["ts"])))
            last_id = int(cursor["id"])
            query = query.filter(
                or_(
                    StagingRecord.fetched_at > ts,
                    and_(StagingRecord.fetched_at == ts, StagingRecord.id > last_id),
                )
            )
        rows = query.order_by(StagingRecord.fetched_at, StagingRecord.id).limit(page_size).all()

        contacts: list[RawContact] = []
        skipped = 0
        for row in rows:
            contact = self.parser(row.source, row.payload_json or {})
            if contact is None:
                skipped += 1
                continue
            contacts.append(contact)

        next_cursor = dict(cursor) if cursor else None
        if rows:
            last = rows[-1]
            next_cursor = {"ts": as_utc(last.fetched_at).isoformat(), "id": last.id}
        return FetchedPage(
            records=tuple(contacts),
            next_cursor=next_cursor,
            has_more=len(rows) == page_size,
            raw_count=len(rows),
            skipped=skipped,
        )
