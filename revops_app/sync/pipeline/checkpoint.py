"""
Checkpoint blob stored on ``SyncRun.checkpoint``.

Shape::

    {"cursor": {...} | null, "page": 3, "last_activity": "2026-01-01T00:00:00+00:00",
     "totals": {"fetched": 300, "inserted": 120, ...}}

``cursor`` is the exact replay key handed to the adapter for the next page.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from revops_app.models import SyncRun


@dataclass(frozen=True)
class Checkpoint:
    cursor: Mapping[str, Any] | None = None
    page: int = 0
    last_activity: str | None = None
    totals: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Mapping[str, Any] | None) -> "Checkpoint":
        if not data:
            return cls()
        cursor = data.get("cursor")
        return cls(
            cursor=dict(cursor) if isinstance(cursor, Mapping) else None,
            page=int(data.get("page") or 0),
            last_activity=data.get("last_activity"),
            totals=dict(data.get("totals") or {}),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "cursor": dict(self.cursor) if self.cursor is not None else None,
            "page": self.page,
            "last_activity": self.last_activity,
            "totals": dict(self.totals),
        }


class CheckpointStore:
    """Reads and writes the checkpoint blob of a run; the controller owns the transaction."""

    def load(self, run: SyncRun) -> Checkpoint:
        return Checkpoint.from_json(run.checkpoint)

    def save(
        self,
        run: SyncRun,
        *,
        cursor: Mapping[str, Any] | None,
        now: datetime,
    ) -> Checkpoint:
        previous = self.load(run)
        checkpoint = Checkpoint(
            cursor=dict(cursor) if cursor is not None else previous.cursor,
            page=previous.page + 1,
            last_activity=now.isoformat(),
            totals=run.totals(),
        )
        run.checkpoint = checkpoint.to_json()
        return checkpoint

    def resume_cursor(self, run: SyncRun) -> Mapping[str, Any] | None:
        return self.load(run).cursor
