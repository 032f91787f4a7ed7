"""
Read side of the sync run ledger.

The operator API and the ``flask sync runs`` command list, inspect and
count runs through ``SyncRunService``. State changes never happen here;
they go through ``SyncRunController``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy import func
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Query, Session

from revops_app.models import ACTIVE_STATUSES, SyncRun, SyncRunStatus, as_utc, db

from .checkpoint import Checkpoint
from .filters import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    Page,
    enum_members,
    flag,
    isoformat,
    page_window,
    source_names,
    timestamp,
)

DEFAULT_SORT = "-started_at"

SORTABLE_COLUMNS = {
    "id": SyncRun.id,
    "source": SyncRun.source,
    "status": SyncRun.status,
    "started_at": SyncRun.started_at,
    "completed_at": SyncRun.completed_at,
    "last_activity_at": SyncRun.last_activity_at,
}

RunListResult = Page[SyncRun]


@dataclass(frozen=True)
class RunFilters:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[SyncRunStatus, ...] = ()
    sources: tuple[str, ...] = ()
    started_from: datetime | None = None
    started_to: datetime | None = None
    include_dry_runs: bool = True

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        sources: Iterable[str] | None = None,
        started_from: str | datetime | None = None,
        started_to: str | datetime | None = None,
        include_dry_runs: str | bool | None = None,
    ) -> "RunFilters":
        """
        Build filters from query-string or CLI values.

        Raises:
            ValueError: unknown sort column or status, bad page numbers,
                unparseable or inverted date bounds.
        """
        sort = (sort or DEFAULT_SORT).strip()
        if sort.lstrip("-") not in SORTABLE_COLUMNS:
            raise ValueError(f"Unsupported sort field '{sort.lstrip('-')}'.")

        lower = timestamp(started_from)
        upper = timestamp(started_to, end_of_day=True)
        if lower and upper and upper < lower:
            raise ValueError("started_from must be before started_to.")

        page_number, size = page_window(page, page_size)
        return cls(
            page=page_number,
            page_size=size,
            sort=sort,
            statuses=enum_members(SyncRunStatus, statuses, "status filter"),
            sources=source_names(sources),
            started_from=lower,
            started_to=upper,
            include_dry_runs=flag(include_dry_runs, default=True),
        )

    @property
    def order_by(self):
        column = SORTABLE_COLUMNS[self.sort.lstrip("-")]
        return column.desc() if self.sort.startswith("-") else column.asc()


@dataclass(frozen=True)
class RunStats:
    total: int
    statuses: Mapping[str, int]
    sources: Mapping[str, int]
    active: Mapping[str, int]


class SyncRunService:
    def __init__(self, session: Session | None = None) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        # Resolved lazily so a module-level service follows the current app.
        return self._session or db.session

    def list_runs(self, filters: RunFilters) -> RunListResult:
        query = self._filtered(filters)
        total = query.count()
        items: list[SyncRun] = []
        if total:
            items = (
                query.order_by(filters.order_by, SyncRun.id.desc())
                .offset((filters.page - 1) * filters.page_size)
                .limit(filters.page_size)
                .all()
            )
        return Page(items=items, total=total, page=filters.page, page_size=filters.page_size)

    def get_run(self, run_id: int) -> SyncRun:
        run = self.session.get(SyncRun, run_id)
        if run is None:
            raise NoResultFound(f"Sync run {run_id} not found.")
        return run

    def get_stats(self, filters: RunFilters | None = None) -> RunStats:
        query = self._filtered(filters or RunFilters())
        statuses = {
            getattr(status, "value", status): count for status, count in self._count_by(query, SyncRun.status)
        }
        return RunStats(
            total=sum(statuses.values()),
            statuses=statuses,
            sources=dict(self._count_by(query, SyncRun.source)),
            active=dict(self._count_by(query.filter(SyncRun.status.in_(ACTIVE_STATUSES)), SyncRun.source)),
        )

    @staticmethod
    def _count_by(query: Query, column) -> list[tuple[Any, int]]:
        return query.with_entities(column, func.count(SyncRun.id)).group_by(column).all()

    def _filtered(self, filters: RunFilters) -> Query:
        query = self.session.query(SyncRun)
        if filters.statuses:
            query = query.filter(SyncRun.status.in_(filters.statuses))
        if filters.sources:
            query = query.filter(SyncRun.source.in_(filters.sources))
        if not filters.include_dry_runs:
            query = query.filter(SyncRun.dry_run.is_(False))
        if filters.started_from is not None:
            query = query.filter(SyncRun.started_at >= filters.started_from)
        if filters.started_to is not None:
            query = query.filter(SyncRun.started_at <= filters.started_to)
        return query


def serialize_run(run: SyncRun, *, include_checkpoint: bool = False) -> dict[str, Any]:
    started_at = as_utc(run.started_at)
    completed_at = as_utc(run.completed_at)
    duration = None
    if started_at is not None:
        duration = ((completed_at or datetime.now(timezone.utc)) - started_at).total_seconds()

    payload: dict[str, Any] = {
        "id": run.id,
        "source": run.source,
        "status": run.status.value,
        "dry_run": run.dry_run,
        "started_at": isoformat(started_at),
        "completed_at": isoformat(completed_at),
        "last_activity_at": isoformat(run.last_activity),
        "duration_seconds": duration,
        "pages_processed": run.pages_processed or 0,
        "totals": {**run.totals(), "upserted": run.total_upserted},
        "error_message": run.error_message,
        "triggered_by": run.triggered_by,
    }
    if include_checkpoint:
        payload["checkpoint"] = Checkpoint.from_json(run.checkpoint).to_json()
        payload["metadata"] = dict(run.metadata_json or {})
    return payload


def serialize_stats(stats: RunStats) -> dict[str, Any]:
    return {
        "total": stats.total,
        "statuses": dict(stats.statuses),
        "sources": dict(stats.sources),
        "active": dict(stats.active),
    }


__all__ = [
    "MAX_PAGE_SIZE",
    "RunFilters",
    "RunListResult",
    "RunStats",
    "SyncRunService",
    "serialize_run",
    "serialize_stats",
]
