"""
Sync run controller: the state machine owning every ``SyncRun`` row.

::

    pending -> running -> (continuing <-> running) -> completed
                    \\-> failed | cancelled (from any active state)

One active run per source is enforced here (read-then-insert) and by the
``uq_sync_runs_active_source`` partial unique index; the loser of a
concurrent start receives ``already_running``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from revops_app.models import ACTIVE_STATUSES, TERMINAL_STATUSES, SyncRun, SyncRunStatus, as_utc, db, utcnow
from revops_app.sync.errors import RunStateError, summarize_error
from revops_app.sync.metrics import record_run_finished, record_run_reaped

from .checkpoint import Checkpoint, CheckpointStore

logger = logging.getLogger(__name__)

DEFAULT_STALE_MINUTES = 30


@dataclass(frozen=True)
class StartResult:
    run: SyncRun
    created: bool
    reaped_run_id: int | None = None

    @property
    def already_running(self) -> bool:
        return not self.created


@dataclass(frozen=True)
class PageResult:
    """Counters and cursor produced by one page invocation."""

    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0
    next_cursor: Mapping[str, Any] | None = None
    has_more: bool = False


class SyncRunController:
    def __init__(
        self,
        *,
        stale_minutes: int = DEFAULT_STALE_MINUTES,
        stale_minutes_by_source: Mapping[str, int] | None = None,
        session: Session | None = None,
        now: Callable[[], datetime] = utcnow,
        checkpoints: CheckpointStore | None = None,
    ) -> None:
        self.stale_minutes = max(1, int(stale_minutes))
        self.stale_minutes_by_source = {k.lower(): int(v) for k, v in (stale_minutes_by_source or {}).items() if v}
        self._session = session
        self._now = now
        self.checkpoints = checkpoints or CheckpointStore()

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> "SyncRunController":
        return cls(
            stale_minutes=int(config.get("SYNC_STALE_MINUTES", DEFAULT_STALE_MINUTES)),
            stale_minutes_by_source=config.get("SYNC_STALE_MINUTES_BY_SOURCE") or {},
            **kwargs,
        )

    @property
    def session(self) -> Session:
        return self._session or db.session

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def stale_window(self, source: str) -> timedelta:
        return timedelta(minutes=self.stale_minutes_by_source.get(source.lower(), self.stale_minutes))

    def is_stale(self, run: SyncRun, *, now: datetime | None = None) -> bool:
        last_activity = run.last_activity
        if last_activity is None:
            last_activity = as_utc(run.created_at)
        if last_activity is None:
            return False
        return (now or self._now()) - last_activity > self.stale_window(run.source)

    def get(self, run_id: int) -> SyncRun | None:
        return self.session.get(SyncRun, run_id)

    def get_active_run(self, source: str) -> SyncRun | None:
        return (
            self.session.query(SyncRun)
            .filter(SyncRun.source == source.lower(), SyncRun.status.in_(ACTIVE_STATUSES))
            .order_by(SyncRun.id.desc())
            .first()
        )

    def current_status(self, run_id: int) -> SyncRunStatus | None:
        """Read the status straight from the database, bypassing the identity map."""

        return self.session.query(SyncRun.status).filter(SyncRun.id == run_id).scalar()

    def is_cancelled(self, run_id: int) -> bool:
        return self.current_status(run_id) == SyncRunStatus.CANCELLED

    def failed_cursor(self, source: str) -> Mapping[str, Any] | None:
        """Checkpoint cursor of the latest finished run for ``source`` if that run failed."""

        latest = (
            self.session.query(SyncRun)
            .filter(SyncRun.source == source.lower(), SyncRun.status.in_(TERMINAL_STATUSES))
            .order_by(SyncRun.id.desc())
            .first()
        )
        if latest is None or latest.status != SyncRunStatus.FAILED:
            return None
        return self.checkpoints.resume_cursor(latest)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(
        self,
        source: str,
        *,
        dry_run: bool = False,
        triggered_by: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        resume_cursor: Mapping[str, Any] | None = None,
    ) -> StartResult:
        """
        Create a running run for ``source`` unless a live one already exists.

        ``resume_cursor`` seeds the new run's checkpoint so its first page is
        fetched from there instead of the adapter's first page.
        """

        source = source.lower()
        now = self._now()
        reaped_run_id: int | None = None

        active = self.get_active_run(source)
        if active is not None:
            if not self.is_stale(active, now=now):
                return StartResult(run=active, created=False)
            self._mark_failed(active, "timeout", now=now)
            self.session.flush()
            reaped_run_id = active.id
            record_run_reaped(source)
            logger.warning(
                "Failed stale run %s for %s before starting a new one",
                active.id,
                source,
                extra={"sync_source": source, "sync_run_id": active.id},
            )

        run = SyncRun(
            source=source,
            status=SyncRunStatus.RUNNING,
            dry_run=dry_run,
            started_at=now,
            last_activity_at=now,
            checkpoint=Checkpoint(cursor=dict(resume_cursor)).to_json() if resume_cursor is not None else None,
            triggered_by=triggered_by,
            metadata_json=dict(metadata or {}),
        )
        self.session.add(run)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            winner = self.get_active_run(source)
            if winner is None:
                raise
            logger.info(
                "Concurrent start for %s lost to run %s",
                source,
                winner.id,
                extra={"sync_source": source, "sync_run_id": winner.id},
            )
            return StartResult(run=winner, created=False)

        logger.info(
            "Started sync run %s for %s",
            run.id,
            source,
            extra={"sync_source": source, "sync_run_id": run.id, "sync_dry_run": dry_run},
        )
        return StartResult(run=run, created=True, reaped_run_id=reaped_run_id)

    def resume(self, run_id: int) -> SyncRun:
        """Pick up a run handed off between invocations."""

        run = self.get(run_id)
        if run is None:
            raise RunStateError(f"Sync run {run_id} not found.", run_id=run_id)
        self.session.refresh(run)
        if run.status.is_terminal:
            raise RunStateError(
                f"Sync run {run_id} is {run.status.value} and cannot resume.",
                run_id=run_id,
                status=run.status.value,
            )
        run.status = SyncRunStatus.RUNNING
        run.last_activity_at = self._now()
        self.session.commit()
        return run

    def advance(self, run_id: int, page: PageResult) -> SyncRun:
        """Add a page's counters, store its cursor and hand off or complete."""

        run = self.get(run_id)
        if run is None:
            raise RunStateError(f"Sync run {run_id} not found.", run_id=run_id)
        self.session.refresh(run)
        if run.status.is_terminal:
            raise RunStateError(
                f"Sync run {run_id} is {run.status.value}; counters are frozen.",
                run_id=run_id,
                status=run.status.value,
            )

        now = self._now()
        run.total_fetched = int(run.total_fetched or 0) + page.fetched
        run.total_inserted = int(run.total_inserted or 0) + page.inserted
        run.total_updated = int(run.total_updated or 0) + page.updated
        run.total_skipped = int(run.total_skipped or 0) + page.skipped
        run.total_conflicts = int(run.total_conflicts or 0) + page.conflicts
        run.pages_processed = int(run.pages_processed or 0) + 1
        run.last_activity_at = now
        self.checkpoints.save(run, cursor=page.next_cursor, now=now)

        if page.has_more:
            run.status = SyncRunStatus.CONTINUING
        else:
            run.status = SyncRunStatus.COMPLETED
            run.completed_at = now
        self.session.commit()

        if run.status == SyncRunStatus.COMPLETED:
            record_run_finished(run.source, run.status.value)
        return run

    def heartbeat(self, run_id: int) -> None:
        updated = (
            self.session.query(SyncRun)
            .filter(SyncRun.id == run_id, SyncRun.status.in_(ACTIVE_STATUSES))
            .update({SyncRun.last_activity_at: self._now()}, synchronize_session=False)
        )
        if updated:
            self.session.commit()

    def fail(self, run_id: int, reason: str | BaseException) -> SyncRun | None:
        """Fail an active run; terminal runs are returned untouched."""

        run = self.get(run_id)
        if run is None:
            return None
        self.session.refresh(run)
        if run.status.is_terminal:
            return run
        self._mark_failed(run, reason)
        self.session.commit()
        return run

    def cancel(self, run_id: int) -> SyncRun:
        """
        Cancel an active run.

        Raises:
            RunStateError: If the run does not exist or is already terminal.
        """

        run = self.get(run_id)
        if run is None:
            raise RunStateError(f"Sync run {run_id} not found.", run_id=run_id)
        self.session.refresh(run)
        if run.status.is_terminal:
            raise RunStateError(
                f"Sync run {run_id} is already {run.status.value}.",
                run_id=run_id,
                status=run.status.value,
            )
        now = self._now()
        run.status = SyncRunStatus.CANCELLED
        run.completed_at = now
        run.last_activity_at = now
        self.session.commit()
        record_run_finished(run.source, run.status.value)
        logger.info("Cancelled sync run %s", run.id, extra={"sync_source": run.source, "sync_run_id": run.id})
        return run

    def cancel_all(self, *, source: str | None = None) -> list[int]:
        query = self.session.query(SyncRun).filter(SyncRun.status.in_(ACTIVE_STATUSES))
        if source:
            query = query.filter(SyncRun.source == source.lower())
        now = self._now()
        cancelled: list[int] = []
        for run in query.order_by(SyncRun.id).all():
            run.status = SyncRunStatus.CANCELLED
            run.completed_at = now
            run.last_activity_at = now
            cancelled.append(run.id)
            record_run_finished(run.source, run.status.value)
        self.session.commit()
        if cancelled:
            logger.warning("Force-cancelled %d sync run(s)", len(cancelled), extra={"sync_run_ids": cancelled})
        return cancelled

    def reap_stale(self) -> list[int]:
        """Fail every active run whose last activity is outside its staleness window."""

        now = self._now()
        reaped: list[int] = []
        runs = self.session.query(SyncRun).filter(SyncRun.status.in_(ACTIVE_STATUSES)).order_by(SyncRun.id).all()
        for run in runs:
            if not self.is_stale(run, now=now):
                continue
            self._mark_failed(run, "stale", now=now)
            reaped.append(run.id)
            record_run_reaped(run.source)
        self.session.commit()
        if reaped:
            logger.warning("Reaped %d stale sync run(s)", len(reaped), extra={"sync_run_ids": reaped})
        return reaped

    def _mark_failed(self, run: SyncRun, reason: str | BaseException, *, now: datetime | None = None) -> None:
        now = now or self._now()
        run.status = SyncRunStatus.FAILED
        run.error_message = summarize_error(reason)
        run.completed_at = now
        run.last_activity_at = now
        record_run_finished(run.source, run.status.value)
