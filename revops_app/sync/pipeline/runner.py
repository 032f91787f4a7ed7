"""
Job runner: executes one invocation of a paginated sync.

An invocation starts or resumes a run, checks for cancellation, fetches one
page, stages it, merges it in sub-batches, checks for cancellation again and
advances the run. Callers re-invoke with the returned run id until the
status is ``completed``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Mapping

from flask import Flask

from revops_app.models import SyncRun, SyncRunStatus, db
from revops_app.sync.adapters import SourceAdapter, build_adapter
from revops_app.sync.contracts import encode_cursor
from revops_app.sync.errors import AdapterConfigError, AdapterError, RunStateError, summarize_error
from revops_app.sync.resilience.retry import RetryExhaustedError
from revops_app.utils.sync import is_sync_paused

from .controller import PageResult, SyncRunController
from .identity import IdentityMerger, merge_contacts
from .paginator import ResumablePaginator
from .staging import dedupe_contacts, mark_processed, stage_contacts

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str], SourceAdapter]


@dataclass(frozen=True)
class RunRequest:
    source: str
    cursor: Mapping[str, Any] | None = None
    sync_run_id: int | None = None
    limit: int | None = None
    dry_run: bool = False
    triggered_by: str | None = None
    resume_failed: bool = False


@dataclass
class JobResult:
    """Job-control response for one invocation."""

    success: bool
    status: str
    sync_run_id: int | None = None
    has_more: bool = False
    next_cursor: Mapping[str, Any] | None = None
    totals: dict[str, int] = field(default_factory=dict)
    error: str | None = None
    duration_ms: float = 0.0
    http_status: HTTPStatus = HTTPStatus.OK
    page: dict[str, int] = field(default_factory=dict)

    @classmethod
    def for_run(cls, run: SyncRun, *, status: str | None = None, **kwargs: Any) -> "JobResult":
        return cls(
            success=kwargs.pop("success", True),
            status=status or run.status.value,
            sync_run_id=run.id,
            totals=run.totals(),
            **kwargs,
        )

    def as_response(self) -> dict[str, Any]:
        totals = self.totals
        payload: dict[str, Any] = {
            "success": self.success,
            "status": self.status,
            "syncRunId": self.sync_run_id,
            "hasMore": self.has_more,
            "totalFetched": totals.get("fetched", 0),
            "totalUpserted": totals.get("inserted", 0) + totals.get("updated", 0),
            "totalInserted": totals.get("inserted", 0),
            "totalUpdated": totals.get("updated", 0),
            "totalSkipped": totals.get("skipped", 0),
            "totalConflicts": totals.get("conflicts", 0),
            "duration_ms": round(self.duration_ms, 2),
        }
        if self.next_cursor is not None:
            payload["nextCursor"] = encode_cursor(self.next_cursor)
        if self.page:
            payload["page"] = dict(self.page)
        if self.error:
            payload["error"] = self.error
        return payload


class SyncJobRunner:
    def __init__(
        self,
        app: Flask,
        *,
        adapter_factory: AdapterFactory | None = None,
        controller: SyncRunController | None = None,
    ) -> None:
        self.app = app
        self.config = app.config
        self.adapter_factory = adapter_factory or (lambda source: build_adapter(source, app.config))
        self.controller = controller or SyncRunController.from_config(app.config)

    def _page_size(self, requested: int | None) -> int:
        default = int(self.config.get("SYNC_PAGE_SIZE", 100))
        maximum = int(self.config.get("SYNC_MAX_PAGE_SIZE", 500))
        size = requested if requested and requested > 0 else default
        return max(1, min(int(size), maximum))

    def run(self, request: RunRequest) -> JobResult:
        started = time.perf_counter()
        result = self._run(request)
        result.duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Sync invocation for %s finished with %s",
            request.source,
            result.status,
            extra={
                "sync_source": request.source,
                "sync_run_id": result.sync_run_id,
                "sync_status": result.status,
                "sync_duration_ms": round(result.duration_ms, 2),
            },
        )
        return result

    def _run(self, request: RunRequest) -> JobResult:
        source = request.source.strip().lower()
        if is_sync_paused(self.app):
            return JobResult(success=True, status="skipped", error="Sync is paused (SYNC_PAUSED).")

        if request.sync_run_id is not None:
            try:
                run = self.controller.resume(request.sync_run_id)
            except RunStateError as exc:
                existing = self.controller.get(request.sync_run_id)
                if existing is None:
                    return JobResult(success=False, status="failed", error=str(exc), http_status=HTTPStatus.NOT_FOUND)
                return JobResult.for_run(existing, success=existing.status != SyncRunStatus.FAILED, error=str(exc))
            if run.source != source:
                self.controller.fail(run.id, f"run belongs to source {run.source}")
                return JobResult.for_run(
                    run,
                    status="failed",
                    success=False,
                    error=f"Sync run {run.id} belongs to source '{run.source}'.",
                    http_status=HTTPStatus.BAD_REQUEST,
                )
        else:
            started_run = self.controller.start(
                source,
                dry_run=request.dry_run,
                triggered_by=request.triggered_by,
                metadata={
                    "page_size": self._page_size(request.limit),
                    "precedence_version": IdentityMerger.from_config(self.config).profile.version,
                },
                resume_cursor=self._failed_cursor(source, request),
            )
            if started_run.already_running:
                return JobResult.for_run(
                    started_run.run,
                    status="already_running",
                    success=False,
                    error=f"Sync for {source} already running (run {started_run.run.id}).",
                    http_status=HTTPStatus.CONFLICT,
                )
            run = started_run.run

        try:
            return self._execute_page(run, request)
        except (AdapterError, RetryExhaustedError) as exc:
            db.session.rollback()
            message = summarize_error(exc)
            self.controller.fail(run.id, message)
            logger.warning(
                "Sync run %s for %s failed: %s",
                run.id,
                source,
                message,
                extra={"sync_source": source, "sync_run_id": run.id},
            )
            status = HTTPStatus.SERVICE_UNAVAILABLE if isinstance(exc, AdapterConfigError) else HTTPStatus.BAD_GATEWAY
            # The checkpoint still points at the page that failed.
            retry_cursor = request.cursor
            if retry_cursor is None:
                retry_cursor = self.controller.checkpoints.resume_cursor(run)
            return JobResult.for_run(
                run,
                status="failed",
                success=False,
                error=message,
                http_status=status,
                next_cursor=retry_cursor,
            )
        except Exception as exc:
            db.session.rollback()
            self.controller.fail(run.id, exc)
            logger.exception(
                "Sync run %s for %s crashed",
                run.id,
                source,
                extra={"sync_source": source, "sync_run_id": run.id},
            )
            raise

    def _execute_page(self, run: SyncRun, request: RunRequest) -> JobResult:
        run_id = run.id
        if self.controller.is_cancelled(run_id):
            return self._cancelled(run)

        adapter = self.adapter_factory(run.source)
        paginator = ResumablePaginator(adapter, checkpoints=self.controller.checkpoints)
        cursor = paginator.resolve_cursor(run, request.cursor)
        page = paginator.fetch(cursor, self._page_size(request.limit))

        if self.controller.is_cancelled(run_id):
            return self._cancelled(run)

        contacts = dedupe_contacts(page.records)
        if not run.dry_run and adapter.stages_records:
            stage_contacts(contacts, sync_run_id=run_id)

        merger = IdentityMerger.from_config(self.config, sync_run_id=run_id, dry_run=run.dry_run)
        summary = merge_contacts(
            contacts,
            merger=merger,
            app=self.app,
            concurrency=int(self.config.get("SYNC_MERGE_CONCURRENCY", 1)),
            should_cancel=lambda: self.controller.is_cancelled(run_id),
            heartbeat=lambda: self.controller.heartbeat(run_id),
        )
        if not run.dry_run:
            mark_processed(summary.outcomes)

        if summary.cancelled or self.controller.is_cancelled(run_id):
            return self._cancelled(run)

        page_result = PageResult(
            fetched=page.raw_count,
            inserted=summary.created,
            updated=summary.updated,
            skipped=summary.skipped + summary.failed + page.skipped,
            conflicts=summary.conflicts,
            next_cursor=page.next_cursor,
            has_more=page.has_more,
        )
        try:
            run = self.controller.advance(run_id, page_result)
        except RunStateError:
            if self.controller.is_cancelled(run_id):
                return self._cancelled(run)
            raise
        if run.status == SyncRunStatus.CONTINUING:
            self._maybe_enqueue_next(run)

        return JobResult.for_run(
            run,
            has_more=page.has_more,
            next_cursor=page.next_cursor,
            page={
                "fetched": page.raw_count,
                "inserted": summary.created,
                "updated": summary.updated,
                "skipped": page_result.skipped,
                "conflicts": summary.conflicts,
            },
        )

    def _failed_cursor(self, source: str, request: RunRequest) -> Mapping[str, Any] | None:
        if not request.resume_failed or request.cursor is not None:
            return None
        cursor = self.controller.failed_cursor(source)
        if cursor is not None:
            logger.info(
                "Resuming %s from the checkpoint of its last failed run",
                source,
                extra={"sync_source": source, "sync_resume_cursor": dict(cursor)},
            )
        return cursor

    def _cancelled(self, run: SyncRun) -> JobResult:
        db.session.refresh(run)
        return JobResult.for_run(run, status=SyncRunStatus.CANCELLED.value, success=True)

    def _maybe_enqueue_next(self, run: SyncRun) -> None:
        if not (self.config.get("SYNC_AUTO_CONTINUE") and self.config.get("SYNC_WORKER_ENABLED")):
            return
        from revops_app.sync.tasks import advance_sync

        advance_sync.delay(source=run.source, sync_run_id=run.id)
        logger.info(
            "Queued next page for sync run %s",
            run.id,
            extra={"sync_source": run.source, "sync_run_id": run.id},
        )
