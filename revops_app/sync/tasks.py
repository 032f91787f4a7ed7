"""
Sync Celery tasks.

``sync.pipeline.advance`` runs one page invocation and, with
``SYNC_AUTO_CONTINUE`` enabled, the runner re-queues it until the run
completes. The reaper, staging drain and purge tasks suit celery beat.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from revops_app.models import SyncRunStatus, db
from revops_app.sync.contracts import decode_cursor
from revops_app.sync.pipeline import RunRequest, SyncJobRunner, SyncRunController, pending_count, purge_processed


@shared_task(name="sync.healthcheck", bind=True)
def sync_healthcheck(self) -> dict[str, Any]:
    """
    Heartbeat task used by worker health checks.
    """
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="sync.pipeline.advance", bind=True)
def advance_sync(
    self,
    *,
    source: str,
    sync_run_id: int | None = None,
    cursor: str | None = None,
    limit: int | None = None,
    dry_run: bool = False,
    resume_failed: bool = False,
) -> dict[str, Any]:
    """
    Execute one page of a sync run on the worker.
    """

    app = current_app._get_current_object()
    try:
        result = SyncJobRunner(app).run(
            RunRequest(
                source=source,
                cursor=decode_cursor(cursor) if cursor else None,
                sync_run_id=sync_run_id,
                limit=limit,
                dry_run=dry_run,
                resume_failed=resume_failed,
                triggered_by="worker",
            )
        )
    except Exception:
        db.session.rollback()
        current_app.logger.exception(
            "Sync advance task failed",
            extra={"sync_source": source, "sync_run_id": sync_run_id, "sync_task_id": self.request.id},
        )
        raise
    return result.as_response()


@shared_task(name="sync.pipeline.reap_stale", bind=True)
def reap_stale_runs(self) -> dict[str, Any]:
    """
    Fail every active run whose heartbeat is older than its staleness window.
    """

    reaped = SyncRunController.from_config(current_app.config).reap_stale()
    if reaped:
        current_app.logger.warning("Reaper failed stale sync runs", extra={"sync_run_ids": reaped})
    return {"reaped_run_ids": reaped}


@shared_task(name="sync.pipeline.drain_staging", bind=True)
def drain_staging(self, *, limit: int | None = None) -> dict[str, Any]:
    """
    Start (or continue) a ``staged`` run when unprocessed staging rows exist.
    """

    pending = pending_count()
    if pending == 0:
        return {"status": "idle", "pending": 0}

    app = current_app._get_current_object()
    controller = SyncRunController.from_config(app.config)
    active = controller.get_active_run("staged")
    result = SyncJobRunner(app, controller=controller).run(
        RunRequest(
            source="staged",
            sync_run_id=active.id if active is not None and active.status == SyncRunStatus.CONTINUING else None,
            limit=limit,
            triggered_by="worker",
        )
    )
    payload = result.as_response()
    payload["pending"] = pending
    return payload


@shared_task(name="sync.staging.purge", bind=True)
def purge_staging(self, *, retention_days: int | None = None, dry_run: bool = False) -> dict[str, Any]:
    """
    Delete processed staging rows older than ``SYNC_STAGING_RETENTION_DAYS``.
    """

    days = int(retention_days or current_app.config.get("SYNC_STAGING_RETENTION_DAYS", 30))
    removed = purge_processed(retention_days=days, dry_run=dry_run)
    current_app.logger.info(
        "Purged processed staging rows",
        extra={"sync_staging_purged": removed, "sync_retention_days": days, "sync_dry_run": dry_run},
    )
    return {"purged": removed, "retention_days": days, "dry_run": dry_run}
