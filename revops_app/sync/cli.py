"""
``flask sync`` commands for operators.

Every command runs inline against the application database unless noted;
``run --queue`` hands the invocation to the Celery worker instead.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo
from sqlalchemy.exc import NoResultFound

from revops_app.models import SyncRunStatus
from revops_app.sync.adapters import CSVHeaderError
from revops_app.sync.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from revops_app.sync.contracts import decode_cursor
from revops_app.sync.errors import RunStateError, UnknownSourceError
from revops_app.sync.pipeline import (
    ConflictFilters,
    ConflictQueueService,
    IdentityMerger,
    RunFilters,
    RunRequest,
    SyncJobRunner,
    SyncRunController,
    SyncRunService,
    purge_processed,
    serialize_conflict,
    serialize_run,
    stage_csv,
)
from revops_app.sync.registry import get_source_registry
from revops_app.sync.utils import ensure_known_source
from revops_app.utils.sync import get_sync_sources, is_sync_enabled


def _load_app(ctx):
    info = ctx.ensure_object(ScriptInfo)
    return info.load_app()


@click.group(name="sync", invoke_without_command=True)
@click.pass_context
def sync_cli(ctx):
    """
    Sync engine management commands.

    Lists the enabled sources when invoked without a subcommand.
    """
    app = _load_app(ctx)
    if not is_sync_enabled(app):
        raise click.ClickException("Sync is disabled via SYNC_ENABLED=false. Enable it to run sync CLI commands.")
    if ctx.invoked_subcommand is None:
        sources = get_sync_sources(app)
        if not sources:
            click.echo("No sync sources configured.")
        else:
            click.echo("Enabled sync sources:")
            for source in sources:
                click.echo(f"  - {source}")


def get_disabled_sync_group() -> click.Group:
    """
    Return a minimal command group that informs the operator sync is disabled.
    """

    @click.group(name="sync", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Sync commands are unavailable because SYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Sync Celery app is unavailable. Ensure SYNC_ENABLED=true and the "
            "sync package initialises before running worker commands."
        )
    return celery_app


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


# ---------------------------------------------------------------------------
# Sources and runs
# ---------------------------------------------------------------------------


@sync_cli.command("sources")
@click.pass_context
def sync_sources(ctx):
    """Show enabled sources and any settings they are missing."""
    app = _load_app(ctx)
    registry = get_source_registry()
    for name in get_sync_sources(app):
        descriptor = registry.get(name)
        if descriptor is None:
            click.echo(f"{name:<10} unknown source")
            continue
        missing = descriptor.missing_settings(app.config)
        status = "ready" if not missing else "missing " + ", ".join(missing)
        webhook = " webhook" if descriptor.webhook else ""
        click.echo(f"{name:<10} {descriptor.cursor_kind:<8}{webhook:<8} {status}")


@sync_cli.command("run")
@click.option("--source", required=True, help="Source identifier (ghl, manychat, stripe, paypal, staged).")
@click.option("--sync-run-id", type=int, help="Resume this run instead of starting a new one.")
@click.option("--cursor", help="Opaque cursor overriding the stored checkpoint.")
@click.option("--limit", type=int, help="Page size for this invocation.")
@click.option("--dry-run", is_flag=True, help="Fetch and merge without staging raw payloads.")
@click.option("--resume-failed", is_flag=True, help="Start from the checkpoint of the source's last failed run.")
@click.option("--until-complete", is_flag=True, help="Keep invoking inline until the run finishes.")
@click.option("--queue", "queued", is_flag=True, help="Enqueue the invocation on the sync worker.")
@click.pass_context
def sync_run(
    ctx,
    source: str,
    sync_run_id: Optional[int],
    cursor: Optional[str],
    limit: Optional[int],
    dry_run: bool,
    resume_failed: bool,
    until_complete: bool,
    queued: bool,
):
    """Execute one page invocation (or a full run) for a source."""
    app = _load_app(ctx)
    try:
        source = ensure_known_source(app, source)
    except UnknownSourceError as exc:
        raise click.ClickException(str(exc)) from exc
    try:
        decoded_cursor = decode_cursor(cursor) if cursor else None
    except ValueError as exc:
        raise click.ClickException(f"Invalid cursor: {exc}") from exc

    if queued:
        if until_complete:
            raise click.ClickException("--until-complete cannot be combined with --queue.")
        celery_app = _resolve_celery(app)
        async_result = celery_app.send_task(
            "sync.pipeline.advance",
            kwargs={
                "source": source,
                "sync_run_id": sync_run_id,
                "cursor": cursor,
                "limit": limit,
                "dry_run": dry_run,
                "resume_failed": resume_failed,
            },
        )
        app.logger.info(
            "Sync invocation queued via CLI",
            extra={"sync_source": source, "sync_run_id": sync_run_id, "sync_task_id": async_result.id},
        )
        click.echo(json.dumps({"task_id": async_result.id, "status": "queued", "source": source}))
        return

    runner = SyncJobRunner(app)
    request = RunRequest(
        source=source,
        cursor=decoded_cursor,
        sync_run_id=sync_run_id,
        limit=limit,
        dry_run=dry_run,
        resume_failed=resume_failed,
        triggered_by="cli",
    )
    result = runner.run(request)
    while until_complete and result.success and result.status == SyncRunStatus.CONTINUING.value:
        result = runner.run(RunRequest(source=source, sync_run_id=result.sync_run_id, limit=limit, triggered_by="cli"))
    _echo_json(result.as_response())
    if not result.success:
        raise click.ClickException(result.error or f"Sync invocation ended with status {result.status}.")


@sync_cli.command("cancel")
@click.option("--run-id", type=int, help="Run to cancel.")
@click.option("--all", "cancel_all", is_flag=True, help="Force-cancel every active run.")
@click.option("--source", help="Limit --all to one source.")
@click.pass_context
def sync_cancel(ctx, run_id: Optional[int], cancel_all: bool, source: Optional[str]):
    """Cancel one run, or every active run with --all."""
    app = _load_app(ctx)
    if bool(run_id) == cancel_all:
        raise click.ClickException("Provide exactly one of --run-id or --all.")
    controller = SyncRunController.from_config(app.config)
    if cancel_all:
        cancelled = controller.cancel_all(source=source)
        click.echo(f"Cancelled {len(cancelled)} run(s): {', '.join(map(str, cancelled)) or 'none'}")
        return
    try:
        run = controller.cancel(run_id)
    except RunStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Run {run.id} ({run.source}) is now {run.status.value}.")


@sync_cli.command("reap")
@click.pass_context
def sync_reap(ctx):
    """Fail active runs whose heartbeat went stale."""
    app = _load_app(ctx)
    reaped = SyncRunController.from_config(app.config).reap_stale()
    click.echo(f"Reaped {len(reaped)} stale run(s): {', '.join(map(str, reaped)) or 'none'}")


@sync_cli.command("runs")
@click.option("--status", "statuses", multiple=True, help="Filter by status (repeatable).")
@click.option("--source", "sources", multiple=True, help="Filter by source (repeatable).")
@click.option("--limit", default=25, show_default=True, type=int)
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of a table.")
@click.pass_context
def sync_runs(ctx, statuses: tuple[str, ...], sources: tuple[str, ...], limit: int, as_json: bool):
    """List recent sync runs."""
    _load_app(ctx)
    try:
        filters = RunFilters.coerce(page_size=limit, statuses=statuses, sources=sources)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    result = SyncRunService().list_runs(filters)
    if as_json:
        _echo_json({"runs": [serialize_run(run) for run in result.items], "total": result.total})
        return
    if not result.items:
        click.echo("No sync runs found.")
        return
    for run in result.items:
        totals = run.totals()
        click.echo(
            f"#{run.id:<5} {run.source:<9} {run.status.value:<11} "
            f"pages={run.pages_processed} fetched={totals['fetched']} "
            f"inserted={totals['inserted']} updated={totals['updated']} "
            f"skipped={totals['skipped']} conflicts={totals['conflicts']}"
        )


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


@sync_cli.command("conflicts")
@click.option("--status", "statuses", multiple=True, default=("pending",), show_default=True)
@click.option("--source", "sources", multiple=True)
@click.option("--limit", default=25, show_default=True, type=int)
@click.pass_context
def sync_conflicts(ctx, statuses: tuple[str, ...], sources: tuple[str, ...], limit: int):
    """List merge conflicts awaiting review."""
    _load_app(ctx)
    try:
        filters = ConflictFilters.coerce(page_size=limit, statuses=statuses, sources=sources)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    result = ConflictQueueService().list_conflicts(filters)
    if not result.items:
        click.echo("No merge conflicts found.")
        return
    for conflict in result.items:
        click.echo(
            f"#{conflict.id:<5} {conflict.conflict_type.value:<22} {conflict.status.value:<9} "
            f"{conflict.source}:{conflict.external_id or '-'} candidates={list(conflict.candidate_customer_ids or [])}"
        )


@sync_cli.command("resolve")
@click.option("--conflict-id", required=True, type=int)
@click.option(
    "--resolution",
    required=True,
    type=click.Choice(["link_existing", "create_new", "ignore"], case_sensitive=False),
)
@click.option("--customer-id", type=int, help="Target customer for link_existing.")
@click.option("--notes", help="Free-form operator notes stored on the conflict.")
@click.pass_context
def sync_resolve(ctx, conflict_id: int, resolution: str, customer_id: Optional[int], notes: Optional[str]):
    """Resolve a held merge conflict."""
    app = _load_app(ctx)
    service = ConflictQueueService(merger=IdentityMerger.from_config(app.config))
    try:
        conflict = service.resolve(conflict_id, resolution, customer_id=customer_id, operator="cli", notes=notes)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(serialize_conflict(conflict))


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------


@sync_cli.command("import-csv")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Contact CSV to stage.",
)
@click.option("--source", default="csv", show_default=True, help="Source label stored on staged rows.")
@click.option("--drain", is_flag=True, help="Run the staged drain inline after staging.")
@click.pass_context
def sync_import_csv(ctx, file_path: Path, source: str, drain: bool):
    """Stage a contact CSV for the staged drain."""
    app = _load_app(ctx)
    try:
        with file_path.resolve().open("r", encoding="utf-8-sig", newline="") as handle:
            summary = stage_csv(handle, source=source.strip().lower() or "csv")
    except CSVHeaderError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(summary.as_dict())
    if drain:
        ctx.invoke(sync_drain)
    app.logger.info(
        "Contact CSV staged via CLI",
        extra={"sync_source": source, "sync_rows_staged": summary.staging.staged, "sync_file": str(file_path)},
    )


@sync_cli.command("drain")
@click.option("--limit", type=int, help="Rows per page.")
@click.option("--dry-run", is_flag=True)
@click.pass_context
def sync_drain(ctx, limit: Optional[int] = None, dry_run: bool = False):
    """Drain unprocessed staging rows through the identity merge until none remain."""
    app = _load_app(ctx)
    runner = SyncJobRunner(app)
    result = runner.run(RunRequest(source="staged", limit=limit, dry_run=dry_run, triggered_by="cli"))
    while result.success and result.status == SyncRunStatus.CONTINUING.value:
        result = runner.run(RunRequest(source="staged", sync_run_id=result.sync_run_id, limit=limit, triggered_by="cli"))
    _echo_json(result.as_response())
    if not result.success:
        raise click.ClickException(result.error or f"Drain ended with status {result.status}.")


@sync_cli.command("purge")
@click.option("--retention-days", type=int, help="Defaults to SYNC_STAGING_RETENTION_DAYS.")
@click.option("--dry-run", is_flag=True, help="Count rows without deleting them.")
@click.pass_context
def sync_purge(ctx, retention_days: Optional[int], dry_run: bool):
    """Delete processed staging rows past the retention window."""
    app = _load_app(ctx)
    days = retention_days or int(app.config.get("SYNC_STAGING_RETENTION_DAYS", 30))
    removed = purge_processed(retention_days=days, dry_run=dry_run)
    verb = "Would remove" if dry_run else "Removed"
    click.echo(f"{verb} {removed} processed staging row(s) older than {days} day(s).")


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


@sync_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the sync background worker."""
    app = _load_app(ctx)
    state = app.extensions.get("sync", {})
    if not state.get("worker_enabled") and not app.config.get("SYNC_WORKER_ENABLED"):
        click.echo(
            "Warning: SYNC_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)

    state = app.extensions.get("sync")
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting sync worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'sync.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))
