"""
Sync blueprint endpoints: job control, run history, conflict queue, operator
commands and health.
"""

from __future__ import annotations

import time
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import NoResultFound

from config.monitoring import SyncMonitoring
from revops_app.auth import ensure_operator_api, operator_id
from revops_app.sync.adapters import CSVHeaderError
from revops_app.sync.contracts import decode_cursor
from revops_app.sync.resilience import get_datastore_breaker
from revops_app.utils.sync import is_sync_enabled, is_sync_paused

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .commands import execute_command, parse_command
from .errors import CommandValidationError, RunStateError, UnknownSourceError
from .pipeline import (
    ConflictFilters,
    ConflictQueueService,
    IdentityMerger,
    RunFilters,
    RunRequest,
    SyncJobRunner,
    SyncRunController,
    SyncRunService,
    pending_count,
    serialize_conflict,
    serialize_run,
    serialize_stats,
    stage_csv,
    status_counts,
)
from .registry import SourceDescriptor
from .utils import allowed_file, cleanup_upload, ensure_known_source, persist_upload

sync_blueprint = Blueprint("sync", __name__, url_prefix="/sync")

_run_service = SyncRunService()


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _ensure_sync_enabled_api():
    if not is_sync_enabled(current_app):
        return _json_error("Sync is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _guard():
    return _ensure_sync_enabled_api() or ensure_operator_api()


def _split_csv(value: str | None):
    if value in (None, ""):
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _coerce_optional_int(value, label: str) -> int | None:
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise ValueError(f"{label} must be a positive integer.")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{label} must be a positive integer.") from None
    if number < 1:
        raise ValueError(f"{label} must be a positive integer.")
    return number


def _coerce_flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _serialize_source(descriptor: SourceDescriptor) -> dict:
    return {
        "name": descriptor.name,
        "title": descriptor.title,
        "cursor_kind": descriptor.cursor_kind,
        "webhook": descriptor.webhook,
        "summary": descriptor.summary,
        "missing_settings": list(descriptor.missing_settings(current_app.config)),
    }


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@sync_blueprint.get("/health")
def sync_healthcheck():
    """
    Sync feature status, configured sources and the datastore circuit state.
    """
    state = current_app.extensions.get("sync", {})
    breaker = get_datastore_breaker(current_app)
    payload = {
        "status": "ok",
        "enabled": state.get("enabled", False),
        "paused": is_sync_paused(current_app),
        "worker_enabled": state.get("worker_enabled", False),
        "sources": [_serialize_source(descriptor) for descriptor in state.get("active_sources", ())],
        "circuit": breaker.snapshot().as_dict(),
        "staging": {"pending": pending_count(), "by_status": status_counts()},
        "conflicts": {"pending": ConflictQueueService().pending_counts()},
    }
    if breaker.is_open:
        payload["status"] = "degraded"
    return jsonify(payload), HTTPStatus.OK


@sync_blueprint.get("/worker_health")
def sync_worker_health():
    """
    Validate sync worker availability via the heartbeat task.
    """
    state = current_app.extensions.get("sync", {})
    timeout_seconds = float(request.args.get("timeout", 5))
    payload = {
        "sync_enabled": state.get("enabled", False),
        "worker_enabled": state.get("worker_enabled", False),
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }
    if not payload["sync_enabled"] or not payload["worker_enabled"]:
        payload["status"] = "disabled"
        return jsonify(payload), HTTPStatus.OK

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("sync.healthcheck") if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), HTTPStatus.INTERNAL_SERVER_ERROR

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        payload["status"] = "ok"
        return jsonify(payload), HTTPStatus.OK
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), HTTPStatus.GATEWAY_TIMEOUT


# ---------------------------------------------------------------------------
# Job control
# ---------------------------------------------------------------------------


@sync_blueprint.post("/<source>/run")
def sync_run(source: str):
    guard = _guard()
    if guard:
        return guard

    start_time = time.perf_counter()
    try:
        source = ensure_known_source(current_app, source)
    except UnknownSourceError as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)

    body = _json_body()
    try:
        run_request = RunRequest(
            source=source,
            cursor=decode_cursor(body.get("cursor")),
            sync_run_id=_coerce_optional_int(body.get("syncRunId"), "syncRunId"),
            limit=_coerce_optional_int(body.get("limit"), "limit"),
            dry_run=_coerce_flag(body.get("dryRun")),
            resume_failed=_coerce_flag(body.get("resumeFailed")),
            triggered_by=operator_id(),
        )
    except ValueError as exc:
        SyncMonitoring.record_job_control(source=source, status="invalid_request", duration_seconds=0.0)
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    result = SyncJobRunner(current_app._get_current_object()).run(run_request)
    SyncMonitoring.record_job_control(
        source=source,
        status=result.status,
        duration_seconds=time.perf_counter() - start_time,
    )
    return jsonify(result.as_response()), result.http_status


@sync_blueprint.post("/runs/<int:run_id>/cancel")
def sync_run_cancel(run_id: int):
    guard = _guard()
    if guard:
        return guard

    try:
        run = SyncRunController.from_config(current_app.config).cancel(run_id)
    except RunStateError as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)

    current_app.logger.info(
        "Sync run cancelled by operator",
        extra={"sync_run_id": run_id, "sync_source": run.source, "sync_operator": operator_id()},
    )
    return jsonify({"success": True, "run": serialize_run(run)}), HTTPStatus.OK


@sync_blueprint.post("/runs/reap")
def sync_runs_reap():
    guard = _guard()
    if guard:
        return guard

    reaped = SyncRunController.from_config(current_app.config).reap_stale()
    return jsonify({"success": True, "reaped_run_ids": reaped}), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Run history
# ---------------------------------------------------------------------------


def _parse_run_filters():
    raw = request.args
    return RunFilters.coerce(
        page=raw.get("page"),
        page_size=raw.get("per_page") or raw.get("page_size") or current_app.config.get("SYNC_RUNS_PAGE_SIZE_DEFAULT"),
        sort=raw.get("sort"),
        statuses=_split_csv(raw.get("status")),
        sources=_split_csv(raw.get("source")),
        started_from=raw.get("started_from"),
        started_to=raw.get("started_to"),
        include_dry_runs=raw.get("include_dry_runs"),
    )


@sync_blueprint.get("/runs")
def sync_runs_list():
    guard = _guard()
    if guard:
        return guard

    try:
        filters = _parse_run_filters()
    except ValueError as exc:
        SyncMonitoring.record_runs_list(duration_seconds=0.0, status="invalid_request", result_count=0)
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    result = _run_service.list_runs(filters)
    duration = time.perf_counter() - start_time
    SyncMonitoring.record_runs_list(duration_seconds=duration, status="success", result_count=len(result.items))

    response_payload = {
        "runs": [serialize_run(run) for run in result.items],
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "total_pages": result.total_pages,
        "filters": {
            "sort": filters.sort,
            "statuses": [status.value for status in filters.statuses],
            "sources": list(filters.sources),
            "started_from": filters.started_from.isoformat() if filters.started_from else None,
            "started_to": filters.started_to.isoformat() if filters.started_to else None,
            "include_dry_runs": filters.include_dry_runs,
        },
    }
    current_app.logger.info(
        "Sync runs list retrieved",
        extra={
            "sync_run_count": len(result.items),
            "sync_total_runs": result.total,
            "sync_response_time_ms": round(duration * 1000, 2),
        },
    )
    return jsonify(response_payload), HTTPStatus.OK


@sync_blueprint.get("/runs/<int:run_id>")
def sync_run_detail(run_id: int):
    guard = _guard()
    if guard:
        return guard

    try:
        run = _run_service.get_run(run_id)
    except NoResultFound:
        return _json_error(f"Sync run {run_id} not found.", HTTPStatus.NOT_FOUND)
    return jsonify(serialize_run(run, include_checkpoint=True)), HTTPStatus.OK


@sync_blueprint.get("/runs/stats")
def sync_runs_stats():
    guard = _guard()
    if guard:
        return guard

    try:
        filters = _parse_run_filters()
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify(serialize_stats(_run_service.get_stats(filters))), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Conflict queue
# ---------------------------------------------------------------------------


@sync_blueprint.get("/conflicts")
def sync_conflicts_list():
    guard = _guard()
    if guard:
        return guard

    raw = request.args
    try:
        filters = ConflictFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("per_page") or raw.get("page_size"),
            statuses=_split_csv(raw.get("status") or "pending"),
            sources=_split_csv(raw.get("source")),
            conflict_types=_split_csv(raw.get("conflict_type")),
            sync_run_id=raw.get("sync_run_id"),
        )
    except ValueError as exc:
        SyncMonitoring.record_conflicts_list(duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    result = ConflictQueueService().list_conflicts(filters)
    SyncMonitoring.record_conflicts_list(duration_seconds=time.perf_counter() - start_time, status="success")
    return (
        jsonify(
            {
                "conflicts": [serialize_conflict(conflict) for conflict in result.items],
                "total": result.total,
                "page": result.page,
                "page_size": result.page_size,
                "total_pages": result.total_pages,
            }
        ),
        HTTPStatus.OK,
    )


@sync_blueprint.get("/conflicts/<int:conflict_id>")
def sync_conflict_detail(conflict_id: int):
    guard = _guard()
    if guard:
        return guard

    try:
        conflict = ConflictQueueService().get_conflict(conflict_id)
    except NoResultFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    return jsonify(serialize_conflict(conflict, include_raw=True)), HTTPStatus.OK


@sync_blueprint.post("/conflicts/<int:conflict_id>/resolve")
def sync_conflict_resolve(conflict_id: int):
    guard = _guard()
    if guard:
        return guard

    body = _json_body()
    resolution = str(body.get("resolution") or "").strip().lower()
    service = ConflictQueueService(merger=IdentityMerger.from_config(current_app.config))
    try:
        conflict = service.resolve(
            conflict_id,
            resolution,
            customer_id=_coerce_optional_int(body.get("customer_id") or body.get("customerId"), "customer_id"),
            operator=operator_id(),
            notes=body.get("notes"),
        )
    except NoResultFound as exc:
        SyncMonitoring.record_conflict_resolution(resolution=resolution or "unknown", status="not_found")
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except ValueError as exc:
        SyncMonitoring.record_conflict_resolution(resolution=resolution or "unknown", status="rejected")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    SyncMonitoring.record_conflict_resolution(resolution=resolution, status="success")
    current_app.logger.info(
        "Merge conflict resolved",
        extra={
            "sync_conflict_id": conflict_id,
            "sync_resolution": resolution,
            "sync_customer_id": conflict.resolved_customer_id,
            "sync_operator": operator_id(),
        },
    )
    return jsonify({"success": True, "conflict": serialize_conflict(conflict)}), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Operator commands and uploads
# ---------------------------------------------------------------------------


@sync_blueprint.post("/commands")
def sync_command():
    guard = _guard()
    if guard:
        return guard

    try:
        command = parse_command(request.get_json(silent=True))
        result = execute_command(command, current_app._get_current_object(), operator=operator_id())
    except CommandValidationError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    except UnknownSourceError as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    return jsonify({"command": command.type, **result.payload}), result.http_status


@sync_blueprint.post("/import/csv")
def sync_import_csv():
    """
    Stage an uploaded contact CSV; the ``staged`` drain run merges it.
    """
    guard = _guard()
    if guard:
        return guard

    upload = request.files.get("file")
    if upload is None or not allowed_file(upload.filename or ""):
        return _json_error("A .csv file upload named 'file' is required.", HTTPStatus.BAD_REQUEST)
    source = (request.form.get("source") or "csv").strip().lower() or "csv"

    path = persist_upload(upload, current_app)
    try:
        with path.open("r", encoding="utf-8-sig", newline="") as handle:
            summary = stage_csv(handle, source=source)
    except CSVHeaderError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    finally:
        cleanup_upload(path)

    current_app.logger.info(
        "Contact CSV staged",
        extra={"sync_source": source, "sync_rows_staged": summary.staging.staged, "sync_operator": operator_id()},
    )
    return jsonify({"success": True, "source": source, **summary.as_dict()}), HTTPStatus.OK
