"""
Closed operator command set.

``POST /sync/commands`` accepts ``{"type": "<command>", ...fields}``. The
payload is parsed into one of the frozen command dataclasses below and
validated before anything runs. Each command declares the tables it may
touch; each handler declares the tables it writes and registration refuses a
handler that reaches outside its command's whitelist.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable, ClassVar, Dict, FrozenSet, Mapping, Type, Union

from flask import Flask
from sqlalchemy.exc import NoResultFound

from revops_app.models import CanonicalCustomer, ExternalIdentity, MergeConflict, StagingRecord, SyncRun
from revops_app.sync.contracts import decode_cursor

from .errors import CommandValidationError, RunStateError

SYNC_RUNS = SyncRun.__tablename__
STAGING_RECORDS = StagingRecord.__tablename__
CANONICAL_CUSTOMERS = CanonicalCustomer.__tablename__
EXTERNAL_IDENTITIES = ExternalIdentity.__tablename__
MERGE_CONFLICTS = MergeConflict.__tablename__

PIPELINE_TABLES = frozenset({SYNC_RUNS, STAGING_RECORDS, CANONICAL_CUSTOMERS, EXTERNAL_IDENTITIES, MERGE_CONFLICTS})


@dataclass(frozen=True)
class StartSync:
    type: ClassVar[str] = "start_sync"
    tables: ClassVar[FrozenSet[str]] = PIPELINE_TABLES

    source: str
    cursor: str | None = None
    sync_run_id: int | None = None
    limit: int | None = None
    dry_run: bool = False


@dataclass(frozen=True)
class CancelRun:
    type: ClassVar[str] = "cancel_run"
    tables: ClassVar[FrozenSet[str]] = frozenset({SYNC_RUNS})

    run_id: int


@dataclass(frozen=True)
class CancelAllRuns:
    type: ClassVar[str] = "cancel_all_runs"
    tables: ClassVar[FrozenSet[str]] = frozenset({SYNC_RUNS})

    source: str | None = None


@dataclass(frozen=True)
class ReapStaleRuns:
    type: ClassVar[str] = "reap_stale_runs"
    tables: ClassVar[FrozenSet[str]] = frozenset({SYNC_RUNS})


@dataclass(frozen=True)
class ResolveConflict:
    type: ClassVar[str] = "resolve_conflict"
    tables: ClassVar[FrozenSet[str]] = frozenset({MERGE_CONFLICTS, CANONICAL_CUSTOMERS, EXTERNAL_IDENTITIES})

    conflict_id: int
    resolution: str
    customer_id: int | None = None
    notes: str | None = None


@dataclass(frozen=True)
class DrainStaging:
    type: ClassVar[str] = "drain_staging"
    tables: ClassVar[FrozenSet[str]] = PIPELINE_TABLES

    sync_run_id: int | None = None
    limit: int | None = None
    dry_run: bool = False


Command = Union[StartSync, CancelRun, CancelAllRuns, ReapStaleRuns, ResolveConflict, DrainStaging]

COMMAND_TYPES: Dict[str, Type[Any]] = {
    cls.type: cls for cls in (StartSync, CancelRun, CancelAllRuns, ReapStaleRuns, ResolveConflict, DrainStaging)
}

_CAMEL_ALIASES = {
    "syncRunId": "sync_run_id",
    "runId": "run_id",
    "dryRun": "dry_run",
    "conflictId": "conflict_id",
    "customerId": "customer_id",
}


@dataclass(frozen=True)
class CommandResult:
    payload: Dict[str, Any]
    http_status: HTTPStatus = HTTPStatus.OK


def parse_command(payload: Mapping[str, Any] | None) -> Command:
    """
    Build a command from a JSON payload.

    Raises:
        CommandValidationError: On unknown types, unknown fields or bad values.
    """

    if not isinstance(payload, Mapping):
        raise CommandValidationError("Command payload must be a JSON object.")
    data = {_CAMEL_ALIASES.get(key, key): value for key, value in payload.items()}
    command_type = str(data.pop("type", "") or "").strip().lower()
    command_cls = COMMAND_TYPES.get(command_type)
    if command_cls is None:
        allowed = ", ".join(sorted(COMMAND_TYPES))
        raise CommandValidationError(f"Unknown command type '{command_type}'. Expected one of: {allowed}.")

    fields = {field.name: field for field in dataclasses.fields(command_cls)}
    unknown = sorted(set(data) - set(fields))
    if unknown:
        raise CommandValidationError(f"Unexpected field(s) for {command_type}: {', '.join(unknown)}.")

    values: Dict[str, Any] = {}
    for name, field in fields.items():
        required = field.default is dataclasses.MISSING
        raw = data.get(name)
        if raw is None or raw == "":
            if required:
                raise CommandValidationError(f"{command_type} requires '{name}'.")
            continue
        values[name] = _coerce_field(command_type, name, raw)
    return command_cls(**values)


def _coerce_field(command_type: str, name: str, raw: Any) -> Any:
    if name in {"run_id", "sync_run_id", "conflict_id", "customer_id", "limit"}:
        if isinstance(raw, bool):
            raise CommandValidationError(f"{command_type}.{name} must be a positive integer.")
        try:
            number = int(raw)
        except (TypeError, ValueError):
            raise CommandValidationError(f"{command_type}.{name} must be a positive integer.") from None
        if number < 1:
            raise CommandValidationError(f"{command_type}.{name} must be a positive integer.")
        return number
    if name == "dry_run":
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off"}:
            return False
        raise CommandValidationError(f"{command_type}.dry_run must be a boolean.")
    if not isinstance(raw, str):
        raise CommandValidationError(f"{command_type}.{name} must be a string.")
    value = raw.strip()
    if name == "source":
        return value.lower()
    if name == "cursor":
        try:
            decode_cursor(value)
        except ValueError as exc:
            raise CommandValidationError(f"{command_type}.cursor is invalid: {exc}") from None
    return value


# ----------------------------------------------------------------------
# Dispatch
# ----------------------------------------------------------------------

Handler = Callable[[Any, Flask, "str | None"], CommandResult]
_HANDLERS: Dict[Type[Any], Handler] = {}


def handles(command_cls: Type[Any], *, touches: FrozenSet[str]) -> Callable[[Handler], Handler]:
    """Register a handler; its tables must stay inside the command's whitelist."""

    outside = touches - command_cls.tables
    if outside:
        raise RuntimeError(
            f"Handler for {command_cls.type} touches tables outside its whitelist: {', '.join(sorted(outside))}"
        )

    def decorator(func: Handler) -> Handler:
        _HANDLERS[command_cls] = func
        return func

    return decorator


def execute_command(command: Command, app: Flask, *, operator: str | None = None) -> CommandResult:
    handler = _HANDLERS.get(type(command))
    if handler is None:
        raise CommandValidationError(f"No handler registered for {type(command).__name__}.")
    app.logger.info(
        "Executing sync command %s",
        command.type,
        extra={"sync_command": command.type, "sync_operator": operator},
    )
    return handler(command, app, operator)


def _job_result(result) -> CommandResult:
    return CommandResult(payload=result.as_response(), http_status=result.http_status)


@handles(StartSync, touches=PIPELINE_TABLES)
def _start_sync(command: StartSync, app: Flask, operator: str | None) -> CommandResult:
    from .pipeline import RunRequest, SyncJobRunner
    from .utils import ensure_known_source

    source = ensure_known_source(app, command.source)
    result = SyncJobRunner(app).run(
        RunRequest(
            source=source,
            cursor=decode_cursor(command.cursor) if command.cursor else None,
            sync_run_id=command.sync_run_id,
            limit=command.limit,
            dry_run=command.dry_run,
            triggered_by=operator,
        )
    )
    return _job_result(result)


@handles(CancelRun, touches=frozenset({SYNC_RUNS}))
def _cancel_run(command: CancelRun, app: Flask, operator: str | None) -> CommandResult:
    from .pipeline import SyncRunController, serialize_run

    try:
        run = SyncRunController.from_config(app.config).cancel(command.run_id)
    except RunStateError as exc:
        return CommandResult(payload={"success": False, "error": str(exc)}, http_status=HTTPStatus.NOT_FOUND)
    return CommandResult(payload={"success": True, "run": serialize_run(run)})


@handles(CancelAllRuns, touches=frozenset({SYNC_RUNS}))
def _cancel_all(command: CancelAllRuns, app: Flask, operator: str | None) -> CommandResult:
    from .pipeline import SyncRunController

    cancelled = SyncRunController.from_config(app.config).cancel_all(source=command.source)
    return CommandResult(payload={"success": True, "cancelled_run_ids": cancelled})


@handles(ReapStaleRuns, touches=frozenset({SYNC_RUNS}))
def _reap_stale(command: ReapStaleRuns, app: Flask, operator: str | None) -> CommandResult:
    from .pipeline import SyncRunController

    reaped = SyncRunController.from_config(app.config).reap_stale()
    return CommandResult(payload={"success": True, "reaped_run_ids": reaped})


@handles(ResolveConflict, touches=frozenset({MERGE_CONFLICTS, CANONICAL_CUSTOMERS, EXTERNAL_IDENTITIES}))
def _resolve_conflict(command: ResolveConflict, app: Flask, operator: str | None) -> CommandResult:
    from .pipeline import ConflictQueueService, IdentityMerger, serialize_conflict

    service = ConflictQueueService(merger=IdentityMerger.from_config(app.config))
    try:
        conflict = service.resolve(
            command.conflict_id,
            command.resolution,
            customer_id=command.customer_id,
            operator=operator,
            notes=command.notes,
        )
    except NoResultFound as exc:
        return CommandResult(payload={"success": False, "error": str(exc)}, http_status=HTTPStatus.NOT_FOUND)
    except ValueError as exc:
        return CommandResult(payload={"success": False, "error": str(exc)}, http_status=HTTPStatus.CONFLICT)
    return CommandResult(payload={"success": True, "conflict": serialize_conflict(conflict)})


@handles(DrainStaging, touches=PIPELINE_TABLES)
def _drain_staging(command: DrainStaging, app: Flask, operator: str | None) -> CommandResult:
    from .pipeline import RunRequest, SyncJobRunner

    result = SyncJobRunner(app).run(
        RunRequest(
            source="staged",
            sync_run_id=command.sync_run_id,
            limit=command.limit,
            dry_run=command.dry_run,
            triggered_by=operator,
        )
    )
    return _job_result(result)


__all__ = [
    "COMMAND_TYPES",
    "CancelAllRuns",
    "CancelRun",
    "Command",
    "CommandResult",
    "DrainStaging",
    "ReapStaleRuns",
    "ResolveConflict",
    "StartSync",
    "execute_command",
    "handles",
    "parse_command",
]
