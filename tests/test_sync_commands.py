import re
from http import HTTPStatus

import pytest

from revops_app.models import CanonicalCustomer, StagingRecord, StagingStatus, SyncRunStatus, db
from revops_app.sync.commands import (
    PIPELINE_TABLES,
    CancelAllRuns,
    CancelRun,
    DrainStaging,
    ResolveConflict,
    StartSync,
    execute_command,
    handles,
    parse_command,
)
from revops_app.sync.contracts import RawContact, encode_cursor
from revops_app.sync.errors import CommandValidationError, UnknownSourceError
from revops_app.sync.pipeline.identity import IdentityMerger
from revops_app.sync.pipeline.staging import stage_contacts


def test_parse_command_builds_frozen_dataclass():
    command = parse_command(
        {"type": "START_SYNC", "source": " GHL ", "syncRunId": "7", "dryRun": "yes", "cursor": encode_cursor({"offset": 5})}
    )

    assert command == StartSync(source="ghl", cursor=encode_cursor({"offset": 5}), sync_run_id=7, dry_run=True)
    with pytest.raises(AttributeError):
        command.source = "stripe"


def test_parse_command_defaults_optional_fields():
    assert parse_command({"type": "cancel_all_runs"}) == CancelAllRuns()
    assert parse_command({"type": "drain_staging", "limit": 50}) == DrainStaging(limit=50)


@pytest.mark.parametrize(
    "payload, message",
    [
        (None, "must be a JSON object"),
        ({"type": "drop_tables"}, "Unknown command type"),
        ({"type": "cancel_run"}, "requires 'run_id'"),
        ({"type": "cancel_run", "run_id": 0}, "positive integer"),
        ({"type": "cancel_run", "run_id": True}, "positive integer"),
        ({"type": "cancel_run", "run_id": 1, "force": True}, "Unexpected field(s)"),
        ({"type": "start_sync", "source": "ghl", "cursor": "%%%"}, "cursor is invalid"),
        ({"type": "start_sync", "source": "ghl", "dry_run": "maybe"}, "must be a boolean"),
        ({"type": "resolve_conflict", "conflict_id": 1, "resolution": 3}, "must be a string"),
    ],
)
def test_parse_command_rejects_bad_payloads(payload, message):
    with pytest.raises(CommandValidationError, match=re.escape(message)):
        parse_command(payload)


def test_handler_registration_enforces_table_whitelist():
    with pytest.raises(RuntimeError, match="outside its whitelist"):
        handles(CancelRun, touches=PIPELINE_TABLES)


def test_execute_cancel_and_cancel_all(app, run_factory):
    first = run_factory(source="ghl", status=SyncRunStatus.RUNNING)
    second = run_factory(source="stripe", status=SyncRunStatus.CONTINUING)

    result = execute_command(CancelRun(run_id=first.id), app, operator="ops@example.com")
    assert result.http_status == HTTPStatus.OK
    assert result.payload["run"]["status"] == "cancelled"

    missing = execute_command(CancelRun(run_id=first.id), app)
    assert missing.http_status == HTTPStatus.NOT_FOUND

    remaining = execute_command(CancelAllRuns(), app)
    assert remaining.payload["cancelled_run_ids"] == [second.id]


def test_execute_start_sync_for_unknown_source(app):
    with pytest.raises(UnknownSourceError):
        execute_command(StartSync(source="hubspot"), app)


def test_execute_resolve_conflict(app):
    outcome = IdentityMerger.from_config(app.config).merge(RawContact(source="paypal", external_id="pp-1"))

    bad = execute_command(ResolveConflict(conflict_id=outcome.conflict_id, resolution="merge_everything"), app)
    assert bad.http_status == HTTPStatus.CONFLICT

    done = execute_command(ResolveConflict(conflict_id=outcome.conflict_id, resolution="ignore"), app, operator="ops")
    assert done.payload["conflict"]["status"] == "ignored"

    missing = execute_command(ResolveConflict(conflict_id=999, resolution="ignore"), app)
    assert missing.http_status == HTTPStatus.NOT_FOUND


def test_execute_drain_staging_merges_pending_rows(app):
    stage_contacts(
        [
            RawContact(source="csv", external_id="r-1", email="ana@example.com"),
            RawContact(source="csv", external_id="r-2", email="ben@example.com"),
        ]
    )

    result = execute_command(DrainStaging(), app, operator="ops")

    assert result.http_status == HTTPStatus.OK
    assert result.payload["status"] == "completed"
    assert result.payload["totalInserted"] == 2
    assert db.session.query(CanonicalCustomer).count() == 2
    statuses = {row.processing_status for row in db.session.query(StagingRecord).all()}
    assert statuses == {StagingStatus.MERGED}
