from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from revops_app.models import SyncRun, SyncRunStatus, db, utcnow
from revops_app.sync.errors import RunStateError
from revops_app.sync.pipeline.checkpoint import Checkpoint, CheckpointStore
from revops_app.sync.pipeline.controller import PageResult, SyncRunController


@pytest.fixture
def controller(app):
    return SyncRunController.from_config(app.config)


def test_start_creates_running_run(controller):
    result = controller.start("GHL", triggered_by="ops@example.com", metadata={"precedence_version": "1"})

    assert result.created is True
    run = result.run
    assert run.source == "ghl"
    assert run.status == SyncRunStatus.RUNNING
    assert run.triggered_by == "ops@example.com"
    assert run.metadata_json == {"precedence_version": "1"}
    assert run.started_at is not None


def test_second_start_reports_already_running(controller):
    first = controller.start("ghl")
    second = controller.start("ghl")

    assert second.already_running is True
    assert second.run.id == first.run.id
    assert controller.start("stripe").created is True


def test_start_replaces_stale_active_run(controller, run_factory):
    stale = run_factory(source="ghl", status=SyncRunStatus.CONTINUING, idle_minutes=45)

    result = controller.start("ghl")

    assert result.created is True
    assert result.reaped_run_id == stale.id
    db.session.refresh(stale)
    assert stale.status == SyncRunStatus.FAILED
    assert stale.error_message == "timeout"
    assert stale.completed_at is not None


def test_per_source_stale_window(app, run_factory):
    controller = SyncRunController(stale_minutes=30, stale_minutes_by_source={"PAYPAL": 120})
    run_factory(source="paypal", status=SyncRunStatus.RUNNING, idle_minutes=45)

    assert controller.start("paypal").already_running is True


def test_advance_accumulates_counters_and_checkpoint(controller):
    run = controller.start("ghl").run

    controller.advance(run.id, PageResult(fetched=3, inserted=2, updated=1, next_cursor={"offset": 3}, has_more=True))
    assert run.status == SyncRunStatus.CONTINUING
    assert run.checkpoint["cursor"] == {"offset": 3}
    assert run.checkpoint["page"] == 1

    controller.advance(run.id, PageResult(fetched=1, updated=1, skipped=1, next_cursor=None, has_more=False))

    assert run.status == SyncRunStatus.COMPLETED
    assert run.completed_at is not None
    assert run.totals() == {
        "fetched": 4,
        "inserted": 2,
        "updated": 2,
        "skipped": 1,
        "conflicts": 0,
    }
    assert run.pages_processed == 2
    checkpoint = CheckpointStore().load(run)
    assert checkpoint.cursor == {"offset": 3}
    assert checkpoint.page == 2
    assert checkpoint.totals["fetched"] == 4


def test_advance_rejects_terminal_runs(controller, run_factory):
    run = run_factory(status=SyncRunStatus.CANCELLED)

    with pytest.raises(RunStateError, match="counters are frozen"):
        controller.advance(run.id, PageResult(fetched=10))

    db.session.refresh(run)
    assert run.total_fetched == 0


def test_resume_moves_continuing_run_back_to_running(controller, run_factory):
    run = run_factory(status=SyncRunStatus.CONTINUING, checkpoint={"cursor": {"offset": 100}, "page": 1})

    resumed = controller.resume(run.id)

    assert resumed.status == SyncRunStatus.RUNNING
    assert controller.checkpoints.resume_cursor(resumed) == {"offset": 100}


def test_resume_rejects_missing_and_terminal_runs(controller, run_factory):
    done = run_factory(status=SyncRunStatus.COMPLETED)

    with pytest.raises(RunStateError, match="not found"):
        controller.resume(404)
    with pytest.raises(RunStateError) as excinfo:
        controller.resume(done.id)
    assert excinfo.value.status == "completed"


def test_cancel_active_run_and_reject_terminal(controller, run_factory):
    active = run_factory(status=SyncRunStatus.RUNNING)
    done = run_factory(source="stripe", status=SyncRunStatus.FAILED)

    cancelled = controller.cancel(active.id)

    assert cancelled.status == SyncRunStatus.CANCELLED
    assert controller.is_cancelled(active.id)
    with pytest.raises(RunStateError, match="already failed"):
        controller.cancel(done.id)
    with pytest.raises(RunStateError, match="not found"):
        controller.cancel(999)


def test_cancel_all_filters_by_source(controller, run_factory):
    ghl = run_factory(source="ghl", status=SyncRunStatus.RUNNING)
    stripe = run_factory(source="stripe", status=SyncRunStatus.CONTINUING)
    run_factory(source="paypal", status=SyncRunStatus.COMPLETED)

    assert controller.cancel_all(source="stripe") == [stripe.id]
    assert controller.cancel_all() == [ghl.id]
    assert controller.cancel_all() == []


def test_reap_stale_fails_only_idle_runs(controller, run_factory):
    idle = run_factory(source="ghl", status=SyncRunStatus.RUNNING, idle_minutes=31)
    fresh = run_factory(source="stripe", status=SyncRunStatus.CONTINUING, idle_minutes=5)

    assert controller.reap_stale() == [idle.id]

    db.session.refresh(idle)
    db.session.refresh(fresh)
    assert idle.status == SyncRunStatus.FAILED
    assert idle.error_message == "stale"
    assert fresh.status == SyncRunStatus.CONTINUING


def test_heartbeat_and_fail(app):
    clock = {"now": utcnow()}
    controller = SyncRunController(now=lambda: clock["now"])
    run = controller.start("ghl").run

    clock["now"] += timedelta(minutes=10)
    controller.heartbeat(run.id)
    db.session.refresh(run)
    assert run.last_activity == clock["now"]

    failed = controller.fail(run.id, RuntimeError("platform said no"))
    assert failed.status == SyncRunStatus.FAILED
    assert failed.error_message == "platform said no"
    assert controller.fail(run.id, "again").error_message == "platform said no"
    assert controller.fail(12345, "missing") is None


def test_active_run_index_rejects_second_active_row(app, run_factory):
    run_factory(source="ghl", status=SyncRunStatus.RUNNING)

    with pytest.raises(IntegrityError):
        run_factory(source="ghl", status=SyncRunStatus.CONTINUING)
    db.session.rollback()
    assert db.session.query(SyncRun).count() == 1


def test_checkpoint_round_trip():
    checkpoint = Checkpoint(cursor={"page": 2}, page=1, last_activity="2026-01-01T00:00:00+00:00", totals={"fetched": 5})

    assert Checkpoint.from_json(checkpoint.to_json()) == checkpoint
    assert Checkpoint.from_json(None) == Checkpoint()
