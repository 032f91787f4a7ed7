from http import HTTPStatus
from types import SimpleNamespace

import pytest

from revops_app.models import (
    CanonicalCustomer,
    StagingRecord,
    StagingStatus,
    SyncRun,
    SyncRunStatus,
    db,
)
from revops_app.sync.adapters import SourceAdapter
from revops_app.sync.contracts import FetchedPage, decode_cursor, encode_cursor
from revops_app.sync.errors import AdapterConfigError, PlatformRejectedError
from revops_app.sync.pipeline import RunRequest, SyncJobRunner, SyncRunController
from revops_app.sync.pipeline.paginator import ResumablePaginator
from revops_app.sync.pipeline.identity import IdentityMerger

PAGE_ONE = [
    {"id": "1", "email": "a@x.com"},
    {"id": "2", "phone": "+15551234567"},
]
PAGE_TWO = [
    {"id": "1", "email": "a@x.com", "tags": ["vip"]},
]


class ScriptedAdapter(SourceAdapter):
    """Serves canned pages keyed by page number."""

    name = "ghl"
    cursor_kind = "page"

    def __init__(self, pages, *, error=None, on_fetch=None):
        super().__init__()
        self.pages = pages
        self.error = error
        self.on_fetch = on_fetch
        self.requests = []

    def initial_cursor(self):
        return {"page": 1}

    def fetch_page(self, cursor, page_size):
        self.requests.append(dict(cursor or {}))
        if self.on_fetch is not None:
            self.on_fetch()
        if self.error is not None:
            raise self.error
        number = int((cursor or {}).get("page") or 1)
        records = self.pages.get(number, [])
        return self.build_page(records, next_cursor={"page": number + 1}, has_more=number < len(self.pages))


@pytest.fixture
def adapter():
    return ScriptedAdapter({1: PAGE_ONE, 2: PAGE_TWO})


@pytest.fixture
def job_runner(app, adapter):
    return SyncJobRunner(app, adapter_factory=lambda source: adapter)


def test_two_page_run_merges_and_completes(job_runner, adapter):
    first = job_runner.run(RunRequest(source="ghl"))

    assert first.success is True
    assert first.status == "continuing"
    assert first.has_more is True
    assert db.session.query(CanonicalCustomer).count() == 2
    response = first.as_response()
    assert decode_cursor(response["nextCursor"]) == {"page": 2}
    assert response["totalInserted"] == 2

    second = job_runner.run(
        RunRequest(source="ghl", sync_run_id=first.sync_run_id, cursor=decode_cursor(response["nextCursor"]))
    )

    assert second.status == "completed"
    assert second.has_more is False
    payload = second.as_response()
    assert payload["totalFetched"] == 3
    assert payload["totalInserted"] == 2
    assert payload["totalUpdated"] == 1
    assert payload["totalUpserted"] == 3
    customer = IdentityMerger.find_identity("ghl", "1").customer
    assert customer.tags == ["vip"]
    run = db.session.get(SyncRun, first.sync_run_id)
    assert run.status == SyncRunStatus.COMPLETED
    assert run.metadata_json["precedence_version"] == "1"
    assert adapter.requests == [{"page": 1}, {"page": 2}]


def test_resume_without_cursor_uses_checkpoint(job_runner, adapter):
    first = job_runner.run(RunRequest(source="ghl"))

    second = job_runner.run(RunRequest(source="ghl", sync_run_id=first.sync_run_id))

    assert adapter.requests[-1] == {"page": 2}
    assert second.status == "completed"


def test_replaying_a_page_creates_no_duplicates(job_runner):
    first = job_runner.run(RunRequest(source="ghl", cursor={"page": 1}))
    SyncRunController().cancel(first.sync_run_id)

    replay = job_runner.run(RunRequest(source="ghl", cursor={"page": 1}))

    assert replay.page == {"fetched": 2, "inserted": 0, "updated": 2, "skipped": 0, "conflicts": 0}
    assert db.session.query(CanonicalCustomer).count() == 2


def test_pages_are_staged_and_marked_merged(job_runner):
    job_runner.run(RunRequest(source="ghl"))

    rows = db.session.query(StagingRecord).order_by(StagingRecord.external_id).all()
    assert [(row.external_id, row.processing_status) for row in rows] == [
        ("1", StagingStatus.MERGED),
        ("2", StagingStatus.MERGED),
    ]
    assert rows[0].payload_json == {"id": "1", "email": "a@x.com"}
    assert rows[0].sync_run_id is not None


def test_second_start_is_rejected_with_conflict(job_runner):
    job_runner.run(RunRequest(source="ghl"))

    result = job_runner.run(RunRequest(source="ghl"))

    assert result.status == "already_running"
    assert result.success is False
    assert result.http_status == HTTPStatus.CONFLICT


def test_paused_sync_skips_without_creating_runs(app, job_runner, adapter):
    app.config["SYNC_PAUSED"] = True

    result = job_runner.run(RunRequest(source="ghl"))

    assert result.status == "skipped"
    assert result.success is True
    assert adapter.requests == []
    assert db.session.query(SyncRun).count() == 0


def test_platform_rejection_fails_the_run(app):
    adapter = ScriptedAdapter({}, error=PlatformRejectedError("ghl rejected request (HTTP 401)", source="ghl"))
    result = SyncJobRunner(app, adapter_factory=lambda source: adapter).run(RunRequest(source="ghl"))

    assert result.status == "failed"
    assert result.http_status == HTTPStatus.BAD_GATEWAY
    assert "HTTP 401" in result.error
    run = db.session.get(SyncRun, result.sync_run_id)
    assert run.status == SyncRunStatus.FAILED
    assert "HTTP 401" in run.error_message


def test_missing_credentials_report_service_unavailable(app):
    def factory(source):
        raise AdapterConfigError("GHL_API_KEY and GHL_LOCATION_ID must be configured.", source=source)

    result = SyncJobRunner(app, adapter_factory=factory).run(RunRequest(source="ghl"))

    assert result.http_status == HTTPStatus.SERVICE_UNAVAILABLE
    assert db.session.get(SyncRun, result.sync_run_id).status == SyncRunStatus.FAILED


def test_cancellation_during_fetch_stops_before_merging(app):
    def cancel_active():
        controller = SyncRunController()
        controller.cancel(controller.get_active_run("ghl").id)

    adapter = ScriptedAdapter({1: PAGE_ONE}, on_fetch=cancel_active)
    result = SyncJobRunner(app, adapter_factory=lambda source: adapter).run(RunRequest(source="ghl"))

    assert result.status == "cancelled"
    assert result.success is True
    assert db.session.query(CanonicalCustomer).count() == 0
    assert db.session.get(SyncRun, result.sync_run_id).total_fetched == 0


def test_resuming_a_cancelled_run_reports_its_status(job_runner, run_factory):
    run = run_factory(status=SyncRunStatus.CANCELLED)

    result = job_runner.run(RunRequest(source="ghl", sync_run_id=run.id))

    assert result.status == "cancelled"
    assert result.sync_run_id == run.id


def test_unknown_run_id_is_not_found(job_runner):
    result = job_runner.run(RunRequest(source="ghl", sync_run_id=4242))

    assert result.http_status == HTTPStatus.NOT_FOUND
    assert result.success is False


def test_run_for_another_source_is_failed(job_runner, run_factory):
    run = run_factory(source="stripe", status=SyncRunStatus.CONTINUING)

    result = job_runner.run(RunRequest(source="ghl", sync_run_id=run.id))

    assert result.http_status == HTTPStatus.BAD_REQUEST
    db.session.refresh(run)
    assert run.status == SyncRunStatus.FAILED


def test_dry_run_counts_without_writing(job_runner):
    result = job_runner.run(RunRequest(source="ghl", dry_run=True))

    assert result.page["inserted"] == 2
    assert db.session.query(CanonicalCustomer).count() == 0
    assert db.session.query(StagingRecord).count() == 0
    assert db.session.get(SyncRun, result.sync_run_id).dry_run is True


def test_unexpected_errors_fail_the_run_and_propagate(app):
    adapter = ScriptedAdapter({}, error=KeyError("boom"))

    with pytest.raises(KeyError):
        SyncJobRunner(app, adapter_factory=lambda source: adapter).run(RunRequest(source="ghl"))

    run = db.session.query(SyncRun).one()
    assert run.status == SyncRunStatus.FAILED


def test_page_size_is_clamped(app, job_runner, monkeypatch):
    monkeypatch.setitem(app.config, "SYNC_MAX_PAGE_SIZE", 50)

    assert job_runner._page_size(None) == 50
    assert job_runner._page_size(10) == 10
    assert job_runner._page_size(5000) == 50


def test_auto_continue_queues_the_next_page(app, job_runner, monkeypatch):
    from revops_app.sync import tasks

    queued = []
    monkeypatch.setattr(tasks, "advance_sync", SimpleNamespace(delay=lambda **kwargs: queued.append(kwargs)))
    app.config.update(SYNC_AUTO_CONTINUE=True, SYNC_WORKER_ENABLED=True)

    result = job_runner.run(RunRequest(source="ghl"))

    assert queued == [{"source": "ghl", "sync_run_id": result.sync_run_id}]


def test_paginator_treats_more_without_cursor_as_last_page(run_factory):
    class CursorlessAdapter(ScriptedAdapter):
        def fetch_page(self, cursor, page_size):
            return FetchedPage(records=(), next_cursor=None, has_more=True)

    paginator = ResumablePaginator(CursorlessAdapter({}))
    page = paginator.fetch({"page": 7}, 10)

    assert page.has_more is False
    assert page.next_cursor == {"page": 7}

    run = run_factory(status=SyncRunStatus.RUNNING, checkpoint={"cursor": {"page": 3}})
    assert paginator.resolve_cursor(run) == {"page": 3}
    assert paginator.resolve_cursor(run, {"page": 9}) == {"page": 9}


def test_job_result_response_encodes_cursor():
    from revops_app.sync.pipeline.runner import JobResult

    payload = JobResult(success=True, status="continuing", sync_run_id=3, has_more=True, next_cursor={"offset": 100}).as_response()

    assert payload["nextCursor"] == encode_cursor({"offset": 100})
    assert payload["syncRunId"] == 3


def test_failed_page_reports_its_cursor_and_can_be_resumed(job_runner, adapter):
    first = job_runner.run(RunRequest(source="ghl"))
    adapter.error = PlatformRejectedError("ghl rejected request (HTTP 500)", source="ghl")

    failed = job_runner.run(RunRequest(source="ghl", sync_run_id=first.sync_run_id))

    assert failed.status == "failed"
    assert decode_cursor(failed.as_response()["nextCursor"]) == {"page": 2}

    adapter.error = None
    retried = job_runner.run(RunRequest(source="ghl", resume_failed=True))

    assert retried.sync_run_id != first.sync_run_id
    assert retried.status == "completed"
    assert adapter.requests[-1] == {"page": 2}
    assert retried.totals["fetched"] == 1
    assert IdentityMerger.find_identity("ghl", "1").customer.tags == ["vip"]


def test_resume_failed_starts_fresh_after_a_completed_run(job_runner, adapter):
    first = job_runner.run(RunRequest(source="ghl"))
    job_runner.run(RunRequest(source="ghl", sync_run_id=first.sync_run_id))

    job_runner.run(RunRequest(source="ghl", resume_failed=True))

    assert adapter.requests[-1] == {"page": 1}


def test_failed_first_page_retries_with_the_supplied_cursor(app):
    adapter = ScriptedAdapter({}, error=PlatformRejectedError("ghl rejected request (HTTP 502)", source="ghl"))
    runner = SyncJobRunner(app, adapter_factory=lambda source: adapter)

    result = runner.run(RunRequest(source="ghl", cursor={"page": 4}))

    assert decode_cursor(result.as_response()["nextCursor"]) == {"page": 4}


def test_cancel_landing_during_advance_reports_cancelled(app, adapter):
    class CancelOnAdvance(SyncRunController):
        def advance(self, run_id, page):
            self.cancel(run_id)
            return super().advance(run_id, page)

    runner = SyncJobRunner(app, adapter_factory=lambda source: adapter, controller=CancelOnAdvance())

    result = runner.run(RunRequest(source="ghl"))

    assert result.status == "cancelled"
    assert result.success is True
    assert result.http_status == HTTPStatus.OK
    run = db.session.get(SyncRun, result.sync_run_id)
    assert run.status == SyncRunStatus.CANCELLED
    assert run.total_fetched == 0


OVERLAPPING_PAGES = [
    [
        {"id": "a", "email": "pat@example.com"},
        {"id": "b", "phone": "+15550001111"},
        {"id": "c", "email": "PAT@example.com", "phone": "555-000-2222"},
    ],
    [
        {"id": "d", "phone": "+15550002222", "tags": ["vip"]},
        {"id": "e", "email": "sam@example.com", "phone": "+15550001111"},
    ],
    [
        {"id": "f", "email": "new@example.com"},
    ],
]


@pytest.mark.parametrize(
    "pages",
    [
        {1: [record for page in OVERLAPPING_PAGES for record in page]},
        dict(enumerate(OVERLAPPING_PAGES, start=1)),
    ],
    ids=["single_page", "resumed_pages"],
)
def test_parallel_merges_give_the_same_customers_however_the_input_is_paged(app, monkeypatch, pages):
    monkeypatch.setitem(app.config, "SYNC_MERGE_CONCURRENCY", 4)
    adapter = ScriptedAdapter(pages)
    runner = SyncJobRunner(app, adapter_factory=lambda source: adapter)

    result = runner.run(RunRequest(source="ghl"))
    while result.status == "continuing":
        result = runner.run(RunRequest(source="ghl", sync_run_id=result.sync_run_id))

    assert result.status == "completed"
    assert result.totals == {"fetched": 6, "inserted": 3, "updated": 3, "skipped": 0, "conflicts": 0}
    customers = db.session.query(CanonicalCustomer).order_by(CanonicalCustomer.email).all()
    assert [(customer.email, customer.phone_e164, customer.tags) for customer in customers] == [
        ("new@example.com", None, []),
        ("pat@example.com", "+15550002222", ["vip"]),
        ("sam@example.com", "+15550001111", []),
    ]
    owners = {external_id: IdentityMerger.find_identity("ghl", external_id).customer.email for external_id in "abcdef"}
    assert owners == {
        "a": "pat@example.com",
        "b": "sam@example.com",
        "c": "pat@example.com",
        "d": "pat@example.com",
        "e": "sam@example.com",
        "f": "new@example.com",
    }
