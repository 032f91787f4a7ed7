from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import NoResultFound

from revops_app.models import SyncRunStatus
from revops_app.sync.pipeline.filters import Page, flag, positive_int, timestamp
from revops_app.sync.pipeline.run_service import RunFilters, SyncRunService, serialize_run, serialize_stats


@pytest.fixture
def service(app):
    return SyncRunService()


def test_filters_defaults():
    filters = RunFilters.coerce()

    assert (filters.page, filters.page_size, filters.sort) == (1, 25, "-started_at")
    assert filters.statuses == ()
    assert filters.include_dry_runs is True


def test_filters_normalize_input():
    filters = RunFilters.coerce(
        page="3",
        page_size="1000",
        sort="source",
        statuses=["Running", ""],
        sources=[" GHL", "stripe", "ghl"],
        started_from="2024-05-01",
        started_to="2024-05-01",
        include_dry_runs="no",
    )

    assert filters.page == 3
    assert filters.page_size == 100
    assert filters.statuses == (SyncRunStatus.RUNNING,)
    assert filters.sources == ("ghl", "stripe")
    assert filters.started_from == datetime(2024, 5, 1, tzinfo=timezone.utc)
    assert filters.started_to.date() == date(2024, 5, 1)
    assert filters.started_to.hour == 23
    assert filters.include_dry_runs is False


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"sort": "-colour"}, "Unsupported sort field 'colour'"),
        ({"statuses": ["stuck"]}, "Unsupported status filter 'stuck'"),
        ({"page": "first"}, "positive integer for page"),
        ({"started_from": "05/01/2024"}, "Unable to parse datetime"),
        ({"started_from": "2024-05-02", "started_to": "2024-05-01"}, "started_from must be before started_to"),
    ],
)
def test_filters_reject_bad_values(kwargs, message):
    with pytest.raises(ValueError, match=message):
        RunFilters.coerce(**kwargs)


def test_filter_helpers():
    assert positive_int("0", default=5) == 1
    assert positive_int(None, default=5) == 5
    with pytest.raises(ValueError):
        positive_int(True, default=5)

    assert flag("maybe", default=True) is True
    assert flag("off", default=True) is False
    assert timestamp("2024-05-01T10:30:00Z") == datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc)
    assert timestamp("") is None

    assert Page(items=[], total=0, page=1, page_size=25).total_pages == 0
    assert Page(items=[], total=51, page=1, page_size=25).total_pages == 3


def test_list_runs_filters_sorts_and_paginates(service, run_factory):
    oldest = run_factory(source="ghl", idle_minutes=30)
    middle = run_factory(source="stripe", status=SyncRunStatus.FAILED, idle_minutes=20)
    newest = run_factory(source="ghl", status=SyncRunStatus.RUNNING, dry_run=True, idle_minutes=10)

    default = service.list_runs(RunFilters.coerce())
    assert [run.id for run in default.items] == [newest.id, middle.id, oldest.id]

    ascending = service.list_runs(RunFilters.coerce(sort="started_at", page_size=2, page=2))
    assert [run.id for run in ascending.items] == [newest.id]
    assert (ascending.total, ascending.total_pages) == (3, 2)

    ghl_real = service.list_runs(RunFilters.coerce(sources=["ghl"], include_dry_runs=False))
    assert [run.id for run in ghl_real.items] == [oldest.id]

    failed = service.list_runs(RunFilters.coerce(statuses=["failed"]))
    assert [run.id for run in failed.items] == [middle.id]

    tomorrow = (date.today() + timedelta(days=2)).isoformat()
    empty = service.list_runs(RunFilters.coerce(started_from=tomorrow))
    assert (empty.items, empty.total, empty.total_pages) == ([], 0, 0)


def test_get_run_and_stats(service, run_factory):
    run = run_factory(source="ghl", status=SyncRunStatus.CONTINUING)
    run_factory(source="ghl", status=SyncRunStatus.COMPLETED)
    run_factory(source="paypal", status=SyncRunStatus.FAILED)

    assert service.get_run(run.id) is run
    with pytest.raises(NoResultFound):
        service.get_run(9999)

    stats = serialize_stats(service.get_stats())
    assert stats == {
        "total": 3,
        "statuses": {"continuing": 1, "completed": 1, "failed": 1},
        "sources": {"ghl": 2, "paypal": 1},
        "active": {"ghl": 1},
    }
    assert service.get_stats(RunFilters.coerce(sources=["paypal"])).total == 1


def test_serialize_run(run_factory):
    run = run_factory(
        source="stripe",
        checkpoint={"cursor": {"starting_after": "cus_9"}, "page": 4},
        total_fetched=10,
        total_inserted=3,
        total_updated=5,
    )

    summary = serialize_run(run)
    assert summary["status"] == "completed"
    assert summary["totals"]["upserted"] == 8
    assert summary["duration_seconds"] == pytest.approx(60, abs=1)
    assert summary["started_at"].endswith("+00:00")
    assert "checkpoint" not in summary

    detail = serialize_run(run, include_checkpoint=True)
    assert detail["checkpoint"]["cursor"] == {"starting_after": "cus_9"}
    assert detail["metadata"] == {}
