# conftest.py

import os
import tempfile
import threading
from datetime import timedelta

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig.
# Merge worker threads open their own connections, so the database is a file
# shared by the whole session rather than an in-memory database.
os.environ["FLASK_ENV"] = "testing"
_db_fd, _db_path = tempfile.mkstemp(suffix="_revops_test.db")
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{_db_path}")

from app import app as flask_app  # noqa: E402
from revops_app.models import (  # noqa: E402
    CanonicalCustomer,
    ExternalIdentity,
    SyncRun,
    SyncRunStatus,
    db,
    utcnow,
)
from revops_app.sync.resilience import DatastoreHealthProbe, reset_rate_limiters  # noqa: E402
from revops_app.sync.resilience.circuit import EXTENSION_KEY as BREAKER_EXTENSION_KEY  # noqa: E402

ADMIN_KEY = "test-admin-key"


@pytest.fixture(scope="function")
def app():
    """Flask application with freshly created tables."""
    flask_app.config.update(
        {
            "TESTING": True,
            "SYNC_ENABLED": True,
            "SYNC_PAUSED": False,
            "SYNC_ADMIN_API_KEY": ADMIN_KEY,
            "SYNC_WEBHOOK_SECRET": None,
            "SYNC_AUTO_CONTINUE": False,
            "SYNC_WORKER_ENABLED": False,
            "SYNC_MERGE_CONCURRENCY": 1,
            "SYNC_PAGE_SIZE": 100,
            "SYNC_STALE_MINUTES": 30,
            "SYNC_STALE_MINUTES_BY_SOURCE": {},
        }
    )
    flask_app.extensions.pop(BREAKER_EXTENSION_KEY, None)
    reset_rate_limiters()

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()

    flask_app.extensions.pop(BREAKER_EXTENSION_KEY, None)


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY, "X-Operator": "ops@example.com"}


@pytest.fixture
def run_factory(app):
    """Insert ``SyncRun`` rows directly, bypassing the controller."""

    def _factory(
        *,
        source: str = "ghl",
        status: SyncRunStatus = SyncRunStatus.COMPLETED,
        idle_minutes: int = 0,
        dry_run: bool = False,
        checkpoint: dict | None = None,
        **totals,
    ) -> SyncRun:
        now = utcnow()
        last_activity = now - timedelta(minutes=idle_minutes)
        run = SyncRun(
            source=source,
            status=status,
            dry_run=dry_run,
            started_at=last_activity - timedelta(minutes=1),
            last_activity_at=last_activity,
            completed_at=last_activity if status.is_terminal else None,
            checkpoint=checkpoint,
            metadata_json={},
            **totals,
        )
        db.session.add(run)
        db.session.commit()
        return run

    return _factory


@pytest.fixture
def customer_factory(app):
    """Insert canonical customers, optionally bound to an external identity."""

    def _factory(
        *,
        email: str | None = None,
        phone_e164: str | None = None,
        full_name: str | None = None,
        tags: list | None = None,
        identity: tuple[str, str] | None = None,
        **fields,
    ) -> CanonicalCustomer:
        customer = CanonicalCustomer(
            email=email,
            phone_e164=phone_e164,
            full_name=full_name,
            tags=tags or [],
            field_sources={},
            **fields,
        )
        db.session.add(customer)
        db.session.flush()
        if identity is not None:
            source, external_id = identity
            db.session.add(ExternalIdentity(source=source, external_id=external_id, customer_id=customer.id))
        db.session.commit()
        return customer

    return _factory


class StalledDatastore(DatastoreHealthProbe):
    """``SELECT 1`` that hangs until the test releases it."""

    def __init__(self, *, timeout_seconds: float):
        super().__init__(engine=None, timeout_seconds=timeout_seconds)
        self.release = threading.Event()
        self.started = threading.Event()

    def _select_one(self) -> None:
        self.started.set()
        self.release.wait(timeout=5)


@pytest.fixture
def stalled_datastore():
    datastore = StalledDatastore(timeout_seconds=0.1)
    yield datastore
    datastore.release.set()


def pytest_sessionfinish(session, exitstatus):
    try:
        os.close(_db_fd)
    except OSError:
        pass
    try:
        if os.path.exists(_db_path):
            os.unlink(_db_path)
    except OSError:
        pass


def pytest_configure(config):
    os.environ["FLASK_ENV"] = "testing"
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
