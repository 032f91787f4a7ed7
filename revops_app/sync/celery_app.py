"""
Celery wiring for the sync worker.

The worker is optional: nothing here runs until ``init_sync`` sees
``SYNC_ENABLED``. Without ``CELERY_BROKER_URL`` the broker and result backend
share one SQLite file in the instance folder, which is enough for a single
worker on a developer machine.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "sync"
DEFAULT_SQLITE_FILENAME = "celery_sync.sqlite"
TASKS_MODULE = "revops_app.sync.tasks"

# name -> (task, config key holding the interval, task kwargs)
PERIODIC_TASKS: dict[str, tuple[str, str, dict[str, Any]]] = {
    "sync-reap-stale-runs": ("sync.pipeline.reap_stale", "SYNC_REAP_INTERVAL_SECONDS", {}),
    "sync-drain-staging": ("sync.pipeline.drain_staging", "SYNC_DRAIN_INTERVAL_SECONDS", {}),
    "sync-purge-staging": ("sync.staging.purge", "SYNC_PURGE_INTERVAL_SECONDS", {}),
}


def _sqlite_transport_path(app: Flask) -> Path:
    configured = app.config.get("CELERY_SQLITE_PATH")
    path = Path(configured) if configured else Path(DEFAULT_SQLITE_FILENAME)
    if not path.is_absolute():
        path = Path(app.instance_path) / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def resolve_connection_urls(app: Flask) -> tuple[str, str]:
    """Return ``(broker_url, result_backend)``; missing halves fall back to SQLite."""
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    # Celery expects forward slashes even on Windows.
    sqlite_file = _sqlite_transport_path(app).as_posix()
    return broker_url or f"sqla+sqlite:///{sqlite_file}", result_backend or f"db+sqlite:///{sqlite_file}"


def build_beat_schedule(config: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    """Maintenance entries for celery beat, skipping any with a zero interval."""
    schedule: dict[str, dict[str, Any]] = {}
    for entry_name, (task_name, interval_key, kwargs) in PERIODIC_TASKS.items():
        seconds = int(config.get(interval_key) or 0)
        if seconds <= 0:
            continue
        schedule[entry_name] = {
            "task": task_name,
            "schedule": timedelta(seconds=seconds),
            "kwargs": dict(kwargs),
            "options": {"queue": DEFAULT_QUEUE_NAME},
        }
    return schedule


def _load_overrides(app: Flask) -> Mapping[str, Any] | None:
    overrides: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if not isinstance(overrides, str):
        return overrides
    try:
        return json.loads(overrides)
    except json.JSONDecodeError:
        app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
        return None


def create_celery_app(app: Flask) -> Celery:
    """
    Build a Celery instance whose tasks run inside ``app``'s context.

    Page invocations are short and must not be lost when a worker dies, so
    tasks are acknowledged late and each worker prefetches one message.
    """
    broker_url, result_backend = resolve_connection_urls(app)
    celery_app = Celery(app.import_name, broker=broker_url, backend=result_backend, include=(TASKS_MODULE,))
    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_default_exchange=DEFAULT_QUEUE_NAME,
        task_default_routing_key=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_routes={"sync.*": {"queue": DEFAULT_QUEUE_NAME}},
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_track_started=True,
        worker_prefetch_multiplier=1,
        result_extended=True,
        result_expires=timedelta(days=1),
        broker_connection_retry_on_startup=True,
        task_time_limit=app.config.get("SYNC_TASK_TIME_LIMIT", 5 * 60),
        task_soft_time_limit=app.config.get("SYNC_TASK_SOFT_TIME_LIMIT", 4 * 60),
        beat_schedule=build_beat_schedule(app.config),
        worker_hijack_root_logger=False,
        worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
    )

    overrides = _load_overrides(app)
    if overrides:
        celery_app.conf.update(overrides)
    app.logger.info(
        "Sync Celery configuration resolved",
        extra={
            "sync_celery_broker_url": broker_url,
            "sync_celery_result_backend": result_backend,
            "sync_celery_overrides": overrides,
            "sync_celery_beat_entries": sorted(celery_app.conf.beat_schedule),
            "sync_worker_enabled": app.config.get("SYNC_WORKER_ENABLED"),
        },
    )

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        """Push an application context around every task body."""

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Create the Celery instance once and keep it in the sync extension state."""
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = state["celery_app"] = create_celery_app(app)
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """The app's Celery instance, or ``None`` while sync is disabled."""
    state: dict[str, Any] | None = app.extensions.get("sync")  # type: ignore[arg-type]
    if not state:
        return None
    if state.get("celery_app") is None and state.get("enabled"):
        return ensure_celery_app(app, state)
    return state.get("celery_app")
