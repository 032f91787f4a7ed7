"""
Sync feature package.

Provides conditional blueprint and CLI registration along with source registry
validation while remaining lightweight when sync is disabled.
"""

from __future__ import annotations

from typing import Any, Tuple

from flask import Flask

from revops_app.utils.sync import get_sync_sources, is_sync_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_sync_group, sync_cli
from .registry import SourceDescriptor, get_source_registry, resolve_sources
from .views import sync_blueprint
from .webhooks import webhooks_blueprint

SYNC_EXTENSION_KEY = "sync"

__all__ = [
    "SYNC_EXTENSION_KEY",
    "get_celery_app",
    "get_source_readiness",
    "init_sync",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        SYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_sources": (),
            "active_sources": (),
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = sync_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(sync_cli)
    else:
        app.cli.add_command(get_disabled_sync_group())


def get_source_readiness(app: Flask) -> dict[str, dict[str, Any]]:
    """Missing credentials per active source, keyed by source name."""
    state = _ensure_extension_state(app)
    readiness: dict[str, dict[str, Any]] = {}
    for descriptor in state.get("active_sources", ()):
        missing = descriptor.missing_settings(app.config)
        readiness[descriptor.name] = {
            "title": descriptor.title,
            "cursor_kind": descriptor.cursor_kind,
            "webhook": descriptor.webhook,
            "status": "ready" if not missing else "missing_settings",
            "missing_settings": list(missing),
        }
    return readiness


def init_sync(app: Flask) -> None:
    """
    Conditionally mount the sync blueprints and CLI based on configuration.

    Records sync state inside ``app.extensions['sync']`` for reuse by the CLI,
    health endpoints and the Celery worker.
    """
    enabled = is_sync_enabled(app)
    configured_sources: Tuple[str, ...] = get_sync_sources(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "configured_sources": configured_sources,
            "worker_enabled": bool(app.config.get("SYNC_WORKER_ENABLED", False)),
        }
    )

    if not enabled:
        state["active_sources"] = ()
        _set_cli(app, enabled=False)
        app.logger.info("Sync disabled via SYNC_ENABLED flag; skipping registration.")
        return

    active: Tuple[SourceDescriptor, ...] = tuple(resolve_sources(configured_sources, get_source_registry()))
    state["active_sources"] = active
    ensure_celery_app(app, state)

    for name, payload in get_source_readiness(app).items():
        if payload["missing_settings"]:
            app.logger.warning(
                "Sync source '%s' is missing settings: %s",
                name,
                ", ".join(payload["missing_settings"]),
                extra={"sync_source": name, "sync_missing_settings": payload["missing_settings"]},
            )

    for blueprint in (sync_blueprint, webhooks_blueprint):
        if blueprint.name in app.blueprints:
            continue
        if getattr(app, "_got_first_request", False):
            app.logger.warning("Sync blueprint '%s' skipped; the app already served a request.", blueprint.name)
            continue
        app.register_blueprint(blueprint)
    _set_cli(app, enabled=True)

    app.logger.info("Sync enabled with sources: %s", ", ".join(source.name for source in active) or "none")
