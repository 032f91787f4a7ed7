"""
Utility helpers for sync feature flag checks.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_sync_enabled(app=None) -> bool:
    """Return True when the sync feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("SYNC_ENABLED", False))


def is_sync_paused(app=None) -> bool:
    """Return True when operators paused page advancement."""
    config = _get_config(app)
    return bool(config.get("SYNC_PAUSED", False))


def get_sync_sources(app=None) -> Tuple[str, ...]:
    """Return the configured sync source identifiers."""
    config = _get_config(app)
    sources: Iterable[str] = config.get("SYNC_SOURCES", ())
    return tuple(sources)
