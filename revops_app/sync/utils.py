"""
Sync-specific utilities for source checks and uploaded contact files.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable
from uuid import uuid4

from flask import Flask, current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from revops_app.utils.sync import get_sync_sources

from .errors import UnknownSourceError

DEFAULT_UPLOAD_SUBDIR = "sync_uploads"
CSV_EXTENSIONS: tuple[str, ...] = ("csv",)


def ensure_known_source(app: Flask, source: str | None) -> str:
    """
    Normalize ``source`` and check it against ``SYNC_SOURCES``.

    Raises:
        UnknownSourceError: If the source is not enabled.
    """

    normalized = (source or "").strip().lower()
    enabled = get_sync_sources(app)
    if not normalized or normalized not in enabled:
        raise UnknownSourceError(normalized, enabled)
    return normalized


def resolve_upload_directory(app: Flask) -> Path:
    """
    Determine and create (if necessary) the directory for uploaded CSV files.
    """

    configured = app.config.get("SYNC_UPLOAD_DIR")
    if not configured:
        upload_dir = Path(app.instance_path) / DEFAULT_UPLOAD_SUBDIR
    else:
        upload_dir = Path(configured)
        if not upload_dir.is_absolute():
            upload_dir = Path(app.instance_path) / upload_dir
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def allowed_file(filename: str, allowed_extensions: Iterable[str] = CSV_EXTENSIONS) -> bool:
    if not filename or "." not in filename:
        return False
    extension = filename.rsplit(".", 1)[1].lower()
    return extension in {ext.lower() for ext in allowed_extensions}


def persist_upload(file_storage: FileStorage, app: Flask) -> Path:
    """
    Persist the uploaded file under ``resolve_upload_directory(app)`` with a
    UUID-based filename and return its path.
    """

    upload_dir = resolve_upload_directory(app)
    original_name = secure_filename(file_storage.filename or "")
    extension = Path(original_name).suffix or ".csv"
    target_path = upload_dir / f"{uuid4().hex}{extension}"
    file_storage.save(target_path)
    current_app.logger.debug("Sync upload persisted to %s", target_path)
    return target_path


def cleanup_upload(path: Path) -> None:
    """
    Remove a stored upload, logging but ignoring filesystem errors.
    """

    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        current_app.logger.warning("Failed to remove sync upload %s: %s", path, exc)
