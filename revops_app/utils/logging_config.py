# revops_app/utils/logging_config.py

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Render records as one JSON object per line, keeping ``extra`` fields."""

    def __init__(self, app_name="revops-sync", app_version="1.0.0"):
        super().__init__()
        self.app_name = app_name
        self.app_version = app_version

    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "app": self.app_name,
            "version": self.app_version,
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Plain formatter that appends ``sync_*`` extras as key=value pairs."""

    def __init__(self):
        super().__init__("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")

    def format(self, record):
        base = super().format(record)
        extras = [
            f"{key}={value}"
            for key, value in sorted(record.__dict__.items())
            if key.startswith("sync_") and key not in _RESERVED_ATTRS
        ]
        if extras:
            return f"{base} | {' '.join(extras)}"
        return base


def _build_formatter(app):
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JSONFormatter(
            app_name=app.config.get("APP_NAME", "revops-sync"),
            app_version=app.config.get("APP_VERSION", "1.0.0"),
        )
    return TextFormatter()


def setup_logging(app):
    """Configure the Flask app logger from the monitoring settings."""
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _build_formatter(app)

    # Re-running setup (tests do) must not stack handlers.
    for handler in list(app.logger.handlers):
        app.logger.removeHandler(handler)
        handler.close()

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler.setLevel(level)
        app.logger.addHandler(console_handler)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "sync.log"),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        app.logger.addHandler(file_handler)

    app.logger.setLevel(level)

    # Library modules log through ``revops_app.*`` loggers.
    package_logger = logging.getLogger("revops_app")
    package_logger.setLevel(level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    for handler in app.logger.handlers:
        package_logger.addHandler(handler)
    package_logger.propagate = not app.logger.handlers

    app.logger.debug("Logging configured", extra={"sync_log_level": level_name})
