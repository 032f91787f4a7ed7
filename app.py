# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from sqlalchemy import event

# Environment first so config classes see .env values
load_dotenv()

from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from revops_app.auth import init_login_manager  # noqa: E402
from revops_app.models import db  # noqa: E402
from revops_app.sync import init_sync  # noqa: E402
from revops_app.utils.error_handler import register_error_handlers  # noqa: E402
from revops_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

CONFIG_BY_ENV = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)

flask_env = os.environ.get("FLASK_ENV", "development")
if flask_env == "production":
    validate_and_exit(flask_env)

app = Flask(__name__)
for config_object in CONFIG_BY_ENV.get(flask_env, CONFIG_BY_ENV["development"]):
    app.config.from_object(config_object)

db.init_app(app)
init_login_manager(app)
setup_logging(app)
register_error_handlers(app)


def install_sqlite_pragmas(engine, *, foreign_keys: bool) -> None:
    """Apply WAL and busy-timeout pragmas to every new SQLite connection.

    Merge workers, the Celery SQLite transport and request handlers write to
    the same file; WAL keeps readers from blocking the writer.
    """
    if getattr(engine, "_sync_pragmas_installed", False):
        return
    statements = SQLITE_PRAGMAS + (("PRAGMA foreign_keys=ON",) if foreign_keys else ())

    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        cursor = dbapi_connection.cursor()
        try:
            for statement in statements:
                cursor.execute(statement)
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)
        finally:
            cursor.close()

    event.listen(engine, "connect", _on_connect)
    engine._sync_pragmas_installed = True  # type: ignore[attr-defined]


with app.app_context():
    if db.engine.url.drivername.startswith("sqlite"):
        install_sqlite_pragmas(db.engine, foreign_keys=not app.config.get("TESTING", False))
    # Tests create and drop tables per test
    if not app.config.get("TESTING", False):
        db.create_all()

init_sync(app)


@app.get("/healthz")
def healthz():
    return jsonify({"status": "ok", "environment": flask_env})


@app.get(app.config.get("METRICS_ENDPOINT", "/metrics"))
def metrics():
    if not app.config.get("MONITORING_ENABLED", False):
        return jsonify({"error": "Monitoring is disabled."}), 404
    return Response(generate_latest(REGISTRY), mimetype=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
