# config.py
import os
from datetime import timedelta


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None, maximum=None):
    """Parse an integer setting, clamping to optional bounds."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None:
        number = max(minimum, number)
    if maximum is not None:
        number = min(maximum, number)
    return number


def _coerce_float(value, default):
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(str(value).strip())
    except ValueError:
        return default


def _parse_source_list(value):
    """
    Parse a comma-separated source list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized source identifiers.
    """
    if not value:
        return ()

    seen = set()
    sources = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        sources.append(item)
    return tuple(sources)


def _parse_rate_limits(value):
    """
    Parse ``source=rate[:burst]`` pairs, e.g. ``ghl=10,stripe=25:50``.

    Returns:
        dict[str, tuple[float, int | None]]
    """
    limits = {}
    if not value:
        return limits
    for raw_item in value.split(","):
        if "=" not in raw_item:
            continue
        source, _, limit_text = raw_item.partition("=")
        source = source.strip().lower()
        rate_token, _, burst_token = limit_text.partition(":")
        try:
            rate = float(rate_token.strip())
        except ValueError:
            continue
        if not source or rate <= 0:
            continue
        burst = None
        if burst_token.strip():
            try:
                burst = max(1, int(burst_token.strip()))
            except ValueError:
                burst = None
        limits[source] = (rate, burst)
    return limits


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Sync engine configuration
    SYNC_ENABLED = _coerce_bool(os.environ.get("SYNC_ENABLED"), default=False)
    SYNC_SOURCES = _parse_source_list(os.environ.get("SYNC_SOURCES", ""))

    if SYNC_ENABLED and not SYNC_SOURCES:
        raise ValueError("SYNC_ENABLED is true but SYNC_SOURCES is empty. Provide at least one source name.")

    SYNC_PAUSED = _coerce_bool(os.environ.get("SYNC_PAUSED"), default=False)
    SYNC_ADMIN_API_KEY = os.environ.get("SYNC_ADMIN_API_KEY")
    SYNC_WEBHOOK_SECRET = os.environ.get("SYNC_WEBHOOK_SECRET")
    SYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("SYNC_WORKER_ENABLED"), default=False)
    SYNC_AUTO_CONTINUE = _coerce_bool(os.environ.get("SYNC_AUTO_CONTINUE"), default=False)

    SYNC_PAGE_SIZE = _coerce_int(os.environ.get("SYNC_PAGE_SIZE"), 100, minimum=1, maximum=500)
    SYNC_MAX_PAGE_SIZE = _coerce_int(os.environ.get("SYNC_MAX_PAGE_SIZE"), 500, minimum=1)
    SYNC_MERGE_CONCURRENCY = _coerce_int(os.environ.get("SYNC_MERGE_CONCURRENCY"), 10, minimum=1, maximum=20)
    SYNC_STALE_MINUTES = _coerce_int(os.environ.get("SYNC_STALE_MINUTES"), 30, minimum=1)
    SYNC_STALE_MINUTES_BY_SOURCE = {
        source: _coerce_int(os.environ.get(f"SYNC_STALE_MINUTES_{source.upper()}"), None, minimum=1)
        for source in ("ghl", "manychat", "stripe", "paypal", "staged")
        if os.environ.get(f"SYNC_STALE_MINUTES_{source.upper()}")
    }
    SYNC_DEFAULT_COUNTRY_CODE = os.environ.get("SYNC_DEFAULT_COUNTRY_CODE", "1").lstrip("+") or "1"
    SYNC_STAGING_RETENTION_DAYS = _coerce_int(os.environ.get("SYNC_STAGING_RETENTION_DAYS"), 30, minimum=1)
    SYNC_PRECEDENCE_PROFILE_PATH = os.environ.get("SYNC_PRECEDENCE_PROFILE_PATH")

    # Resilience
    SYNC_HEALTH_PROBE_TIMEOUT = _coerce_float(os.environ.get("SYNC_HEALTH_PROBE_TIMEOUT"), 2.0)
    SYNC_CIRCUIT_FAILURE_THRESHOLD = _coerce_int(os.environ.get("SYNC_CIRCUIT_FAILURE_THRESHOLD"), 1, minimum=1)
    SYNC_CIRCUIT_RESET_SECONDS = _coerce_float(os.environ.get("SYNC_CIRCUIT_RESET_SECONDS"), 30.0)
    SYNC_RETRY_MAX_ATTEMPTS = _coerce_int(os.environ.get("SYNC_RETRY_MAX_ATTEMPTS"), 5, minimum=1)
    SYNC_RETRY_BASE_DELAY = _coerce_float(os.environ.get("SYNC_RETRY_BASE_DELAY"), 0.5)
    SYNC_RETRY_MAX_DELAY = _coerce_float(os.environ.get("SYNC_RETRY_MAX_DELAY"), 30.0)
    SYNC_RETRY_BUDGET_SECONDS = _coerce_float(os.environ.get("SYNC_RETRY_BUDGET_SECONDS"), 90.0)
    SYNC_HTTP_TIMEOUT = _coerce_float(os.environ.get("SYNC_HTTP_TIMEOUT"), 30.0)
    SYNC_RATE_LIMITS = {
        "ghl": (10.0, 10),
        "manychat": (10.0, 10),
        "stripe": (25.0, 25),
        "paypal": (5.0, 5),
        **_parse_rate_limits(os.environ.get("SYNC_RATE_LIMITS", "")),
    }

    # Source credentials
    GHL_API_KEY = os.environ.get("GHL_API_KEY")
    GHL_LOCATION_ID = os.environ.get("GHL_LOCATION_ID")
    GHL_API_BASE_URL = os.environ.get("GHL_API_BASE_URL", "https://services.leadconnectorhq.com")
    MANYCHAT_API_KEY = os.environ.get("MANYCHAT_API_KEY")
    MANYCHAT_API_BASE_URL = os.environ.get("MANYCHAT_API_BASE_URL", "https://api.manychat.com")
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_API_BASE_URL = os.environ.get("STRIPE_API_BASE_URL", "https://api.stripe.com")
    PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID")
    PAYPAL_SECRET = os.environ.get("PAYPAL_SECRET")
    PAYPAL_API_BASE_URL = os.environ.get("PAYPAL_API_BASE_URL", "https://api-m.paypal.com")
    PAYPAL_DEFAULT_WINDOW_DAYS = _coerce_int(os.environ.get("PAYPAL_DEFAULT_WINDOW_DAYS"), 31, minimum=1)

    # Background worker
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    SYNC_TASK_TIME_LIMIT = _coerce_int(os.environ.get("SYNC_TASK_TIME_LIMIT"), 5 * 60, minimum=30)
    SYNC_TASK_SOFT_TIME_LIMIT = _coerce_int(os.environ.get("SYNC_TASK_SOFT_TIME_LIMIT"), 4 * 60, minimum=30)
    # Periodic maintenance via celery beat; 0 disables an entry
    SYNC_REAP_INTERVAL_SECONDS = _coerce_int(os.environ.get("SYNC_REAP_INTERVAL_SECONDS"), 5 * 60, minimum=0)
    SYNC_DRAIN_INTERVAL_SECONDS = _coerce_int(os.environ.get("SYNC_DRAIN_INTERVAL_SECONDS"), 60, minimum=0)
    SYNC_PURGE_INTERVAL_SECONDS = _coerce_int(os.environ.get("SYNC_PURGE_INTERVAL_SECONDS"), 24 * 60 * 60, minimum=0)

    SYNC_UPLOAD_DIR = os.environ.get("SYNC_UPLOAD_DIR")
    SYNC_RUNS_PAGE_SIZE_DEFAULT = _coerce_int(os.environ.get("SYNC_RUNS_PAGE_SIZE_DEFAULT"), 25, minimum=5, maximum=100)

    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes even on Windows
    db_path = os.path.join(instance_path, "revops_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    # Worker threads open their own connections, so tests point this at a file.
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    SYNC_ENABLED = True
    SYNC_SOURCES = ("ghl", "manychat", "stripe", "paypal", "staged")
    SYNC_ADMIN_API_KEY = "test-admin-key"
    SYNC_WEBHOOK_SECRET = None
    SYNC_AUTO_CONTINUE = False
    SYNC_WORKER_ENABLED = False
    SYNC_MERGE_CONCURRENCY = 1
    SYNC_RETRY_BASE_DELAY = 0.0
    SYNC_RETRY_MAX_DELAY = 0.0


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
