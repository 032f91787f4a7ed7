# config/validation.py

"""
Startup validation of the environment for production deployments.

Development and testing start with whatever is set; production refuses to
boot while the database, operator key, source credentials or worker broker
are missing.
"""

import os
import sys
from typing import Callable, List, Mapping, Optional, Tuple

# Credentials each sync source needs before its adapter can be used.
SOURCE_CREDENTIALS = {
    "ghl": ("GHL_API_KEY", "GHL_LOCATION_ID"),
    "manychat": ("MANYCHAT_API_KEY",),
    "stripe": ("STRIPE_SECRET_KEY",),
    "paypal": ("PAYPAL_CLIENT_ID", "PAYPAL_SECRET"),
}

PLACEHOLDER_SECRETS = frozenset({"your-secret-key", "your_secret_key", "change-me"})


def _flag(env: Mapping[str, str], name: str) -> bool:
    return str(env.get(name, "false")).strip().lower() in {"1", "true", "yes", "on"}


def _check_core(env: Mapping[str, str]) -> List[str]:
    errors = []
    secret_key = env.get("SECRET_KEY", "")
    if not secret_key or secret_key in PLACEHOLDER_SECRETS:
        errors.append(
            "SECRET_KEY is required in production and must not be a placeholder. "
            'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    if not env.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Point it at the PostgreSQL database.")
    return errors


def _check_sync(env: Mapping[str, str]) -> List[str]:
    if not _flag(env, "SYNC_ENABLED"):
        return []
    errors = []
    if not env.get("SYNC_ADMIN_API_KEY"):
        errors.append("SYNC_ADMIN_API_KEY is required when SYNC_ENABLED=true")

    sources = [name.strip().lower() for name in env.get("SYNC_SOURCES", "").split(",") if name.strip()]
    if not sources:
        errors.append("SYNC_SOURCES must list at least one source when SYNC_ENABLED=true")
    for source in sources:
        missing = [name for name in SOURCE_CREDENTIALS.get(source, ()) if not env.get(name)]
        errors.extend(f"{name} is required when '{source}' is listed in SYNC_SOURCES" for name in missing)
    return errors


def _check_worker(env: Mapping[str, str]) -> List[str]:
    if _flag(env, "SYNC_WORKER_ENABLED") and not env.get("CELERY_BROKER_URL"):
        # The SQLite transport only suits a single local worker.
        return ["CELERY_BROKER_URL is required when SYNC_WORKER_ENABLED=true in production"]
    return []


CHECKS: Tuple[Callable[[Mapping[str, str]], List[str]], ...] = (_check_core, _check_sync, _check_worker)


def validate_environment(
    flask_env: Optional[str] = None, env: Optional[Mapping[str, str]] = None
) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: development, production or testing; defaults to ``FLASK_ENV``.
        env: Variables to inspect; defaults to ``os.environ``.

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    env = os.environ if env is None else env
    flask_env = flask_env or env.get("FLASK_ENV", "development")
    if flask_env != "production":
        return True, []

    errors = [error for check in CHECKS for error in check(env)]
    return not errors, errors


def validate_and_exit(flask_env: Optional[str] = None) -> None:
    """
    Exit with status 1 and a numbered error list when validation fails.
    """
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    rule = "=" * 80
    lines = [rule, "ENVIRONMENT VALIDATION FAILED", rule, "", "Missing or invalid settings:", ""]
    lines.extend(f"{index}. {error}" for index, error in enumerate(errors, 1))
    lines.extend(["", "Check your .env file or deployment environment.", rule])
    print("\n".join(lines), file=sys.stderr)
    sys.exit(1)
