import pytest

from config.base import _coerce_bool, _coerce_int, _parse_rate_limits, _parse_source_list
from config.validation import validate_environment

PRODUCTION_ENV = {
    "SECRET_KEY": "0f1e2d3c4b5a",
    "DATABASE_URL": "postgresql://revops@db/revops",
    "SYNC_ENABLED": "true",
    "SYNC_ADMIN_API_KEY": "admin-key",
    "SYNC_SOURCES": "ghl,stripe",
    "GHL_API_KEY": "ghl-key",
    "GHL_LOCATION_ID": "loc-1",
    "STRIPE_SECRET_KEY": "sk_test_1",
}


def test_source_list_is_normalized_and_deduplicated():
    assert _parse_source_list(" GHL, stripe,,ghl ,PayPal") == ("ghl", "stripe", "paypal")
    assert _parse_source_list("") == ()


def test_rate_limits_parse_rate_and_optional_burst():
    assert _parse_rate_limits("ghl=10, stripe=25:50, bad, paypal=zero, manychat=-1, x=2:y") == {
        "ghl": (10.0, None),
        "stripe": (25.0, 50),
        "x": (2.0, None),
    }


@pytest.mark.parametrize(
    "value, expected",
    [("yes", True), ("OFF", False), ("maybe", False), (None, False), (True, True)],
)
def test_coerce_bool(value, expected):
    assert _coerce_bool(value) is expected


def test_coerce_int_clamps_and_falls_back():
    assert _coerce_int("900", 100, minimum=1, maximum=500) == 500
    assert _coerce_int("0", 100, minimum=1) == 1
    assert _coerce_int("abc", 100) == 100
    assert _coerce_int(" ", 100) == 100


def test_validation_only_applies_to_production():
    assert validate_environment("development", env={}) == (True, [])
    assert validate_environment("testing", env={}) == (True, [])


def test_complete_production_environment_is_valid():
    assert validate_environment("production", env=PRODUCTION_ENV) == (True, [])


def test_production_requires_source_credentials_and_broker():
    env = {**PRODUCTION_ENV, "SYNC_SOURCES": "ghl,paypal", "SYNC_WORKER_ENABLED": "true"}
    env.pop("GHL_LOCATION_ID")

    is_valid, errors = validate_environment("production", env=env)

    assert is_valid is False
    assert "GHL_LOCATION_ID is required when 'ghl' is listed in SYNC_SOURCES" in errors
    assert "PAYPAL_CLIENT_ID is required when 'paypal' is listed in SYNC_SOURCES" in errors
    assert "PAYPAL_SECRET is required when 'paypal' is listed in SYNC_SOURCES" in errors
    assert any("CELERY_BROKER_URL" in error for error in errors)


def test_production_rejects_placeholder_secret_and_missing_admin_key():
    env = {**PRODUCTION_ENV, "SECRET_KEY": "your-secret-key", "SYNC_ADMIN_API_KEY": "", "SYNC_SOURCES": ""}

    _, errors = validate_environment("production", env=env)

    assert len(errors) == 3
    assert errors[0].startswith("SECRET_KEY is required")
    assert "SYNC_ADMIN_API_KEY is required when SYNC_ENABLED=true" in errors
    assert "SYNC_SOURCES must list at least one source when SYNC_ENABLED=true" in errors


def test_disabled_sync_skips_source_checks():
    env = {"SECRET_KEY": "k", "DATABASE_URL": "postgresql://db", "SYNC_ENABLED": "false"}

    assert validate_environment("production", env=env) == (True, [])
