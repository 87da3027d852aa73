"""環境変数からの設定読み込み"""

import pytest

from marketplace.config import load_settings
from marketplace.errors import ConfigurationError

BASE = {"PAYMENT_GATEWAY_KEY_ID": "rzp_live_key", "PAYMENT_GATEWAY_KEY_SECRET": "s3cret"}


def test_defaults():
    settings = load_settings(BASE)

    assert settings.gateway_key_id == "rzp_live_key"
    assert settings.currency == "INR"
    assert settings.gateway_timeout_seconds == 10.0
    assert settings.legacy_partial_reservation is False
    assert settings.verify_payment_with_gateway is False
    assert settings.enable_signature_tools is False
    assert settings.create_schema is True
    assert settings.log_level == "INFO"


def test_secret_not_in_repr():
    assert "s3cret" not in repr(load_settings(BASE))


def test_overrides():
    settings = load_settings({
        **BASE,
        "DATABASE_URL": "postgresql+asyncpg://u:p@db/market",
        "PAYMENT_GATEWAY_TIMEOUT": "2.5",
        "PAYMENT_CURRENCY": "USD",
        "LEGACY_PARTIAL_RESERVATION": "true",
        "ENABLE_SIGNATURE_TOOLS": "1",
        "CREATE_SCHEMA": "no",
        "LOG_LEVEL": "debug",
    })

    assert settings.database_url == "postgresql+asyncpg://u:p@db/market"
    assert settings.gateway_timeout_seconds == 2.5
    assert settings.currency == "USD"
    assert settings.legacy_partial_reservation is True
    assert settings.enable_signature_tools is True
    assert settings.create_schema is False
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize("missing", ["PAYMENT_GATEWAY_KEY_ID", "PAYMENT_GATEWAY_KEY_SECRET"])
def test_missing_gateway_credentials(missing):
    env = {k: v for k, v in BASE.items() if k != missing}
    with pytest.raises(ConfigurationError, match=missing):
        load_settings(env)


@pytest.mark.parametrize(
    "name,value",
    [
        ("LEGACY_PARTIAL_RESERVATION", "maybe"),
        ("LOG_LEVEL", "LOUD"),
        ("PAYMENT_GATEWAY_TIMEOUT", "soon"),
        ("PAYMENT_GATEWAY_TIMEOUT", "0"),
    ],
)
def test_invalid_values(name, value):
    with pytest.raises(ConfigurationError):
        load_settings({**BASE, name: value})
