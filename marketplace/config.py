"""
Marketplace — 設定

環境変数は起動時に一度だけ読み、必要なコンポーネントへ渡す。
os.environ を読むのはこのモジュールだけ。
"""

import logging
import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigurationError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str = "sqlite+aiosqlite:///./marketplace.db"
    redis_url: str = "redis://localhost:6379"

    gateway_base_url: str = "https://api.razorpay.com"
    gateway_key_id: str
    gateway_key_secret: str = Field(repr=False)
    gateway_timeout_seconds: float = Field(default=10.0, gt=0)
    currency: str = "INR"

    # 後続明細の引き当て失敗時に、先行明細の引き当てを戻さない
    legacy_partial_reservation: bool = False
    verify_payment_with_gateway: bool = False
    enable_signature_tools: bool = False
    create_schema: bool = True
    log_level: str = "INFO"


def _flag(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """環境変数から Settings を組み立てる"""
    env = os.environ if environ is None else environ

    missing = [
        name
        for name in ("PAYMENT_GATEWAY_KEY_ID", "PAYMENT_GATEWAY_KEY_SECRET")
        if not env.get(name)
    ]
    if missing:
        raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")

    log_level = env.get("LOG_LEVEL", "INFO").upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigurationError(f"Invalid log level: {log_level}")

    try:
        timeout = float(env.get("PAYMENT_GATEWAY_TIMEOUT", "10"))
    except ValueError as e:
        raise ConfigurationError(f"PAYMENT_GATEWAY_TIMEOUT must be a number: {e}") from e
    if timeout <= 0:
        raise ConfigurationError("PAYMENT_GATEWAY_TIMEOUT must be positive")

    return Settings(
        database_url=env.get("DATABASE_URL", "sqlite+aiosqlite:///./marketplace.db"),
        redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
        gateway_base_url=env.get("PAYMENT_GATEWAY_URL", "https://api.razorpay.com"),
        gateway_key_id=env["PAYMENT_GATEWAY_KEY_ID"],
        gateway_key_secret=env["PAYMENT_GATEWAY_KEY_SECRET"],
        gateway_timeout_seconds=timeout,
        currency=env.get("PAYMENT_CURRENCY", "INR"),
        legacy_partial_reservation=_flag(env, "LEGACY_PARTIAL_RESERVATION", False),
        verify_payment_with_gateway=_flag(env, "VERIFY_PAYMENT_WITH_GATEWAY", False),
        enable_signature_tools=_flag(env, "ENABLE_SIGNATURE_TOOLS", False),
        create_schema=_flag(env, "CREATE_SCHEMA", True),
        log_level=log_level,
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
