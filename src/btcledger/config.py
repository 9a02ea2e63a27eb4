# config.py
"""
Runtime configuration.

Everything comes from environment variables (optionally from a .env file at the
project root). Values are read once into an immutable Settings object that the
rest of the app receives explicitly; no module reads os.environ on its own.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# src/btcledger/config.py -> parents[2] == project root
PROJECT_ROOT = Path(__file__).resolve().parents[2]

DEFAULT_ENCRYPTION_KEY = "btc-tracker-default-key"
DEFAULT_RATES_URL = "https://api.exchangerate-api.com/v4/latest/EUR"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    db_url: str = "sqlite:///./btcledger.db"
    encryption_key: str = DEFAULT_ENCRYPTION_KEY
    rates_url: str = DEFAULT_RATES_URL
    rate_ttl_seconds: int = 3600
    rate_retry_seconds: int = 60
    http_timeout: float = 15.0
    http_retries: int = 3
    allow_plaintext_credentials: bool = True
    log_level: str = "INFO"
    fallback_currency: str = "USD"

    @property
    def uses_default_key(self) -> bool:
        return self.encryption_key == DEFAULT_ENCRYPTION_KEY


def load_settings(env_file: Path | None = None) -> Settings:
    """
    Build Settings from the environment.
    A .env file is loaded first if present; real environment variables win.
    """
    load_dotenv(env_file or PROJECT_ROOT / ".env", override=False)

    return Settings(
        db_url=os.getenv("BTCLEDGER_DB_URL", Settings.db_url),
        encryption_key=os.getenv("BTCLEDGER_ENCRYPTION_KEY", DEFAULT_ENCRYPTION_KEY),
        rates_url=os.getenv("BTCLEDGER_RATES_URL", DEFAULT_RATES_URL),
        rate_ttl_seconds=_env_int("BTCLEDGER_RATE_TTL_SECONDS", 3600),
        rate_retry_seconds=_env_int("BTCLEDGER_RATE_RETRY_SECONDS", 60),
        http_timeout=_env_float("BTCLEDGER_HTTP_TIMEOUT", 15.0),
        http_retries=_env_int("BTCLEDGER_HTTP_RETRIES", 3),
        allow_plaintext_credentials=_env_bool("BTCLEDGER_ALLOW_PLAINTEXT_CREDENTIALS", True),
        log_level=os.getenv("BTCLEDGER_LOG_LEVEL", "INFO").upper(),
        fallback_currency=os.getenv("BTCLEDGER_FALLBACK_CURRENCY", "USD").upper(),
    )
