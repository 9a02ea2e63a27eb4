from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s]: %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single stdout handler to the package logger (safe to call twice)."""
    root = logging.getLogger("btcledger")
    root.setLevel(level)
    if not any(getattr(h, "_btcledger", False) for h in root.handlers):
        sh = logging.StreamHandler(sys.stdout)
        sh.setFormatter(logging.Formatter(LOG_FORMAT))
        sh._btcledger = True  # type: ignore[attr-defined]
        root.addHandler(sh)
    return root


def mask_secret(value: str | None, keep: int = 4) -> str:
    """Render a secret for log output: 'abcd***'. Never log the real thing."""
    if not value:
        return "<empty>"
    return f"{value[:keep]}***"
