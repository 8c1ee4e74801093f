"""
Trade Pipeline - Logging Utilities.

============================================================
PURPOSE
============================================================
Process-wide logging setup and masking helpers for
outbound venue requests.

SECURITY REQUIREMENTS
1. NEVER log raw API keys, secrets or private keys
2. Mask auth headers of every venue
3. Mask signatures before they reach a log line

============================================================
"""

import json
import logging
import re
import sys
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


# ============================================================
# LOGGING SETUP
# ============================================================

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class MaskingFilter(logging.Filter):
    """Runs every record's rendered message through mask_text."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = mask_text(record.getMessage())
        record.args = None
        return True


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        tick_id = getattr(record, "tick_id", None)
        if tick_id:
            entry["tick_id"] = tick_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", log_format: str = "text") -> logging.Logger:
    """
    Route all logging to one masked stdout handler.

    Args:
        level: Log level name
        log_format: "json" for one object per line, anything else for text

    Returns:
        The pipeline's package logger
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(MaskingFilter())
    if log_format == "json":
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers = [handler]

    return logging.getLogger("trade_pipeline")


# ============================================================
# SENSITIVE DATA PATTERNS
# ============================================================

SENSITIVE_HEADERS = {
    "authorization",
    "x-mbx-apikey",
    "cb-access-key",
    "cb-access-sign",
    "cb-access-passphrase",
    "ok-access-key",
    "ok-access-passphrase",
    "ok-access-sign",
    "x-bapi-api-key",
    "x-bapi-sign",
}

SENSITIVE_PARAMS = {
    "apikey",
    "api_key",
    "secret",
    "passphrase",
    "signature",
    "sign",
    "private_key",
    "privatekey",
    "token",
}

SENSITIVE_PATTERNS = [
    (re.compile(r"0x[0-9a-fA-F]{130}"), "***SIG***"),
    (re.compile(r"0x[0-9a-fA-F]{64}\b"), "***KEY***"),
    (re.compile(r"\b[a-f0-9]{64}\b", re.IGNORECASE), "***HMAC***"),
]


# ============================================================
# MASKING FUNCTIONS
# ============================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """Mask a sensitive value, showing only first few chars."""
    if not value or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_text(value: str) -> str:
    """Apply the pattern masks to free text."""
    for pattern, replacement in SENSITIVE_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def mask_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Mask sensitive headers."""
    if not headers:
        return {}
    return {
        key: mask_value(str(value)) if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def mask_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Mask sensitive parameters, recursing into nested dicts."""
    if not params:
        return {}

    masked = {}
    for key, value in params.items():
        if key.lower() in SENSITIVE_PARAMS:
            masked[key] = mask_value(str(value)) if value else value
        elif isinstance(value, dict):
            masked[key] = mask_params(value)
        elif isinstance(value, str):
            masked[key] = mask_text(value)
        else:
            masked[key] = value
    return masked


def log_request(
    log: logging.Logger,
    venue: str,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> None:
    """Debug-log an outbound request with credentials masked."""
    if log.isEnabledFor(logging.DEBUG):
        log.debug(
            f"[{venue}] {method} {mask_text(url)} "
            f"headers={mask_headers(headers)} params={mask_params(params)}"
        )
