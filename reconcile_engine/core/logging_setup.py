# reconcile_engine/core/logging_setup.py
"""Logging configuration and secret redaction."""

import json
import logging
import re
from datetime import datetime, timezone
from threading import Lock
from typing import Iterable

MASK = "********"

# Shorter values ("1", "yes") are masked only as whole tokens
MIN_SECRET_LENGTH = 4

_secrets: set[str] = set()
_short_secrets: set[str] = set()
_secrets_lock = Lock()

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def register_secrets(values: Iterable[str]) -> None:
    """Remember plaintext values that must never appear in logs."""
    with _secrets_lock:
        for value in values:
            if not value:
                continue
            if len(value) >= MIN_SECRET_LENGTH:
                _secrets.add(value)
            else:
                _short_secrets.add(value)


def clear_secrets() -> None:
    with _secrets_lock:
        _secrets.clear()
        _short_secrets.clear()


def _short_pattern(values: Iterable[str]) -> "re.Pattern[str]":
    alternatives = "|".join(re.escape(v) for v in sorted(values, key=len, reverse=True))
    return re.compile(rf"(?<![A-Za-z0-9_.*\-])(?:{alternatives})(?![A-Za-z0-9_.*\-])")


def redact(text: str) -> str:
    """Replace every registered secret value with a fixed-length mask."""
    if not text:
        return text
    with _secrets_lock:
        # Longest first so a secret containing another is masked whole
        values = sorted(_secrets, key=len, reverse=True)
        short = list(_short_secrets)
    for value in values:
        if value in text:
            text = text.replace(value, MASK)
    if short:
        text = _short_pattern(short).sub(MASK, text)
    return text


class SecretRedactionFilter(logging.Filter):
    """Rewrites log records so registered secrets are masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, message."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(level: str = "info", fmt: str = "text") -> None:
    """Configure root logging for entry points."""
    logging.basicConfig(
        level=LEVELS.get(level.lower(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    root = logging.getLogger()
    for handler in root.handlers:
        if not any(isinstance(f, SecretRedactionFilter) for f in handler.filters):
            handler.addFilter(SecretRedactionFilter())
        if fmt == "json":
            handler.setFormatter(JsonFormatter())
