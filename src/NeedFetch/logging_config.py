"""
Structured Logging Utilities

This module centralizes logging setup for the fetch engine. It provides
helpers for masking sensitive fields (including credentials embedded in
source URLs), emitting JSON log records, and generating the correlation
identifiers that tie together every attempt made for one top-level fetch.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .settings import NeedSettings

ROOT_LOGGER_NAME = "NeedFetch"

_SENSITIVE_KEYS = {"authorization", "api_key", "apikey", "token", "secret", "password", "key"}
_CONTEXT_FIELDS = ("correlation_id", "stage", "source", "attempt", "elapsed_ms", "reason")


def mask_url(value: str) -> str:
    """Strip userinfo and secret-looking query parameters from a URL.

    Examples:
        >>> mask_url("https://user:pw@cdn.example.org/lib.py?token=abc&v=2")
        'https://cdn.example.org/lib.py?token=%2A%2A%2Amasked%2A%2A%2A&v=2'
    """
    try:
        parts = urlsplit(value)
    except ValueError:
        return value
    if not parts.scheme or not parts.netloc:
        return value
    netloc = parts.hostname or ""
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    query = parts.query
    if query:
        pairs = [
            (key, "***masked***" if key.lower() in _SENSITIVE_KEYS else item)
            for key, item in parse_qsl(query, keep_blank_values=True)
        ]
        query = urlencode(pairs)
    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Remove secrets from structured payloads prior to logging.

    Examples:
        >>> mask_sensitive_data({"token": "secret", "status": "ok"})
        {'token': '***masked***', 'status': 'ok'}
    """
    masked: Dict[str, object] = {}
    for key, value in payload.items():
        if key.lower() in _SENSITIVE_KEYS:
            masked[key] = "***masked***"
        elif isinstance(value, str) and "://" in value:
            masked[key] = mask_url(value)
        else:
            masked[key] = value
    return masked


def generate_correlation_id() -> str:
    """Create a short identifier that links the log entries of one fetch.

    Examples:
        >>> len(generate_correlation_id())
        12
    """
    return uuid.uuid4().hex[:12]


class JSONFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        log_obj: Dict[str, object] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_obj[field] = value
        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(log_obj), default=str)


def setup_logging(settings: NeedSettings, log_dir: Optional[Path] = None) -> logging.Logger:
    """Configure console and optional JSON file handlers for the package logger.

    Handlers installed by a previous call are replaced, so repeated calls
    (for example from the CLI and then from a test) do not duplicate output.

    Examples:
        >>> logger = setup_logging(NeedSettings(log_level="DEBUG"))
        >>> logger.name
        'NeedFetch'
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, settings.log_level, logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_needfetch_managed", False):
            logger.removeHandler(handler)
            handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    if settings.log_json:
        stream_handler.setFormatter(JSONFormatter())
    else:
        stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    stream_handler._needfetch_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    target_dir = log_dir or settings.log_dir
    if target_dir is not None:
        target_dir = Path(target_dir).expanduser()
        target_dir.mkdir(parents=True, exist_ok=True)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            target_dir / f"needfetch-{today}.jsonl",
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._needfetch_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = True
    return logger


__all__ = [
    "JSONFormatter",
    "ROOT_LOGGER_NAME",
    "generate_correlation_id",
    "mask_sensitive_data",
    "mask_url",
    "setup_logging",
]
