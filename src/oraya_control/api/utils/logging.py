"""Logging utilities for safe log output.

Provides sanitization functions to prevent log injection attacks
by removing control characters from user-controlled values, and
redaction of credential-like keys before structured context is logged.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Mapping

SENSITIVE_KEY_MARKERS = (
    "password",
    "token",
    "secret",
    "api_key",
    "apikey",
    "authorization",
    "cookie",
    "session",
)

REDACTED = "[REDACTED]"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def sanitize_for_log(value: Any, max_length: int = 1000) -> Any:
    """Sanitize a value for safe logging.

    Prevents log injection by removing CR/LF and control characters.
    Recursively sanitizes dicts, lists, tuples, and sets.
    Truncates strings longer than max_length.

    Args:
        value: The value to sanitize.
        max_length: Maximum string length before truncation.

    Returns:
        Sanitized value safe for logging.
    """

    def clean_string(text: str) -> str:
        cleaned = text.replace("\r\n", " ").replace("\r", " ").replace("\n", " ")
        cleaned = "".join(ch for ch in cleaned if ch >= " " and ch != "\x7f")
        if len(cleaned) > max_length:
            return cleaned[:max_length] + "...[truncated]"
        return cleaned

    if value is None:
        return ""

    if isinstance(value, str):
        return clean_string(value)

    if isinstance(value, dict):
        return {
            clean_string(str(k)): sanitize_for_log(v, max_length)
            for k, v in value.items()
        }

    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_log(elem, max_length) for elem in value]

    return clean_string(str(value))


def redact_sensitive(context: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a copy of ``context`` with credential-like keys replaced.

    Matching is by substring on the lowercased key, so ``stripe.secret_key``
    and ``X-License-Token`` are both redacted.
    """
    if not context:
        return {}
    redacted: dict[str, Any] = {}
    for key, value in context.items():
        lowered = str(key).lower()
        if any(marker in lowered for marker in SENSITIVE_KEY_MARKERS):
            redacted[key] = REDACTED
        elif isinstance(value, Mapping):
            redacted[key] = redact_sensitive(value)
        else:
            redacted[key] = value
    return redacted


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger once for the API process.

    ``LOG_LEVEL`` wins over the argument; unknown names fall back to INFO.
    """
    level_name = (os.getenv("LOG_LEVEL") or level or "INFO").upper()
    resolved = getattr(logging, level_name, logging.INFO)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=LOG_FORMAT)
    else:
        root.setLevel(resolved)
