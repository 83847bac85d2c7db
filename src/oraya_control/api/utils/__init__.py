from .logging import configure_logging, redact_sensitive, sanitize_for_log

__all__ = [
    "configure_logging",
    "redact_sensitive",
    "sanitize_for_log",
]
