from __future__ import annotations

import logging

from pythonjsonlogger.json import JsonFormatter


VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

LOG_FIELDS = ("asctime", "levelname", "name", "message")

FIELD_RENAME_MAP = {
    "levelname": "level",
    "name": "logger",
}


def create_json_formatter() -> JsonFormatter:
    format_string = " ".join(f"%({field})s" for field in LOG_FIELDS)
    return JsonFormatter(format_string, rename_fields=FIELD_RENAME_MAP)


def configure_logging(level: str = "INFO") -> None:
    """Install a single JSON stream handler on the root logger."""
    level_upper = str(level).upper()
    if level_upper not in VALID_LOG_LEVELS:
        raise ValueError(f"invalid log level: {level}. valid: {', '.join(sorted(VALID_LOG_LEVELS))}")

    handler = logging.StreamHandler()
    handler.setLevel(level_upper)
    handler.setFormatter(create_json_formatter())

    root = logging.getLogger()
    root.setLevel(level_upper)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
