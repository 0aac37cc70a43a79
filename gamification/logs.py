"""Structured key=value logging fanned out to a console stream and a log file."""

from __future__ import annotations

import datetime as dt
import json
import logging
import math
import sys
from typing import IO, Any

__all__ = ["KeyValueFormatter", "build_logger", "log_event"]

_LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}


def _needs_quoting(text: str) -> bool:
    if not text:
        return True
    for char in text:
        if char in ' ="':
            return True
        if char != "\\" and (not char.isprintable() or char.isspace()):
            return True
    return False


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False) if _needs_quoting(text) else text


def _format_time(moment: dt.datetime) -> str:
    text = moment.isoformat(timespec="milliseconds")
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def _format_value(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    if isinstance(value, dt.datetime):
        return _format_time(value)
    if isinstance(value, (list, tuple)):
        return _quote("[" + " ".join(str(item) for item in value) + "]")
    return _quote(str(value))


class KeyValueFormatter(logging.Formatter):
    """Render records as `time=... level=... msg=... key=value` lines."""

    def format(self, record: logging.LogRecord) -> str:
        moment = dt.datetime.fromtimestamp(record.created).astimezone()
        level = _LEVEL_NAMES.get(record.levelno, record.levelname)
        parts = [
            f"time={_format_time(moment)}",
            f"level={level}",
            f"msg={_quote(record.getMessage())}",
        ]
        attrs = getattr(record, "attrs", None) or {}
        parts.extend(f"{_quote(str(key))}={_format_value(value)}" for key, value in attrs.items())
        return " ".join(parts)


def build_logger(log_file: IO[str], stream: IO[str] | None = None) -> logging.Logger:
    """Create an INFO logger writing every record to both the stream and the file."""
    logger = logging.Logger("gamification", level=logging.INFO)
    logger.propagate = False
    formatter = KeyValueFormatter()
    for target in (stream if stream is not None else sys.stdout, log_file):
        handler = logging.StreamHandler(target)
        handler.setLevel(logging.INFO)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def log_event(logger: logging.Logger | logging.LoggerAdapter, level: int, event: str, **kwargs: Any) -> None:
    """Log an event name with attributes; an adapter's bound `attrs` come first."""
    attrs: dict[str, Any] = {}
    if isinstance(logger, logging.LoggerAdapter):
        attrs.update((logger.extra or {}).get("attrs", {}))
        logger = logger.logger
    attrs.update(kwargs)
    logger.log(level, event, extra={"attrs": attrs})