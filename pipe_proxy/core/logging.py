"""Logging configuration utilities for the pipe proxy service."""
import json
import logging
import os
import time

SERVICE_NAME = "pipe"

_events = logging.getLogger(f"{SERVICE_NAME}.events")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging() -> None:
    """Configure root logging based on the LOG_LEVEL environment variable."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def log_event(level: str, message: str, **fields: object) -> None:
    """Emit a structured event as a single JSON line.

    Fire-and-forget: a failing sink or an unserialisable field must never reach
    the request path, so every error here is dropped.
    """
    try:
        record = {"level": level, "service": SERVICE_NAME, "message": message, "ts": int(time.time() * 1000)}
        record.update(fields)
        _events.log(_LEVELS.get(level, logging.INFO), json.dumps(record, default=str))
    except Exception:
        pass
