"""Centralized logging configuration for the gatekeeper.

Call ``setup_logging()`` once at application startup (the app lifespan in
``main.py`` does this) so every module logs through the same root handler.

Individual modules should obtain their own logger with::

    import logging
    log = logging.getLogger(__name__)
"""
from __future__ import annotations

import json
import logging
import os
import sys

TEXT_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    The message is serialized, not interpolated, so quotes in it cannot
    break the line.  A ``security_event`` passed via ``extra=`` is emitted
    as a nested ``event`` object.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "security_event", None)
        if event is not None:
            entry["event"] = event
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


def setup_logging() -> None:
    """Configure the root logger from the environment.

    ``LOG_FORMAT=json`` (the default) writes one JSON object per record for
    log aggregation; ``LOG_FORMAT=text`` is the human-friendly layout for
    local development.  ``LOG_LEVEL`` sets the root level (default INFO) and
    ``SECURITY_LOG_LEVEL`` overrides it for rejection events only.
    """
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if os.getenv("LOG_FORMAT", "json").lower() == "json":
        handler.setFormatter(JsonFormatter(datefmt=DATE_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT))

    root = logging.getLogger()
    # Replace handlers so a reload does not duplicate output
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    security_level = os.getenv("SECURITY_LOG_LEVEL")
    if security_level:
        logging.getLogger("gatekeeper.security").setLevel(
            getattr(logging, security_level.upper(), logging.WARNING)
        )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
