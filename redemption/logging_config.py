"""JSON logging for the redemption service.

Everything goes through Loguru; stdlib loggers (uvicorn, sqlalchemy, httpx)
are bridged in so one line per event reaches stdout.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict

from loguru import logger

# attributes every LogRecord carries; anything else was passed as ``extra``
_STANDARD_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}
# uvicorn repeats the message with ANSI colours
_DROPPED_EXTRAS = {"color_message"}


class InterceptHandler(logging.Handler):
    """Forward stdlib records to Loguru, keeping their ``extra`` fields."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_ATTRS and key not in _DROPPED_EXTRAS
        }
        message = record.getMessage().replace("{", "{{").replace("}", "}}")
        logger.bind(**extra).opt(depth=6, exception=record.exc_info).log(level, message)


def _write_json(message: "logger.Message", service: str, environment: str) -> None:
    record = message.record
    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        "service": service,
        "environment": environment,
        **record["extra"],
    }
    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)
    sys.stdout.write(json.dumps(payload, default=str) + "\n")


def configure_logging(*, service_name: str, environment: str, level: str = "INFO") -> None:
    logger.remove()
    logger.add(
        lambda message: _write_json(message, service_name, environment),
        level=level.upper(),
        backtrace=False,
        diagnose=False,
    )
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
