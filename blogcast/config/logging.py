"""
Structured logging for the gateway.

Loggers from `get_logger` take keyword fields next to the message:

    logger.info("Viewer joined", content_id="c1", viewer_count=2)

Production renders one JSON object per line. Development renders a short
coloured line with the fields appended as key=value pairs.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from blogcast.config.settings import Settings, settings

FIELDS_ATTR = "fields"

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.INFO,
    "redis": logging.WARNING,
    "httpx": logging.WARNING,
}


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return getattr(record, FIELDS_ATTR, None) or {}


class StructuredFormatter(logging.Formatter):
    """One JSON document per record, for log shippers."""

    def __init__(self, include_source: bool = False):
        super().__init__()
        self._include_source = include_source

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        fields = _record_fields(record)
        if fields:
            entry["fields"] = fields
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if self._include_source:
            entry["source"] = f"{record.pathname}:{record.lineno} in {record.funcName}"
        return json.dumps(entry, default=str)


class DevelopmentFormatter(logging.Formatter):
    """Coloured single-line output for a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        line = f"{clock} {color}{record.levelname:<8}{self.RESET} {record.name} | {record.getMessage()}"

        fields = _record_fields(record)
        if fields:
            line += "  " + " ".join(f"{key}={value!r}" for key, value in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger(logging.Logger):
    """
    Logger whose level methods accept arbitrary keyword fields.

    Standard keywords (exc_info, extra, stack_info, stacklevel) keep their
    usual meaning; everything else is collected into the record's fields.
    """

    def _log(
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **fields: Any,
    ) -> None:
        merged = dict(extra or {})
        merged[FIELDS_ATTR] = fields
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=merged,
            stack_info=stack_info,
            stacklevel=stacklevel,
        )


logging.setLoggerClass(StructuredLogger)


def setup_logging(config: Settings | None = None) -> None:
    """
    Install the gateway's handler on the root logger.

    Call once at startup; calling again replaces the handler.
    """
    config = config or settings
    level = logging.DEBUG if config.debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    if config.environment == "production":
        handler.setFormatter(StructuredFormatter(include_source=config.debug))
    else:
        handler.setFormatter(DevelopmentFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)


def get_logger(name: str) -> StructuredLogger:
    """
    Return the structured logger for `name`, normally the module's __name__.

        logger = get_logger(__name__)
        logger.error("Failed to append message", chat_id="c9", exc_info=True)
    """
    return logging.getLogger(name)  # type: ignore[return-value]
