"""
Structured logging for the allergen engine.

Log calls take keyword context (recipe_id, line_id, sequence, ...) which
ends up in record.extra_data. Each record also carries the id of the
recompute pass that emitted it (pass_id, set by CorrelationIdFilter), so
every line of one reconciliation can be grouped.

Production writes one JSON object per line; development writes a coloured
single line per record.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from shared.config.settings import settings

# Context keys lifted to the top level of JSON records
TOP_LEVEL_KEYS = ("recipe_id", "sequence")


def _pass_id(record: logging.LogRecord) -> str | None:
    pass_id = getattr(record, "pass_id", None)
    return pass_id if pass_id and pass_id != "-" else None


class StructuredFormatter(logging.Formatter):
    """
    JSON lines.

    recipe_id and sequence are repeated at the top level so a log store can
    index declaration writes without parsing the data object.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        pass_id = _pass_id(record)
        if pass_id:
            log_data["pass_id"] = pass_id

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            for key in TOP_LEVEL_KEYS:
                if key in extra_data:
                    log_data[key] = extra_data[key]
            log_data["data"] = extra_data

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if settings.debug:
            log_data["source"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        return json.dumps(log_data, default=str)


class DevelopmentFormatter(logging.Formatter):
    """`[12:00:01] INFO     [a1b2c3d4] allergen_sync.services.writer: message (k=v | ...)`"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.now().strftime("%H:%M:%S")

        pass_id = _pass_id(record)
        pass_prefix = f"{self.DIM}[{pass_id[:8]}]{self.RESET} " if pass_id else ""

        message = f"{color}[{timestamp}] {record.levelname:8}{self.RESET} {pass_prefix}{record.name}: {record.getMessage()}"

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            message += " (" + " | ".join(f"{k}={v}" for k, v in extra_data.items()) + ")"

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


class StructuredLogger(logging.Logger):
    """Logger whose calls accept keyword context."""

    def _log_with_data(
        self,
        level: int,
        msg: str,
        args: tuple,
        exc_info: Any = None,
        extra: dict | None = None,
        **kwargs: Any,
    ) -> None:
        if not self.isEnabledFor(level):
            return
        if extra is None:
            extra = {}
        extra["extra_data"] = kwargs if kwargs else None
        super()._log(level, msg, args, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log_with_data(logging.DEBUG, msg, args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log_with_data(logging.INFO, msg, args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log_with_data(logging.WARNING, msg, args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        exc_info = kwargs.pop("exc_info", None)
        self._log_with_data(logging.ERROR, msg, args, exc_info=exc_info, **kwargs)

    def critical(self, msg: str, *args: Any, **kwargs: Any) -> None:
        exc_info = kwargs.pop("exc_info", None)
        self._log_with_data(logging.CRITICAL, msg, args, exc_info=exc_info, **kwargs)


logging.setLoggerClass(StructuredLogger)


def setup_logging() -> None:
    """
    Install the engine's handler on the root logger.

    Meant for the host process at startup; the engine never configures
    handlers itself.
    """
    # Deferred: shared.infrastructure imports shared.config at load time
    from shared.infrastructure.correlation import CorrelationIdFilter

    log_level = logging.DEBUG if settings.debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(CorrelationIdFilter())
    if settings.environment == "production":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(DevelopmentFormatter())

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers.clear()
    root.addHandler(handler)

    # SQL store statements are only interesting when debugging the store itself
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    """
    Usage:
        logger = get_logger(__name__)
        logger.info("Allergen declaration written", recipe_id="r-1", sequence=4)
    """
    return logging.getLogger(name)  # type: ignore


persistence_logger = get_logger("allergen_sync.persistence")
