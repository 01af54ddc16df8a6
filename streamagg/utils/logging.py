"""
Structured logging for the streaming aggregation engine.

Every engine log call carries its context (tick number, batch id, file path,
query id) as ``extra`` fields. The console formatter appends those fields as
``key=value`` pairs after the message; the JSON formatter emits them as
top-level keys so log shippers can index them.

Usage:
    from streamagg.utils.logging import bind, configure_logging, get_logger

    configure_logging(level="INFO", json_logs=False)
    log = get_logger(__name__)
    tick_log = bind(log, tick=7, batch_id=3)
    tick_log.info("[TICK COMMIT]", extra={"rows": 1000})
"""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict, MutableMapping, Optional, Tuple

# Attributes every LogRecord carries; anything else arrived via ``extra=``.
_RESERVED = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "extra",
}


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached to ``record`` through ``extra=`` (or a nested ``extra`` dict)."""
    context = {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED and not key.startswith("_")
    }
    nested = getattr(record, "extra", None)
    if isinstance(nested, dict):
        context.update(nested)
    return context


def _json_formatter(record: logging.LogRecord) -> str:
    """Render a log record as one JSON object per line."""
    payload: Dict[str, Any] = {
        "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
        **record_context(record),
    }
    if record.exc_info:
        payload["exc_info"] = logging.Formatter().formatException(record.exc_info)
    return json.dumps(payload, default=str)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        return _json_formatter(record)


class ContextFormatter(logging.Formatter):
    """Human-readable lines with the record's context appended as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if not context:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        head, sep, tail = line.partition("\n")
        return f"{head} | {pairs}{sep}{tail}"


class ContextAdapter(logging.LoggerAdapter):
    """
    Logger adapter that merges bound context into every call's ``extra``.

    Call-site ``extra`` wins over bound fields with the same name.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs


def bind(logger: logging.Logger, **context: Any) -> ContextAdapter:
    return ContextAdapter(logger, context)


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    force: bool = True,
) -> None:
    """
    Configure root logging.

    Parameters
    ----------
    level : str
        Logging level name (e.g., "DEBUG", "INFO", "WARNING"); case-insensitive.
    json_logs : bool
        Emit one JSON object per line instead of the console format.
    force : bool
        Replace handlers installed by an earlier configuration. When False and
        the root logger already has handlers, only the level is changed.
    """
    root = logging.getLogger()
    if not force and root.handlers:
        root.setLevel(level.upper())
        return

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "console": {
                    "()": ContextFormatter,
                    "fmt": "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
                "json": {"()": JsonFormatter},
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if json_logs else "console",
                    "level": level.upper(),
                }
            },
            "root": {"handlers": ["default"], "level": level.upper()},
        }
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


__all__ = [
    "ContextAdapter",
    "ContextFormatter",
    "JsonFormatter",
    "bind",
    "configure_logging",
    "get_logger",
    "record_context",
]
