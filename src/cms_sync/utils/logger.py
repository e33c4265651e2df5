"""
Logging for CMS Sync.

Everything under the ``cms_sync`` logger goes to one console handler
(rich, json or simple, per ``[logging] format``) and optionally to a
rotating file. Push and pull attach ``kind``/``record_id`` to per-record
messages via ``extra=``; the JSON format emits them as fields.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

from cms_sync.config import LoggingConfig


console = Console()

logger = logging.getLogger("cms_sync")

LINE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Attributes a caller may attach with ``extra=`` that JSON output keeps
RECORD_CONTEXT = ("kind", "record_id", "asset_state")

# httpx logs every request at INFO
_TRANSPORT_LOGGERS = ("httpx", "httpcore")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with the record context when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in RECORD_CONTEXT:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _console_handler(style: str) -> logging.Handler:
    if style == "rich":
        handler: logging.Handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            show_time=True,
            show_path=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        return handler

    handler = logging.StreamHandler(sys.stdout)
    if style == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(LINE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(config: LoggingConfig | None = None, level: str | None = None) -> None:
    """
    Install handlers on the ``cms_sync`` logger.

    Safe to call repeatedly; earlier handlers are replaced.

    Args:
        config: The ``[logging]`` settings section (defaults if omitted)
        level: Overrides ``config.level``, e.g. WARNING for ``--quiet``
    """
    config = config or LoggingConfig()
    log_level = getattr(logging, (level or config.level).upper(), logging.INFO)

    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    logger.setLevel(log_level)
    logger.propagate = False

    handlers = [_console_handler(config.format)]
    if config.file:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.file,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        file_handler.setFormatter(logging.Formatter(LINE_FORMAT, datefmt=DATE_FORMAT))
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(log_level)
        logger.addHandler(handler)

    transport_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in _TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(transport_level)
