"""Logging bootstrap with optional JSON-lines output.

Session modules log an event name as the message and pass the same name as
``extra={"event": ...}`` together with any context fields. The JSON formatter
promotes ``event`` to a top-level key and groups the context under
``fields``; plain text output appends the event context after the message.
"""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
from typing import Any

APP_LOGGER_PREFIX = "ollama_session"
NOISY_LIBRARY_LOGGERS = ("httpx", "httpcore", "ollama")
DEFAULT_LOG_FILE = "~/.local/state/ollama-session/session.log"
PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_RESERVED_RECORD_KEYS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "event"}


def event_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Return the ``extra`` context attached to ``record``, without ``event``."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_RECORD_KEYS
    }


class JsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, event and fields."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        event = getattr(record, "event", None) or message
        data: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": event,
        }
        if message != event:
            data["message"] = message
        fields = event_fields(record)
        if fields:
            data["fields"] = fields
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)


class PlainFormatter(logging.Formatter):
    """Human readable lines with event context as ``key=value`` pairs."""

    def __init__(self) -> None:
        super().__init__(PLAIN_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = event_fields(record)
        if not fields:
            return line
        context = " ".join(f"{key}={value}" for key, value in fields.items())
        return f"{line} {context}"


class PackageFilter(logging.Filter):
    """Pass only records from the session package and its submodules."""

    def __init__(self, prefix: str = APP_LOGGER_PREFIX) -> None:
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        return record.name == self.prefix or record.name.startswith(f"{self.prefix}.")


def _open_private_log(path: str) -> logging.FileHandler:
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(target, encoding="utf-8")
    if os.name == "posix":
        try:
            target.chmod(0o600)
        except OSError:
            logging.getLogger(__name__).warning(
                "Unable to enforce 0600 permissions for %s", target
            )
    return handler


def configure_logging(logging_config: dict[str, Any]) -> list[logging.Handler]:
    """Configure root logging from the ``[logging]`` config section.

    Returns the handlers installed on the root logger.
    """
    level_name = str(logging_config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter: logging.Formatter = (
        JsonFormatter()
        if bool(logging_config.get("structured", True))
        else PlainFormatter()
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    for logger_name in NOISY_LIBRARY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    # Console shows only this package's warnings; the log file gets everything.
    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(max(level, logging.WARNING))
    stderr_handler.addFilter(PackageFilter())
    handlers: list[logging.Handler] = [stderr_handler]

    if bool(logging_config.get("log_to_file", False)):
        file_handler = _open_private_log(
            str(logging_config.get("log_file_path", DEFAULT_LOG_FILE))
        )
        file_handler.setLevel(level)
        handlers.append(file_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    return handlers
