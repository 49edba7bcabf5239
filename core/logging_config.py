"""
Logging setup for the plan consensus engine.

Every pipeline stage logs through ``logging.getLogger(__name__)``. Records
may carry consensus context as ``extra`` fields (``provider``, ``stage``,
``item_key``, ``latency_ms``); both formatters surface whatever is present.

- ConsoleFormatter: level tag, optional ``(provider)`` prefix, message
- JSONFormatter: one JSON object per line (``--json-log`` and ``--log-file``)

Usage:
    from core.logging_config import configure_logging, ProviderLoggerAdapter

    configure_logging(json_mode=args.json_log, log_file=args.log_file)
    log = ProviderLoggerAdapter(logger, {"provider": "claude", "stage": "dispatch"})
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

# Extra attributes copied into JSON lines when set and non-empty
CONTEXT_FIELDS = ("provider", "stage", "item_key", "latency_ms")

# Vendor SDK loggers, held at WARNING or above
SDK_LOGGERS = ("httpx", "openai", "anthropic", "google.generativeai")

_LEVEL_TAGS = {
    logging.DEBUG: ("\033[90m", "DEBUG"),
    logging.INFO: ("", "INFO"),
    logging.WARNING: ("\033[33m", "WARN"),
    logging.ERROR: ("\033[31m", "ERROR"),
    logging.CRITICAL: ("\033[1;31m", "CRIT"),
}
_RESET = "\033[0m"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with consensus context and error details."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value not in (None, ""):
                entry[name] = value
        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["error"] = {"type": type(exc).__name__, "message": str(exc)}
        return json.dumps(entry, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Terminal output: ``[LEVEL] (provider) message``."""

    def format(self, record: logging.LogRecord) -> str:
        color, tag = _LEVEL_TAGS.get(record.levelno, ("", record.levelname))
        prefix = f"{color}[{tag}]{_RESET}" if color else f"[{tag}]"
        provider = getattr(record, "provider", None)
        message = record.getMessage()
        if provider:
            message = f"({provider}) {message}"
        line = f"{prefix} {message}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _handler(handler: logging.Handler, formatter: logging.Formatter, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    *,
    json_mode: bool = False,
    log_file: Optional[str] = None,
    level: int = logging.INFO,
    quiet: bool = False,
) -> None:
    """
    Replace the root handlers with the CLI's console and file handlers.

    Args:
        json_mode: Console emits JSON lines instead of tagged text
        log_file: Also append JSON lines to this file
        level: Root and handler level
        quiet: No console handler (file only, if given)
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if not quiet:
        formatter = JSONFormatter() if json_mode else ConsoleFormatter()
        root.addHandler(_handler(logging.StreamHandler(sys.stderr), formatter, level))

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(_handler(logging.FileHandler(log_file, encoding="utf-8"), JSONFormatter(), level))

    for name in SDK_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


class ProviderLoggerAdapter(logging.LoggerAdapter):
    """Stamps ``provider`` and ``stage`` on every record; explicit ``extra`` wins."""

    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        for name in ("provider", "stage"):
            extra.setdefault(name, self.extra.get(name, ""))
        return msg, kwargs
