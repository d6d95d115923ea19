"""
Logging configuration — central setup for the controller process.

Called once at startup by main.py.  Every module that does
``logger = logging.getLogger(__name__)`` inherits this config.

Levels are resolved in precedence order:
    CLI flag  >  TFC_LOG_LEVEL env var  >  WARNING (default)

Controller-specific knobs:
    TFC_LOG_FORMAT   text (default) or json, one object per line for
                     cluster log collectors
    TFC_LOG_LEVELS   per-logger overrides, e.g.
                     ``tfcontrol.adapters.kubectl=DEBUG,werkzeug=ERROR``
    TFC_LOG_FILE / TFC_LOG_FILE_LEVEL   optional file output

Text output names the thread at INFO and below, so records from
concurrent ``reconcile-N`` workers can be told apart.

Reconciliation attempts log through ``reconcile_logger()``, which tags
every record with the object key and the attempt's loop id.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

# ── Format strings ──────────────────────────────────────────────

_FMT_MINIMAL = "%(message)s"

_FMT_VERBOSE = "%(asctime)s [%(threadName)s] %(name)s: %(message)s"
_DATEFMT_VERBOSE = "%H:%M:%S"

_FMT_DEBUG = "%(asctime)s %(levelname)-5s [%(threadName)s] %(name)s:%(lineno)d - %(message)s"
_DATEFMT_DEBUG = "%H:%M:%S"

_FMT_FILE = "%(asctime)s %(levelname)-5s [%(threadName)s] %(name)s:%(lineno)d - %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

# werkzeug logs every probe request
_NOISY_LOGGERS = ("urllib3", "werkzeug")

LOG_FORMATS = ("text", "json")


class JsonFormatter(logging.Formatter):
    """One JSON object per record, carrying reconcile context when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        for attr in ("object", "loop_id"):
            value = getattr(record, attr, None)
            if value is not None:
                entry[attr] = value
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
    log_format: str = "text",
    logger_levels: dict[str, str] | None = None,
) -> None:
    """Configure Python logging for the entire process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path to a log file.
        log_file_level: Optional separate level for the log file.
            Defaults to the same as ``level``.
        quiet_third_party: If True, keep noisy third-party loggers at WARNING
            unless we're at DEBUG level.
        log_format: ``text`` or ``json`` for the console handler.
        logger_levels: Per-logger level names, applied last so they win
            over third-party quieting.
    """
    numeric_level = _parse_level(level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(_console_formatter(numeric_level, log_format))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    effective_level = numeric_level

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else numeric_level
        effective_level = min(effective_level, file_level)

        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
        root.addHandler(fh)

    root.setLevel(effective_level)

    if quiet_third_party and numeric_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    for name, name_level in (logger_levels or {}).items():
        logging.getLogger(name).setLevel(_parse_level(name_level))

    logging.raiseExceptions = False


def _console_formatter(numeric_level: int, log_format: str) -> logging.Formatter:
    if log_format.lower() == "json":
        return JsonFormatter()
    if numeric_level <= logging.DEBUG:
        return logging.Formatter(_FMT_DEBUG, datefmt=_DATEFMT_DEBUG)
    if numeric_level <= logging.INFO:
        return logging.Formatter(_FMT_VERBOSE, datefmt=_DATEFMT_VERBOSE)
    return logging.Formatter(_FMT_MINIMAL)


def _parse_level(level: str | None) -> int:
    """Convert a level name string to its numeric constant."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric


def parse_logger_levels(text: str | None) -> dict[str, str]:
    """Parse ``name=LEVEL,name=LEVEL``; malformed entries are skipped."""
    levels: dict[str, str] = {}
    for part in (text or "").split(","):
        name, sep, level = part.partition("=")
        if sep and name.strip() and level.strip():
            levels[name.strip()] = level.strip().upper()
    return levels


class ReconcileLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with the object key and reconciliation-loop id.

    The key and loop id also land on the record as ``object`` and
    ``loop_id`` for structured output.
    """

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = self.extra or {}
        kwargs["extra"] = {**extra, **kwargs.get("extra", {})}
        return f"[{extra['object']} loop={extra['loop_id'][:8]}] {msg}", kwargs


def reconcile_logger(logger: logging.Logger, object_key: str, loop_id: str | None = None) -> ReconcileLogAdapter:
    """Logger for one reconciliation attempt."""
    return ReconcileLogAdapter(logger, {"object": object_key, "loop_id": loop_id or str(uuid.uuid4())})
