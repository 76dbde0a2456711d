from __future__ import annotations
import json
import os
import sys
import threading
import time
import traceback
from typing import Any, Dict, Optional, TextIO


LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}

# One lock for every logger: dispatch threads share stdout
_write_lock = threading.Lock()


class StructuredLogger:
    """JSON-line logger shared by consumers, loops and dispatch threads."""

    def __init__(
        self,
        name: str = "sqs_consumer",
        level: str = "INFO",
        stream: Optional[TextIO] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.name = name
        self.level = level.upper()
        self.stream = stream
        self.context: Dict[str, Any] = dict(context or {})

    # ----------------------------------------------------------------------
    # Core logging method
    # ----------------------------------------------------------------------
    def _log(self, level: str, msg: str, extra: Optional[Dict[str, Any]] = None):
        """Format and write one JSON log line."""
        if LEVELS.get(level, 100) < LEVELS.get(self.level, 20):
            return

        try:
            record = {
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                "level": level,
                "logger": self.name,
                "msg": str(msg),
                "thread": threading.current_thread().name,
            }

            merged = dict(self.context)
            if extra and isinstance(extra, dict):
                merged.update(extra)
            for k, v in merged.items():
                # Core keys win
                if k not in record:
                    record[k] = v

            line = json.dumps(record, ensure_ascii=False, default=str)
            out = self.stream or sys.stdout
            with _write_lock:
                print(line, file=out, flush=True)

        except Exception as e:
            # Never crash a consumer because of logging
            print(f"[logger-error] failed to log: {e}", file=sys.stderr, flush=True)

    # ----------------------------------------------------------------------
    # Public convenience methods
    # ----------------------------------------------------------------------
    def log(self, fmt: str, *args: Any):
        """printf-style INFO line: log("received %d messages from %s", n, name)."""
        try:
            msg = fmt % args if args else fmt
        except (TypeError, ValueError):
            msg = " ".join([fmt] + [str(a) for a in args])
        self._log("INFO", msg)

    def info(self, msg: str, extra: Optional[Dict[str, Any]] = None):
        self._log("INFO", msg, extra)

    def warning(self, msg: str, extra: Optional[Dict[str, Any]] = None):
        self._log("WARNING", msg, extra)

    def error(self, msg: Any, extra: Optional[Dict[str, Any]] = None):
        # Exception objects get type + traceback
        if isinstance(msg, BaseException):
            err_str = f"{type(msg).__name__}: {msg}"
            tb = "".join(traceback.format_exception(type(msg), msg, msg.__traceback__))
            extra = dict(extra or {}, traceback=tb)
            self._log("ERROR", err_str, extra)
        else:
            self._log("ERROR", msg, extra)

    def debug(self, msg: str, extra: Optional[Dict[str, Any]] = None):
        self._log("DEBUG", msg, extra)

    def set_level(self, level: str) -> None:
        self.level = level.upper()

    # ----------------------------------------------------------------------
    # Context binding
    # ----------------------------------------------------------------------
    def bind(self, **context: Any) -> "StructuredLogger":
        """
        Return a child logger with context attached to every line.
        Example:
            log = get_logger("consumer").bind(queue="orders", message_id="m-1")
        """
        merged = dict(self.context)
        merged.update(context)
        return StructuredLogger(name=self.name, level=self.level, stream=self.stream, context=merged)


# ----------------------------------------------------------------------
# Module-level logger registry (one logger per name)
# ----------------------------------------------------------------------

_loggers: Dict[str, StructuredLogger] = {}
_registry_lock = threading.Lock()


def get_logger(name: str = "sqs_consumer", level: Optional[str] = None) -> StructuredLogger:
    """Get or create a logger. Level defaults to LOG_LEVEL env var, then INFO."""
    with _registry_lock:
        if name not in _loggers:
            _loggers[name] = StructuredLogger(name=name, level=level or os.environ.get("LOG_LEVEL", "INFO"))
        elif level:
            _loggers[name].set_level(level)
        return _loggers[name]


__all__ = ["StructuredLogger", "get_logger", "LEVELS"]
