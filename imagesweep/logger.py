"""Process-wide logging set-up driven by a level name."""

from __future__ import annotations

import json
import logging
import sys

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "dpanic": logging.CRITICAL,
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
}

_LEVEL_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "fatal",
}

_RESERVED = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}

_HANDLER_MARK = "_imagesweep_handler"


class LogLevelError(ValueError):
    """The log level name is not recognised."""


def parse_level(name: str) -> int:
    """Return the logging level for a name given all in lower or all in upper case."""
    key = name.lower()
    if key in _LEVELS and name in (key, name.upper()):
        return _LEVELS[key]
    raise LogLevelError(
        f"unable to parse log level: unrecognized level: {json.dumps(name)}: {name}"
    )


def _level_name(levelno: int) -> str:
    for threshold in sorted(_LEVEL_NAMES, reverse=True):
        if levelno >= threshold:
            return _LEVEL_NAMES[threshold]
    return "debug"


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "level": _level_name(record.levelno),
            "ts": record.created,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(
            (key, value) for key, value in record.__dict__.items() if key not in _RESERVED
        )
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure(level: str = "info") -> logging.Logger:
    """Install a single stderr handler on the root logger and return the root logger.

    Debug level gets a readable console format; every other level gets JSON lines.
    """
    levelno = parse_level(level)
    handler = logging.StreamHandler(sys.stderr)
    if levelno <= logging.DEBUG:
        handler.setFormatter(
            logging.Formatter("%(asctime)s\t%(levelname)s\t%(name)s\t%(message)s")
        )
    else:
        handler.setFormatter(_JsonFormatter())
    setattr(handler, _HANDLER_MARK, True)

    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, _HANDLER_MARK, False):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(levelno)
    return root