"""
Logging for Circles Coinflip.

Every module logs through a child of the "coinflip" logger. Console lines are
colored for terminals or emitted as JSON objects for log shippers; an optional
rotating file gets the same lines without color codes.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import orjson

ROOT_LOGGER = "coinflip"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

RESET = "\033[0m"
NAME_COLOR = "\033[96m"
TIME_COLOR = "\033[90m"
LEVEL_COLORS = {
    logging.DEBUG: "\033[90m",
    logging.INFO: "\033[92m",
    logging.WARNING: "\033[93m",
    logging.ERROR: "\033[91m",
    logging.CRITICAL: "\033[95m",
}

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RECORD_FIELDS = set(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
}


class LineFormatter(logging.Formatter):
    """`time | LEVEL | logger | message`, optionally with ANSI colors."""

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record):
        timestamp = self.formatTime(record, TIME_FORMAT)
        level = f"{record.levelname:<8}"
        name = record.name
        if self.color:
            timestamp = f"{TIME_COLOR}{timestamp}{RESET}"
            level = f"{LEVEL_COLORS.get(record.levelno, RESET)}{level}{RESET}"
            name = f"{NAME_COLOR}{name}{RESET}"

        line = f"{timestamp} | {level} | {name} | {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JsonFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(
            (key, value) for key, value in record.__dict__.items() if key not in _RECORD_FIELDS
        )
        return orjson.dumps(payload, default=str).decode()


def _file_handler(path: Path) -> Optional[logging.Handler]:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=3)
    except OSError as e:
        sys.stderr.write(f"WARNING: file logging disabled ({e}); console only.\n")
        return None
    handler.setFormatter(LineFormatter(color=False))
    return handler


def init_logging(
    level: str = "INFO",
    log_to_file: bool = False,
    formatter: str = "color",
    log_file_path: Optional[Path] = None,
) -> logging.Logger:
    """
    (Re)configure the "coinflip" logger.

    Safe to call more than once: handlers installed by an earlier call, or by
    the import-time default from `get_logger`, are closed and replaced.
    """
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.propagate = False

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JsonFormatter() if formatter == "json" else LineFormatter())
    root.addHandler(console)

    if log_to_file and log_file_path is not None:
        handler = _file_handler(log_file_path)
        if handler is not None:
            root.addHandler(handler)

    root.info(f"Logging initialized at {level} level")
    return root


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Child of the "coinflip" logger; installs console defaults on first use."""
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        root.setLevel(logging.INFO)
        root.propagate = False
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(LineFormatter())
        root.addHandler(console)
    return root.getChild(name) if name else root
