"""
Logging setup for TixFlow.

All TixFlow modules log through children of the ``tixflow`` logger
(``tixflow.ledger``, ``tixflow.api``, ``tixflow.storage`` ...).  Two output
formats are available:

  - **human** – coloured single line: ``12:00:01 [INFO   ] tixflow.ledger: ...``
  - **json**  – one JSON object per line, for log shippers

Log files are always written as JSON.

Usage:
    from tixflow_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="data/tixflow.log")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "tixflow"

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Attributes every LogRecord carries; anything else came in via ``extra=``.
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class _JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info and record.exc_info[1]:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class _HumanFormatter(logging.Formatter):

    COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, colour: bool = True):
        super().__init__()
        self._colour = colour

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        start = self.COLOURS.get(record.levelname, "") if self._colour else ""
        end = self.RESET if self._colour else ""
        line = f"{start}{ts} [{record.levelname:<7}]{end} {record.name}: {record.getMessage()}"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def set_level(level: str) -> str:
    """Change the ``tixflow`` logger level at runtime. Returns the level applied."""
    level = level.upper()
    if level not in _LEVELS:
        raise ValueError(f"Invalid log level {level!r}; use one of {', '.join(_LEVELS)}")
    logging.getLogger(ROOT_LOGGER).setLevel(getattr(logging, level))
    return level


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Configure the root logger.

    Parameters
    ----------
    level : str
        One of DEBUG, INFO, WARNING, ERROR, CRITICAL (unknown values fall
        back to INFO).
    fmt : str
        ``"human"`` or ``"json"`` for the console handler.
    log_file : str, optional
        Also write JSON records to this file; parent directories are created.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_JSONFormatter())
    else:
        console.setFormatter(_HumanFormatter(colour=sys.stderr.isatty()))
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path))
        fh.setFormatter(_JSONFormatter())
        root.addHandler(fh)

    # aiohttp logs every request at INFO; keep it out of the ledger's log.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
