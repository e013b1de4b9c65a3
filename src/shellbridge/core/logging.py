"""
shellbridge logging — plain text on the console, or one JSON object per line.

SHELLBRIDGE_LOG_FORMAT=json switches to JSON. These ``extra`` keys are
copied into each JSON entry: session_id, peer_id, phase, turn,
duration_ms, status.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone

TEXT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

_EXTRA_KEYS = ("session_id", "peer_id", "phase", "turn", "duration_ms", "status")

# ICE and Socket.IO internals log every packet
_QUIET_LOGGERS = ("aiortc", "aioice", "socketio", "engineio", "openai")


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update({key: getattr(record, key) for key in _EXTRA_KEYS if hasattr(record, key)})
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TurnTimer:
    """Stage durations within one agent turn, e.g. "completion: 2.1s | execute: 0.4s | Total: 2.5s"."""

    def __init__(self):
        self._start = time.monotonic()
        self._marks: list[tuple[str, float]] = []

    def mark(self, stage: str) -> None:
        self._marks.append((stage, time.monotonic()))

    def total(self) -> float:
        return time.monotonic() - self._start

    def summary(self) -> str:
        parts = []
        previous = self._start
        for stage, at in self._marks:
            parts.append(f"{stage}: {at - previous:.1f}s")
            previous = at
        parts.append(f"Total: {self.total():.1f}s")
        return " | ".join(parts)


def setup_logging(level_name: str | None = None) -> None:
    """Configure the root logger once at startup.

    ``level_name`` (from the command line) wins over SHELLBRIDGE_LOG_LEVEL.
    """
    level_name = (level_name or os.getenv("SHELLBRIDGE_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_format = os.getenv("SHELLBRIDGE_LOG_FORMAT", "text").lower()

    if log_format == "json":
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt="%H:%M:%S")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("shellbridge").debug(f"Logging configured (level={level_name}, format={log_format})")
