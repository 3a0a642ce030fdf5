"""Structured telemetry events and per-run log files."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

TELEMETRY_LOGGER = logging.getLogger("patchstack.telemetry")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def emit_event(event: str, **fields: Any) -> None:
    """Log one structured pipeline event as compact JSON."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


def run_log_path(state_dir: Path, command: str, *, now: datetime | None = None) -> Path:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    return Path(state_dir) / "logs" / f"{command}-{stamp}.log"


def configure_run_logging(state_dir: Path, command: str) -> tuple[Path, logging.Handler]:
    """Attach a DEBUG file handler for one CLI run and return its location.

    The caller detaches the handler with :func:`close_run_logging` once the
    command finishes.
    """

    path = run_log_path(state_dir, command)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger("patchstack")
    root.addHandler(handler)
    if root.level == logging.NOTSET or root.level > logging.DEBUG:
        root.setLevel(logging.DEBUG)
    return path, handler


def close_run_logging(handler: logging.Handler) -> None:
    logging.getLogger("patchstack").removeHandler(handler)
    handler.close()


__all__ = [
    "TELEMETRY_LOGGER",
    "close_run_logging",
    "configure_run_logging",
    "emit_event",
    "run_log_path",
]
