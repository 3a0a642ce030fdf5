"""Utilities for storing and inspecting structured run reports."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

__all__ = ["RunLogEntry", "latest_run_log", "load_run_log", "save_run_log"]

_SUFFIX = ".json"


@dataclass(slots=True)
class RunLogEntry:
    """In-memory representation of a stored run report."""

    path: Path
    command: str
    payload: Mapping[str, Any]

    @property
    def targets(self) -> list[Mapping[str, Any]]:
        value = self.payload.get("targets")
        if isinstance(value, list):
            return [item for item in value if isinstance(item, Mapping)]
        return []

    @property
    def finished_at(self) -> str | None:
        candidate = self.payload.get("finished_at")
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
        return None

    @property
    def failed_targets(self) -> list[str]:
        return [str(item.get("target")) for item in self.targets if item.get("status") == "failed"]


def save_run_log(logs_dir: Path, command: str, payload: Mapping[str, Any]) -> Path:
    """Write ``payload`` as ``<command>-<timestamp>.json`` under ``logs_dir``."""
    now = datetime.now(timezone.utc)
    record = {"command": command, "finished_at": now.isoformat(), **payload}
    logs_dir.mkdir(parents=True, exist_ok=True)
    path = logs_dir / f"{command}-{now.strftime('%Y%m%dT%H%M%S%fZ')}{_SUFFIX}"
    with path.open("w", encoding="utf-8") as handle:
        json.dump(record, handle, indent=2, sort_keys=True)
        handle.write("\n")
    return path


def load_run_log(path: Path | str) -> RunLogEntry:
    """Load a stored run report from disk."""
    log_path = Path(path).resolve()
    with log_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    command = str(payload.get("command") or "").strip()
    return RunLogEntry(path=log_path, command=command, payload=payload)


def latest_run_log(logs_dir: Path, command: str | None = None) -> RunLogEntry | None:
    """Return the most recent stored report, optionally for one command."""
    if not logs_dir.is_dir():
        return None
    pattern = f"{command}-*{_SUFFIX}" if command else f"*{_SUFFIX}"
    candidates = sorted(logs_dir.glob(pattern), key=lambda item: item.stem.rsplit("-", 1)[-1])
    if not candidates:
        return None
    return load_run_log(candidates[-1])
