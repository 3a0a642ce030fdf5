"""Error hierarchy shared by the patch pipeline."""

from __future__ import annotations

from typing import Any, Mapping, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from .model import AppliedStep, HunkFailure
    from .tree import WorkingTree


class PatchstackError(RuntimeError):
    """Base class for pipeline failures carrying structured details."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class ConfigError(PatchstackError):
    """Raised when the pipeline configuration is missing or invalid."""


class ResolutionError(PatchstackError):
    """Raised when an upstream cannot be fetched or its ref does not exist."""


class PatchFormatError(PatchstackError):
    """Raised when patch text cannot be parsed or describes unsafe paths."""


class PatchApplyError(PatchstackError):
    """Raised in strict mode when an entry fails to apply cleanly.

    The working tree attached to the error reflects the last entry that applied
    completely; the failing entry contributes nothing to it.
    """

    def __init__(
        self,
        message: str,
        *,
        target: str | None,
        entry: str,
        failures: Sequence["HunkFailure"],
        applied_steps: Sequence["AppliedStep"] = (),
        tree: "WorkingTree | None" = None,
    ) -> None:
        details = {
            "target": target,
            "entry": entry,
            "failures": [failure.to_dict() for failure in failures],
            "applied_entries": [step.entry.name for step in applied_steps],
        }
        super().__init__(message, details=details)
        self.target = target
        self.entry = entry
        self.failures = tuple(failures)
        self.applied_steps = tuple(applied_steps)
        self.tree = tree

    def describe(self) -> str:
        """Render a multi-line description suitable for terminal output."""

        lines = [str(self)]
        for failure in self.failures:
            lines.append(f"  - {failure.describe()}")
        return "\n".join(lines)


class RebuildError(PatchstackError):
    """Raised when a patch stack cannot be regenerated for one target."""

    def __init__(self, message: str, *, target: str | None = None, details: Mapping[str, Any] | None = None) -> None:
        payload = dict(details or {})
        payload.setdefault("target", target)
        super().__init__(message, details=payload)
        self.target = target


__all__ = [
    "ConfigError",
    "PatchApplyError",
    "PatchFormatError",
    "PatchstackError",
    "RebuildError",
    "ResolutionError",
]
