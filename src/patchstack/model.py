"""Pipeline data model: upstream refs, targets, and apply outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Tuple

from .stack import PatchEntry, StackLayout
from .tools.diff import Hunk
from .tree import REJECT_SUFFIX, ExclusionRules, SourceTree, WorkingTree


@dataclass(frozen=True, slots=True)
class UpstreamRef:
    """One snapshot of upstream truth: repository location plus ref."""

    repository: str
    ref: str

    def describe(self) -> str:
        return f"{self.repository}@{self.ref}"


class TargetKind(str, Enum):
    """Shape of a patch target."""

    FILE = "file"
    DIRECTORY = "directory"
    REPO = "repo"


_LAYOUT_BY_KIND = {
    TargetKind.FILE: StackLayout.SINGLE,
    TargetKind.DIRECTORY: StackLayout.FILES,
    TargetKind.REPO: StackLayout.COMMITS,
}


@dataclass(frozen=True, slots=True)
class PatchTarget:
    """Mapping from an upstream path to an output location and its patch set."""

    name: str
    kind: TargetKind
    upstream: str
    upstream_path: str
    output: Path
    patches: Path
    excludes: Tuple[str, ...] = ()
    access_transformer: Path | None = None

    @property
    def stack_layout(self) -> StackLayout:
        return _LAYOUT_BY_KIND[self.kind]

    @property
    def exclusions(self) -> ExclusionRules:
        return ExclusionRules.from_patterns(self.excludes)

    @property
    def logical_path(self) -> str:
        """Path under which a single-file target appears inside its patch."""
        return self.upstream_path.rsplit("/", 1)[-1]


@dataclass(frozen=True, slots=True)
class HunkFailure:
    """A hunk (or whole file section) that could not be applied."""

    entry: str
    path: str
    reason: str
    hunk: Hunk | None = None

    def describe(self) -> str:
        location = f"{self.path} {self.hunk.header()}" if self.hunk else self.path
        return f"{self.entry}: {location}: {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry": self.entry,
            "path": self.path,
            "reason": self.reason,
            "hunk": self.hunk.header() if self.hunk else None,
        }


@dataclass(frozen=True, slots=True)
class RejectArtifact:
    """Failed hunks of one entry against one file, written as ``<file>.rej``."""

    target_file: str
    entry: str
    hunks: Tuple[Hunk, ...] = ()
    reasons: Tuple[str, ...] = ()

    @property
    def file_name(self) -> str:
        return self.target_file + REJECT_SUFFIX

    def render(self) -> str:
        lines = [
            f"diff a/{self.target_file} b/{self.target_file}\t(rejected hunks from {self.entry})",
        ]
        for reason in self.reasons:
            lines.append(f"# {reason}")
        lines.append(f"--- a/{self.target_file}")
        lines.append(f"+++ b/{self.target_file}")
        text = "\n".join(lines) + "\n"
        return text + "".join(hunk.render() for hunk in self.hunks)


@dataclass(frozen=True, slots=True)
class AppliedStep:
    """Changes contributed by one entry, in apply order."""

    entry: PatchEntry
    changes: Mapping[str, bytes | None]
    failures: Tuple[HunkFailure, ...] = ()

    @property
    def clean(self) -> bool:
        return not self.failures


class ApplyStatus(str, Enum):
    CLEAN = "clean"
    PARTIAL = "partial"


@dataclass(slots=True)
class ApplyResult:
    """Outcome of applying a stack; ``status`` is derived from the rejects."""

    target: str | None
    base: SourceTree
    tree: WorkingTree
    steps: Tuple[AppliedStep, ...] = ()
    rejects: Tuple[RejectArtifact, ...] = ()

    @property
    def status(self) -> ApplyStatus:
        return ApplyStatus.PARTIAL if self.rejects else ApplyStatus.CLEAN

    @property
    def is_clean(self) -> bool:
        return self.status is ApplyStatus.CLEAN

    @property
    def failures(self) -> Tuple[HunkFailure, ...]:
        return tuple(failure for step in self.steps for failure in step.failures)

    @property
    def failed_entries(self) -> Tuple[str, ...]:
        return tuple(step.entry.name for step in self.steps if not step.clean)

    def rejects_by_file(self) -> dict[str, list[RejectArtifact]]:
        grouped: dict[str, list[RejectArtifact]] = {}
        for reject in self.rejects:
            grouped.setdefault(reject.target_file, []).append(reject)
        return grouped


__all__ = [
    "AppliedStep",
    "ApplyResult",
    "ApplyStatus",
    "HunkFailure",
    "PatchTarget",
    "RejectArtifact",
    "TargetKind",
    "UpstreamRef",
]
