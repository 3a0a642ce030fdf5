"""Read-only source tree views and the copy-on-write working tree."""

from __future__ import annotations

import fnmatch
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterable, Mapping, Protocol, Sequence, runtime_checkable

REJECT_SUFFIX = ".rej"
_SKIPPED_DIRECTORIES = frozenset({".git"})


@runtime_checkable
class SourceTree(Protocol):
    """Minimal read interface shared by upstream snapshots and working copies."""

    def read(self, path: str) -> bytes | None:
        """Return the content of ``path`` or ``None`` when it does not exist."""

    def files(self) -> list[str]:
        """Return every file path in the tree, sorted, in posix form."""

    def describe(self) -> str:
        """Return a short human readable label for log messages."""


@dataclass(frozen=True, slots=True)
class DirectoryTree:
    """Files under ``root`` on disk, skipping ``.git`` metadata."""

    root: Path
    revision: str | None = None

    def _resolve(self, path: str) -> Path:
        return self.root.joinpath(*PurePosixPath(path).parts)

    def read(self, path: str) -> bytes | None:
        candidate = self._resolve(path)
        if not candidate.is_file():
            return None
        return candidate.read_bytes()

    def files(self) -> list[str]:
        if not self.root.is_dir():
            return []
        collected: list[str] = []
        for current, directories, filenames in os.walk(self.root):
            directories[:] = sorted(name for name in directories if name not in _SKIPPED_DIRECTORIES)
            base = Path(current).relative_to(self.root)
            for filename in filenames:
                collected.append((base / filename).as_posix())
        return sorted(collected)

    def subtree(self, relative: str) -> "DirectoryTree":
        if not relative or relative == ".":
            return self
        return DirectoryTree(root=self._resolve(relative), revision=self.revision)

    def describe(self) -> str:
        if self.revision:
            return f"{self.root.as_posix()}@{self.revision[:12]}"
        return self.root.as_posix()


@dataclass(frozen=True, slots=True)
class SingleFileTree:
    """Expose a single disk file under a logical path."""

    logical_path: str
    location: Path
    revision: str | None = None

    def read(self, path: str) -> bytes | None:
        if path != self.logical_path or not self.location.is_file():
            return None
        return self.location.read_bytes()

    def files(self) -> list[str]:
        if self.location.is_file():
            return [self.logical_path]
        return []

    def describe(self) -> str:
        return f"{self.location.as_posix()} as {self.logical_path}"


class WorkingTree:
    """Copy-on-write overlay on top of a base tree.

    Changes are staged per entry so that a failing entry never leaves the
    overlay half-updated.
    """

    def __init__(self, base: SourceTree) -> None:
        self.base = base
        self._overlay: dict[str, bytes | None] = {}

    def read(self, path: str) -> bytes | None:
        if path in self._overlay:
            return self._overlay[path]
        return self.base.read(path)

    def exists(self, path: str) -> bool:
        return self.read(path) is not None

    def files(self) -> list[str]:
        present = set(self.base.files())
        for path, content in self._overlay.items():
            if content is None:
                present.discard(path)
            else:
                present.add(path)
        return sorted(present)

    def stage(self, changes: Mapping[str, bytes | None]) -> None:
        """Record one entry's changes; ``None`` deletes a file."""
        for path, content in changes.items():
            self._overlay[path] = content

    def changes(self) -> dict[str, bytes | None]:
        """Return the net overlay relative to the base tree."""
        net: dict[str, bytes | None] = {}
        for path in sorted(self._overlay):
            content = self._overlay[path]
            if content != self.base.read(path):
                net[path] = content
        return net

    def describe(self) -> str:
        return f"working tree over {self.base.describe()}"


@dataclass(frozen=True, slots=True)
class ExclusionRules:
    """Path patterns that are never patched and never proposed as patches."""

    patterns: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_patterns(cls, patterns: Iterable[str] | None) -> "ExclusionRules":
        cleaned = []
        for pattern in patterns or ():
            normalised = pattern.strip().strip("/")
            if normalised:
                cleaned.append(normalised)
        return cls(patterns=tuple(cleaned))

    def excludes(self, path: str) -> bool:
        for pattern in self.patterns:
            if path == pattern or path.startswith(pattern + "/"):
                return True
            if fnmatch.fnmatchcase(path, pattern):
                return True
        return False

    def filter(self, paths: Sequence[str]) -> list[str]:
        return [path for path in paths if not self.excludes(path)]

    def __bool__(self) -> bool:
        return bool(self.patterns)


def find_reject_files(tree: SourceTree) -> list[str]:
    """Return reject artifacts that still sit in ``tree``."""
    return [path for path in tree.files() if path.endswith(REJECT_SUFFIX)]


__all__ = [
    "DirectoryTree",
    "ExclusionRules",
    "REJECT_SUFFIX",
    "SingleFileTree",
    "SourceTree",
    "WorkingTree",
    "find_reject_files",
]
