"""Patch entries, ordered stacks, and their on-disk layouts."""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from email.header import decode_header, make_header
from email.parser import HeaderParser
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Tuple

from .errors import PatchFormatError
from .tools.diff import FileDiff, parse_unified_diff, render_file_diffs

LOGGER = logging.getLogger(__name__)

PATCH_SUFFIX = ".patch"
ZERO_COMMIT = "0" * 40
MBOX_FROM_LINE = f"From {ZERO_COMMIT} Mon Sep 17 00:00:00 2001"

_NUMBERED_NAME = re.compile(r"^(?P<number>\d+)-.+\.patch$")
_SUBJECT_PREFIX = re.compile(r"^\[PATCH[^\]]*\]\s*")
_FOLDED_LINE = re.compile(r"\r?\n[ \t]")


@dataclass(frozen=True, slots=True)
class CommitMetadata:
    """Authorship and message of a commit-scoped patch entry."""

    author: str
    date: str
    subject: str
    body: str = ""

    @property
    def message(self) -> str:
        if self.body:
            return f"{self.subject}\n\n{self.body}"
        return self.subject

    @classmethod
    def parse(cls, text: str) -> "CommitMetadata | None":
        """Read the mail header ``git format-patch`` writes ahead of the diff."""

        if not text.startswith("From "):
            return None
        header_block, _, remainder = text.partition("\n\n")
        _, _, header_lines = header_block.partition("\n")
        headers = HeaderParser().parsestr(header_lines + "\n\n")
        author = _header_value(headers.get("From"))
        date = _header_value(headers.get("Date"))
        subject = _SUBJECT_PREFIX.sub("", _header_value(headers.get("Subject")))
        if not author or not subject:
            return None
        return cls(author=author, date=date, subject=subject, body=_message_body(remainder))

    def render(self) -> str:
        lines = [
            MBOX_FROM_LINE,
            f"From: {self.author}",
            f"Date: {self.date}",
            f"Subject: [PATCH] {self.subject}",
            "",
        ]
        if self.body:
            lines.extend([self.body, ""])
        lines.extend(["---", ""])
        return "\n".join(lines)

    def author_identity(self) -> tuple[str, str]:
        """Split ``Name <email>`` into its parts."""

        match = re.match(r"^(?P<name>.*?)\s*<(?P<email>[^>]*)>$", self.author)
        if not match:
            return self.author, ""
        return match.group("name").strip().strip('"'), match.group("email").strip()


def _header_value(raw: object) -> str:
    if raw is None:
        return ""
    unfolded = _FOLDED_LINE.sub(" ", str(raw))
    return str(make_header(decode_header(unfolded))).strip()


def _message_body(remainder: str) -> str:
    body: list[str] = []
    for line in remainder.split("\n"):
        if line == "---" or line.startswith("diff --git "):
            break
        body.append(line)
    return "\n".join(body).strip()


@dataclass(frozen=True, slots=True)
class PatchEntry:
    """One unit of a patch stack."""

    name: str
    content: str
    diffs: Tuple[FileDiff, ...] = ()
    metadata: CommitMetadata | None = None

    @classmethod
    def from_text(cls, name: str, text: str) -> "PatchEntry":
        try:
            diffs = parse_unified_diff(text)
        except PatchFormatError as error:
            raise PatchFormatError(f"{name}: {error}", details={"entry": name, **error.details}) from error
        return cls(name=name, content=text, diffs=diffs, metadata=CommitMetadata.parse(text))

    @classmethod
    def compose(
        cls,
        name: str,
        diffs: Iterable[FileDiff],
        metadata: CommitMetadata | None = None,
    ) -> "PatchEntry":
        """Build an entry from diff sections, rendering its text form."""

        ordered = tuple(diffs)
        header = metadata.render() if metadata else ""
        return cls(name=name, content=header + render_file_diffs(ordered), diffs=ordered, metadata=metadata)

    @property
    def scope(self) -> Tuple[str, ...]:
        return tuple(diff.path for diff in self.diffs)

    @property
    def is_empty(self) -> bool:
        return not any(diff.has_changes for diff in self.diffs)


@dataclass(frozen=True, slots=True)
class PatchStack:
    """Ordered, immutable sequence of patch entries."""

    entries: Tuple[PatchEntry, ...] = field(default_factory=tuple)

    def __iter__(self) -> Iterator[PatchEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(entry.name for entry in self.entries)

    def without_empty(self) -> tuple["PatchStack", Tuple[str, ...]]:
        kept = tuple(entry for entry in self.entries if not entry.is_empty)
        dropped = tuple(entry.name for entry in self.entries if entry.is_empty)
        return PatchStack(kept), dropped


class StackLayout(str, Enum):
    """How a stack is persisted on disk."""

    COMMITS = "commits"
    FILES = "files"
    SINGLE = "single"


def _read_text(path: Path) -> str:
    return path.read_bytes().decode("utf-8", errors="surrogateescape")


def _write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(text.encode("utf-8", errors="surrogateescape"))


def _numbered_sort_key(name: str) -> tuple[int, str]:
    match = _NUMBERED_NAME.match(name)
    assert match is not None
    return int(match.group("number")), name


def load_stack(location: Path, layout: StackLayout) -> PatchStack:
    """Load the stack stored at ``location``; a missing location is an empty stack."""

    location = Path(location)
    if layout is StackLayout.SINGLE:
        if not location.is_file():
            return PatchStack()
        return PatchStack((PatchEntry.from_text(location.name, _read_text(location)),))

    if not location.is_dir():
        return PatchStack()

    if layout is StackLayout.COMMITS:
        names = []
        for candidate in location.iterdir():
            if not candidate.is_file():
                continue
            if _NUMBERED_NAME.match(candidate.name):
                names.append(candidate.name)
            elif candidate.name.endswith(PATCH_SUFFIX):
                LOGGER.warning("Ignoring unnumbered patch %s in %s", candidate.name, location)
        ordered = sorted(names, key=_numbered_sort_key)
    else:
        ordered = sorted(
            path.relative_to(location).as_posix()
            for path in location.rglob(f"*{PATCH_SUFFIX}")
            if path.is_file()
        )

    entries = tuple(PatchEntry.from_text(name, _read_text(location / name)) for name in ordered)
    LOGGER.debug("Loaded %d patch entries from %s", len(entries), location)
    return PatchStack(entries)


def write_stack(stack: PatchStack, location: Path, layout: StackLayout) -> None:
    """Replace whatever stack is stored at ``location`` with ``stack``.

    The new content is staged next to ``location`` and swapped in, so readers
    see either the old stack or the new one and stale entries never survive.
    """

    location = Path(location)
    if layout is StackLayout.SINGLE:
        if len(stack) > 1:
            raise PatchFormatError(f"A single-file stack holds at most one entry, got {len(stack)}.")
        if not stack.entries:
            location.unlink(missing_ok=True)
            return
        staging = location.with_name(f".{location.name}.{os.getpid()}.tmp")
        _write_text(staging, stack.entries[0].content)
        os.replace(staging, location)
        return

    location.parent.mkdir(parents=True, exist_ok=True)
    staging = location.with_name(f".{location.name}.{os.getpid()}.staging")
    retired = location.with_name(f".{location.name}.{os.getpid()}.old")
    for leftover in (staging, retired):
        if leftover.exists():
            shutil.rmtree(leftover)
    staging.mkdir()
    try:
        for entry in stack.entries:
            if layout is StackLayout.COMMITS and not _NUMBERED_NAME.match(entry.name):
                raise PatchFormatError(f"Commit patches must be numbered: {entry.name}")
            _write_text(staging / entry.name, entry.content)
        if location.exists():
            os.replace(location, retired)
        os.replace(staging, location)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        if retired.exists() and not location.exists():
            os.replace(retired, location)
        raise
    shutil.rmtree(retired, ignore_errors=True)
    LOGGER.debug("Wrote %d patch entries to %s", len(stack), location)


__all__ = [
    "CommitMetadata",
    "PATCH_SUFFIX",
    "PatchEntry",
    "PatchStack",
    "StackLayout",
    "load_stack",
    "write_stack",
]
