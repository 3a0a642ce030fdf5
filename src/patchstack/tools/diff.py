"""Unified diff parsing, rendering, and generation.

Lines are carried with their exact terminators so that a file can be diffed,
rendered, parsed back, and applied without losing a trailing newline, a
carriage return, or bytes that are not valid UTF-8.
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Iterable, Sequence, Tuple

from ..errors import PatchFormatError

NO_NEWLINE_MARKER = "\\ No newline at end of file"
DEV_NULL = "/dev/null"
DEFAULT_CONTEXT = 3

_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<section>.*)$"
)
_EXTENDED_HEADER_PREFIXES = (
    "old mode ",
    "new mode ",
    "index ",
    "similarity index ",
    "dissimilarity index ",
)
_UNSUPPORTED_PREFIXES = ("rename from ", "rename to ", "copy from ", "copy to ")
_BINARY_PREFIXES = ("GIT binary patch", "Binary files ")

HunkLine = Tuple[str, str]


@dataclass(frozen=True, slots=True)
class Hunk:
    """A contiguous block of changes within one file."""

    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: Tuple[HunkLine, ...]
    section: str = ""

    def old_lines(self) -> list[str]:
        return [text for tag, text in self.lines if tag in {" ", "-"}]

    def new_lines(self) -> list[str]:
        return [text for tag, text in self.lines if tag in {" ", "+"}]

    @property
    def has_changes(self) -> bool:
        return any(tag != " " for tag, _ in self.lines)

    def header(self) -> str:
        old_range = _format_range(self.old_start, self.old_count)
        new_range = _format_range(self.new_start, self.new_count)
        suffix = f" {self.section}" if self.section else ""
        return f"@@ -{old_range} +{new_range} @@{suffix}"

    def render(self) -> str:
        rendered = [self.header()]
        for tag, text in self.lines:
            if text.endswith("\n"):
                rendered.append(tag + text[:-1])
            else:
                rendered.append(tag + text)
                rendered.append(NO_NEWLINE_MARKER)
        return "\n".join(rendered) + "\n"


@dataclass(frozen=True, slots=True)
class FileDiff:
    """All hunks touching a single file, with git-style add/delete markers."""

    old_path: str | None
    new_path: str | None
    hunks: Tuple[Hunk, ...] = ()

    @property
    def path(self) -> str:
        candidate = self.new_path or self.old_path
        assert candidate is not None
        return candidate

    @property
    def change_type(self) -> str:
        if self.old_path is None:
            return "add"
        if self.new_path is None:
            return "delete"
        return "modify"

    @property
    def has_changes(self) -> bool:
        """Return ``True`` when applying this section would alter the tree.

        A modify section whose hunks carry no ``+``/``-`` lines is semantically
        empty even though a diff tool produced text for it.
        """

        if self.change_type != "modify":
            return True
        return any(hunk.has_changes for hunk in self.hunks)

    def render(self) -> str:
        left = self.old_path or self.new_path
        right = self.new_path or self.old_path
        lines = [f"diff --git a/{left} b/{right}"]
        if self.change_type == "add":
            lines.append("new file mode 100644")
        elif self.change_type == "delete":
            lines.append("deleted file mode 100644")
        if self.hunks or self.change_type == "modify":
            lines.append(f"--- a/{self.old_path}" if self.old_path else f"--- {DEV_NULL}")
            lines.append(f"+++ b/{self.new_path}" if self.new_path else f"+++ {DEV_NULL}")
        text = "\n".join(lines) + "\n"
        return text + "".join(hunk.render() for hunk in self.hunks)


def render_file_diffs(diffs: Iterable[FileDiff]) -> str:
    """Concatenate rendered file sections."""
    return "".join(diff.render() for diff in diffs)


def split_lines(data: bytes | None) -> list[str]:
    """Split raw file content into lines that keep their ``\\n`` terminators."""
    if not data:
        return []
    text = data.decode("utf-8", errors="surrogateescape")
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def join_lines(lines: Sequence[str]) -> bytes:
    """Inverse of :func:`split_lines`."""
    return "".join(lines).encode("utf-8", errors="surrogateescape")


def is_binary(data: bytes | None) -> bool:
    return bool(data) and b"\0" in data  # type: ignore[operator]


def generate_file_diff(
    path: str,
    old: bytes | None,
    new: bytes | None,
    *,
    context: int = DEFAULT_CONTEXT,
) -> FileDiff:
    """Diff two versions of ``path``; ``None`` marks a missing side.

    Byte-identical inputs produce a header-only modify section, which callers
    may keep or drop depending on their filtering policy.
    """

    if old is None and new is None:
        raise PatchFormatError(f"Cannot diff {path}: file is absent on both sides.")
    for side in (old, new):
        if is_binary(side):
            raise PatchFormatError(f"Binary content is not supported: {path}", details={"path": path})

    old_lines = split_lines(old)
    new_lines = split_lines(new)
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    hunks = tuple(_hunk_from_group(group, old_lines, new_lines) for group in matcher.get_grouped_opcodes(context))
    return FileDiff(
        old_path=path if old is not None else None,
        new_path=path if new is not None else None,
        hunks=hunks,
    )


def _hunk_from_group(
    group: Sequence[tuple[str, int, int, int, int]],
    old_lines: Sequence[str],
    new_lines: Sequence[str],
) -> Hunk:
    body: list[HunkLine] = []
    for tag, i1, i2, j1, j2 in group:
        if tag == "equal":
            body.extend((" ", line) for line in old_lines[i1:i2])
            continue
        if tag in {"replace", "delete"}:
            body.extend(("-", line) for line in old_lines[i1:i2])
        if tag in {"replace", "insert"}:
            body.extend(("+", line) for line in new_lines[j1:j2])
    first, last = group[0], group[-1]
    old_count = last[2] - first[1]
    new_count = last[4] - first[3]
    return Hunk(
        old_start=first[1] + 1 if old_count else first[1],
        old_count=old_count,
        new_start=first[3] + 1 if new_count else first[3],
        new_count=new_count,
        lines=tuple(body),
    )


def _format_range(start: int, count: int) -> str:
    if count == 1:
        return str(start)
    return f"{start},{count}"


def _split_patch_lines(text: str) -> list[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _normalise_diff_path(entry: str) -> str | None:
    """Translate diff header operands into repository-relative paths."""
    entry = entry.split("\t", 1)[0].strip()
    if entry == DEV_NULL:
        return None
    if entry.startswith("a/") or entry.startswith("b/"):
        entry = entry[2:]
    return entry or None


def _paths_from_git_header(line: str) -> tuple[str | None, str | None]:
    rest = line[len("diff --git ") :]
    if not rest.startswith("a/") or " b/" not in rest:
        return None, None
    # Prefer the split that yields identical halves so paths with spaces survive.
    candidates = [index for index in range(len(rest)) if rest.startswith(" b/", index)]
    for index in candidates:
        left, right = rest[2:index], rest[index + 3 :]
        if left == right:
            return left, right
    index = candidates[0]
    return rest[2:index], rest[index + 3 :]


def _validate_path(path: str) -> None:
    """Enforce path safety rules for diff entries."""
    candidate = PurePosixPath(path)
    if candidate.is_absolute():
        raise PatchFormatError(f"Absolute paths are not permitted in patches: {path}")
    if any(part == ".." for part in candidate.parts):
        raise PatchFormatError(f"Path escaping detected in patch: {path}")
    if candidate.parts and candidate.parts[0] == ".git":
        raise PatchFormatError("Patches may not target the .git directory.")


def parse_unified_diff(text: str) -> Tuple[FileDiff, ...]:
    """Parse every file section in ``text``.

    Lines outside file sections (commit preambles, signatures) are ignored.
    Hunk bodies are consumed by the counts in their headers, so removed lines
    that look like ``---`` headers are not misread.
    """

    lines = _split_patch_lines(text)
    diffs: list[FileDiff] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        if line.startswith("diff --git "):
            diff, index = _parse_git_section(lines, index)
            diffs.append(diff)
            continue
        if line.startswith("--- ") and index + 1 < len(lines) and lines[index + 1].startswith("+++ "):
            diff, index = _parse_plain_section(lines, index)
            diffs.append(diff)
            continue
        if line.startswith(_BINARY_PREFIXES):
            raise PatchFormatError("Binary patches are not supported.")
        index += 1
    for diff in diffs:
        for path in {diff.old_path, diff.new_path}:
            if path is not None:
                _validate_path(path)
    return tuple(diffs)


def _parse_git_section(lines: list[str], index: int) -> tuple[FileDiff, int]:
    header_old, header_new = _paths_from_git_header(lines[index])
    change_type = "modify"
    old_path: str | None = header_old
    new_path: str | None = header_new
    index += 1
    while index < len(lines):
        line = lines[index]
        if line.startswith(("diff --git ", "@@ ")):
            break
        if line.startswith("new file mode"):
            change_type = "add"
        elif line.startswith("deleted file mode"):
            change_type = "delete"
        elif line.startswith("--- "):
            old_path = _normalise_diff_path(line[4:])
        elif line.startswith("+++ "):
            new_path = _normalise_diff_path(line[4:])
        elif line.startswith(_BINARY_PREFIXES):
            raise PatchFormatError(f"Binary patches are not supported: {header_new or header_old}")
        elif line.startswith(_UNSUPPORTED_PREFIXES):
            raise PatchFormatError(f"Renames and copies are not supported: {line}")
        elif not line.startswith(_EXTENDED_HEADER_PREFIXES):
            break
        index += 1

    if change_type == "add":
        old_path = None
        new_path = new_path or header_new
    elif change_type == "delete":
        old_path = old_path or header_old
        new_path = None
    if old_path is None and new_path is None:
        raise PatchFormatError(f"Unable to determine file path for section at line {index}.")

    hunks, index = _parse_hunks(lines, index, new_path or old_path)
    return FileDiff(old_path=old_path, new_path=new_path, hunks=hunks), index


def _parse_plain_section(lines: list[str], index: int) -> tuple[FileDiff, int]:
    old_path = _normalise_diff_path(lines[index][4:])
    new_path = _normalise_diff_path(lines[index + 1][4:])
    if old_path is None and new_path is None:
        raise PatchFormatError("Diff section compares /dev/null with /dev/null.")
    hunks, index = _parse_hunks(lines, index + 2, new_path or old_path)
    return FileDiff(old_path=old_path, new_path=new_path, hunks=hunks), index


def _parse_hunks(lines: list[str], index: int, path: str | None) -> tuple[Tuple[Hunk, ...], int]:
    hunks: list[Hunk] = []
    while index < len(lines) and lines[index].startswith("@@ "):
        hunk, index = _parse_hunk(lines, index, path)
        hunks.append(hunk)
    return tuple(hunks), index


def _parse_hunk(lines: list[str], index: int, path: str | None) -> tuple[Hunk, int]:
    header = lines[index]
    match = _HUNK_HEADER.match(header)
    if not match:
        raise PatchFormatError(f"Malformed hunk header: {header}")
    old_count = int(match.group("old_count")) if match.group("old_count") is not None else 1
    new_count = int(match.group("new_count")) if match.group("new_count") is not None else 1
    body: list[list[str]] = []
    removed = added = 0
    index += 1
    while removed < old_count or added < new_count:
        if index >= len(lines):
            raise _count_mismatch(path, header, old_count, new_count, removed, added)
        line = lines[index]
        if line.startswith("\\"):
            if body:
                body[-1][1] = body[-1][1].removesuffix("\n")
            index += 1
            continue
        tag, text = (line[:1], line[1:]) if line else (" ", "")
        if tag == " ":
            removed += 1
            added += 1
        elif tag == "-":
            removed += 1
        elif tag == "+":
            added += 1
        else:
            raise _count_mismatch(path, header, old_count, new_count, removed, added)
        if removed > old_count or added > new_count:
            raise _count_mismatch(path, header, old_count, new_count, removed, added)
        body.append([tag, text + "\n"])
        index += 1
    if index < len(lines) and lines[index].startswith("\\") and body:
        body[-1][1] = body[-1][1].removesuffix("\n")
        index += 1
    hunk = Hunk(
        old_start=int(match.group("old_start")),
        old_count=old_count,
        new_start=int(match.group("new_start")),
        new_count=new_count,
        lines=tuple((tag, text) for tag, text in body),
        section=match.group("section").strip(),
    )
    return hunk, index


def _count_mismatch(
    path: str | None,
    header: str,
    old_count: int,
    new_count: int,
    removed: int,
    added: int,
) -> PatchFormatError:
    location = path or "<unknown>"
    return PatchFormatError(
        "Patch hunk line count mismatch for "
        f"{location} at '{header}': expected -{old_count}/+{new_count} "
        f"but saw -{removed}/+{added}."
    )


__all__ = [
    "DEFAULT_CONTEXT",
    "FileDiff",
    "Hunk",
    "NO_NEWLINE_MARKER",
    "generate_file_diff",
    "is_binary",
    "join_lines",
    "parse_unified_diff",
    "render_file_diffs",
    "split_lines",
]
