"""Apply ordered patch stacks onto source trees."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence, Tuple

from .errors import PatchApplyError
from .model import AppliedStep, ApplyResult, HunkFailure, RejectArtifact
from .stack import PatchEntry, PatchStack
from .tools.diff import FileDiff, Hunk, join_lines, split_lines
from .tools.telemetry import emit_event
from .tree import ExclusionRules, SourceTree, WorkingTree

LOGGER = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True, slots=True)
class ApplyOptions:
    """Knobs for a single stack application."""

    emit_rejects: bool = False


@dataclass(slots=True)
class _EntryOutcome:
    changes: dict[str, bytes | None]
    failures: list[HunkFailure]
    rejects: list[RejectArtifact]


class PatchApplier:
    """Apply every entry of a stack, in order, onto a copy-on-write tree.

    Hunks match on exact context only. When the context is not at the
    expected line the nearest exact occurrence is used; there is no fuzz.
    """

    def apply(
        self,
        base: SourceTree,
        stack: PatchStack,
        options: ApplyOptions = ApplyOptions(),
        *,
        target: str | None = None,
        exclusions: ExclusionRules = ExclusionRules(),
    ) -> ApplyResult:
        tree = WorkingTree(base)
        steps: list[AppliedStep] = []
        rejects: list[RejectArtifact] = []
        emit_event(
            "stack_apply_started",
            target=target,
            base=base.describe(),
            entries=len(stack),
            emit_rejects=options.emit_rejects,
        )

        for entry in stack:
            outcome = self._apply_entry(tree, entry, exclusions)
            if outcome.failures and not options.emit_rejects:
                emit_event(
                    "entry_failed",
                    target=target,
                    entry=entry.name,
                    failures=[failure.to_dict() for failure in outcome.failures],
                )
                for failure in outcome.failures:
                    if failure.hunk is not None:
                        LOGGER.debug("Failing hunk in %s:\n%s", failure.describe(), failure.hunk.render())
                raise PatchApplyError(
                    f"Patch {entry.name} does not apply to {target or base.describe()}",
                    target=target,
                    entry=entry.name,
                    failures=outcome.failures,
                    applied_steps=steps,
                    tree=tree,
                )

            tree.stage(outcome.changes)
            steps.append(AppliedStep(entry=entry, changes=outcome.changes, failures=tuple(outcome.failures)))
            rejects.extend(outcome.rejects)
            if outcome.failures:
                LOGGER.warning(
                    "Patch %s applied with %d rejected hunk(s) in %s",
                    entry.name,
                    len(outcome.failures),
                    target or base.describe(),
                )
                emit_event(
                    "entry_failed",
                    target=target,
                    entry=entry.name,
                    failures=[failure.to_dict() for failure in outcome.failures],
                    kept_changes=sorted(outcome.changes),
                )
            else:
                emit_event("entry_applied", target=target, entry=entry.name, paths=sorted(outcome.changes))

        result = ApplyResult(
            target=target,
            base=base,
            tree=tree,
            steps=tuple(steps),
            rejects=tuple(rejects),
        )
        emit_event(
            "stack_apply_finished",
            target=target,
            status=result.status,
            entries=len(steps),
            rejects=[reject.file_name for reject in result.rejects],
        )
        return result

    # ---- per entry

    def _apply_entry(self, tree: WorkingTree, entry: PatchEntry, exclusions: ExclusionRules) -> _EntryOutcome:
        outcome = _EntryOutcome(changes={}, failures=[], rejects=[])
        for diff in entry.diffs:
            touched = {path for path in (diff.old_path, diff.new_path) if path is not None}
            if any(exclusions.excludes(path) for path in touched):
                LOGGER.info("Skipping excluded path %s in %s", diff.path, entry.name)
                continue

            pending = outcome.changes.get(diff.path, _MISSING)
            current = tree.read(diff.path) if pending is _MISSING else pending
            updated, failed = _apply_file_diff(diff, current)  # type: ignore[arg-type]
            if updated is not _MISSING:
                outcome.changes[diff.path] = updated  # type: ignore[assignment]
            if not failed:
                continue

            for hunk, reason in failed:
                outcome.failures.append(HunkFailure(entry=entry.name, path=diff.path, reason=reason, hunk=hunk))
            outcome.rejects.append(
                RejectArtifact(
                    target_file=diff.path,
                    entry=entry.name,
                    hunks=tuple(hunk for hunk, _ in failed if hunk is not None),
                    reasons=tuple(dict.fromkeys(reason for _, reason in failed)),
                )
            )
        return outcome


def _apply_file_diff(diff: FileDiff, current: bytes | None) -> tuple[object, list[tuple[Hunk | None, str]]]:
    """Return the new content (or ``_MISSING`` for no change) and the failures."""

    if diff.change_type == "add":
        if current is not None:
            return _MISSING, _whole_file_failure(diff, "file already exists")
        return join_lines(_added_lines(diff.hunks)), []

    if current is None:
        return _MISSING, _whole_file_failure(diff, "file does not exist")

    if diff.change_type == "delete":
        expected = join_lines([line for hunk in diff.hunks for line in hunk.old_lines()])
        if expected != current:
            return _MISSING, _whole_file_failure(diff, "file content differs from the deleted content")
        return None, []

    if not diff.hunks:
        return _MISSING, []
    lines, failed = apply_hunks(split_lines(current), diff.hunks)
    if len(failed) == len(diff.hunks):
        return _MISSING, [(hunk, "context not found") for hunk in failed]
    return join_lines(lines), [(hunk, "context not found") for hunk in failed]


def _added_lines(hunks: Sequence[Hunk]) -> list[str]:
    return [line for hunk in hunks for line in hunk.new_lines()]


def _whole_file_failure(diff: FileDiff, reason: str) -> list[tuple[Hunk | None, str]]:
    if not diff.hunks:
        return [(None, reason)]
    return [(hunk, reason) for hunk in diff.hunks]


def apply_hunks(lines: Sequence[str], hunks: Sequence[Hunk]) -> tuple[list[str], Tuple[Hunk, ...]]:
    """Apply ``hunks`` to ``lines`` and return the result plus the hunks that failed.

    Each hunk is searched for starting at its header position shifted by the
    drift of the hunks already placed. Matches never overlap an earlier hunk.
    """

    output: list[str] = []
    failed: list[Hunk] = []
    cursor = 0
    shift = 0
    for hunk in hunks:
        old = hunk.old_lines()
        nominal = hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1
        position = _locate(lines, old, nominal + shift, cursor)
        if position is None:
            failed.append(hunk)
            continue
        output.extend(lines[cursor:position])
        output.extend(hunk.new_lines())
        cursor = position + len(old)
        shift = position - nominal
    output.extend(lines[cursor:])
    return output, tuple(failed)


def _locate(lines: Sequence[str], needle: Sequence[str], expected: int, lower: int) -> int | None:
    if not needle:
        return min(max(expected, lower), len(lines))
    width = len(needle)
    best: tuple[int, int] | None = None
    for start in range(lower, len(lines) - width + 1):
        if lines[start] != needle[0] or list(lines[start : start + width]) != list(needle):
            continue
        rank = (abs(start - expected), start)
        if best is None or rank < best:
            best = rank
    return best[1] if best else None


__all__ = ["ApplyOptions", "PatchApplier", "apply_hunks"]
