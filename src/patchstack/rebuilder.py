"""Regenerate patch stacks from edited outputs."""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .errors import PatchFormatError, RebuildError
from .stack import PATCH_SUFFIX, PatchEntry, PatchStack
from .tools.diff import generate_file_diff, is_binary
from .tools.telemetry import emit_event
from .tools.vcs import GitError, GitRepository
from .tree import DirectoryTree, ExclusionRules, SingleFileTree, SourceTree, find_reject_files

LOGGER = logging.getLogger(__name__)

BASE_TAG = "base"


@dataclass(frozen=True, slots=True)
class RebuildOptions:
    filter_patches: bool = True


def _tree_exists(tree: SourceTree) -> bool:
    if isinstance(tree, DirectoryTree):
        return tree.root.is_dir()
    if isinstance(tree, SingleFileTree):
        return tree.location.is_file()
    return True


class PatchRebuilder:
    """Turn the difference between upstream and an edited output into a stack."""

    def rebuild(
        self,
        base: SourceTree,
        working: SourceTree,
        exclusions: ExclusionRules = ExclusionRules(),
        *,
        options: RebuildOptions = RebuildOptions(),
        target: str | None = None,
        previous: PatchStack | None = None,
    ) -> PatchStack:
        """Produce one entry per differing file, ordered by path.

        Excluded paths never produce entries. Files whose content is
        identical only yield a header-only entry when filtering is off and
        ``previous`` already carried a patch for them.
        """

        if not _tree_exists(working):
            raise RebuildError(f"Working tree {working.describe()} does not exist", target=target)
        _refuse_pending_rejects(working, target)

        previously_patched = {path for entry in (previous or PatchStack()) for path in entry.scope}
        paths = sorted(set(base.files()) | set(working.files()))
        entries: list[PatchEntry] = []
        for path in exclusions.filter(paths):
            old = base.read(path)
            new = working.read(path)
            if old == new and path not in previously_patched:
                continue
            if is_binary(old) or is_binary(new):
                raise RebuildError(
                    f"Binary file {path} cannot be represented as a patch",
                    target=target,
                    details={"path": path},
                )
            try:
                diff = generate_file_diff(path, old, new)
            except PatchFormatError as error:
                raise RebuildError(str(error), target=target, details={"path": path}) from error
            entries.append(PatchEntry.compose(path + PATCH_SUFFIX, (diff,)))

        return _finish(PatchStack(tuple(entries)), options, target)

    def rebuild_commits(
        self,
        repo_dir: Path,
        exclusions: ExclusionRules = ExclusionRules(),
        *,
        options: RebuildOptions = RebuildOptions(),
        target: str | None = None,
    ) -> PatchStack:
        """Produce one entry per commit made on top of the ``base`` tag."""

        repo_dir = Path(repo_dir)
        if not repo_dir.is_dir():
            raise RebuildError(f"Repository {repo_dir} does not exist", target=target)
        try:
            repo = GitRepository(repo_dir)
        except GitError as error:
            raise RebuildError(str(error), target=target) from error
        _refuse_pending_rejects(DirectoryTree(repo_dir), target)
        if not repo.has_tag(BASE_TAG):
            raise RebuildError(
                f"Repository {repo_dir} has no '{BASE_TAG}' tag marking the upstream snapshot",
                target=target,
            )
        if repo.has_changes():
            LOGGER.warning(
                "Uncommitted changes in %s are not part of the rebuilt stack; commit them first",
                repo_dir,
            )

        pathspecs = [f":(exclude){pattern}" for pattern in exclusions.patterns]
        with tempfile.TemporaryDirectory(prefix="patchstack-rebuild-") as scratch:
            try:
                written = repo.format_patch(
                    BASE_TAG,
                    Path(scratch),
                    pathspecs=pathspecs,
                    always=not options.filter_patches,
                )
            except GitError as error:
                raise RebuildError(str(error), target=target) from error
            entries = []
            for path in written:
                text = path.read_bytes().decode("utf-8", errors="surrogateescape")
                try:
                    entries.append(PatchEntry.from_text(path.name, text))
                except PatchFormatError as error:
                    raise RebuildError(str(error), target=target, details={"entry": path.name}) from error

        return _finish(PatchStack(tuple(entries)), options, target)


def _refuse_pending_rejects(tree: SourceTree, target: str | None) -> None:
    pending = find_reject_files(tree)
    if pending:
        raise RebuildError(
            f"Resolve and delete reject files before rebuilding: {', '.join(pending)}",
            target=target,
            details={"rejects": pending},
        )


def _finish(stack: PatchStack, options: RebuildOptions, target: str | None) -> PatchStack:
    dropped: tuple[str, ...] = ()
    if options.filter_patches:
        stack, dropped = stack.without_empty()
        for name in dropped:
            LOGGER.info("Dropped empty patch %s", name)
    emit_event(
        "stack_rebuilt",
        target=target,
        entries=list(stack.names),
        dropped=list(dropped),
        filter_patches=options.filter_patches,
    )
    return stack


__all__ = ["BASE_TAG", "PatchRebuilder", "RebuildOptions"]
