"""Write apply results into their output locations."""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Mapping, Tuple

from .model import AppliedStep, ApplyResult, PatchTarget, RejectArtifact, TargetKind
from .rebuilder import BASE_TAG
from .tools.telemetry import emit_event
from .tools.vcs import CommitIdentity, GitRepository
from .tree import REJECT_SUFFIX, DirectoryTree, SourceTree

LOGGER = logging.getLogger(__name__)

INITIAL_COMMIT_MESSAGE = "Initial source"
_ENTRY_PREFIX = re.compile(r"^\d+-")


@dataclass(frozen=True, slots=True)
class WriteReport:
    """What one target's materialization left on disk."""

    target: str
    output: Path
    files_written: int
    rejects: Tuple[Path, ...] = field(default_factory=tuple)


def render_rejects(rejects: Tuple[RejectArtifact, ...] | list[RejectArtifact]) -> str:
    """Combine the rejects of one file, in apply order, into a single text."""
    return "".join(reject.render() for reject in rejects)


def _source_mode(base: SourceTree, path: str) -> int | None:
    if isinstance(base, DirectoryTree):
        candidate = base.root.joinpath(*PurePosixPath(path).parts)
        if candidate.is_file():
            return candidate.stat().st_mode & 0o777
    return None


def _write_file(destination: Path, content: bytes, mode: int | None = None) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(content)
    if mode is not None:
        os.chmod(destination, mode)


def _replace_directory(staging: Path, output: Path) -> None:
    """Swap ``staging`` into place, putting ``output`` back if the swap fails."""
    retired = output.with_name(f".{output.name}.{os.getpid()}.old")
    if retired.exists():
        shutil.rmtree(retired)
    if output.exists():
        os.replace(output, retired)
    try:
        os.replace(staging, output)
    except BaseException:
        if retired.exists() and not output.exists():
            os.replace(retired, output)
        raise
    shutil.rmtree(retired, ignore_errors=True)


def _staging_for(output: Path) -> Path:
    staging = output.with_name(f".{output.name}.{os.getpid()}.staging")
    if staging.exists():
        shutil.rmtree(staging)
    staging.parent.mkdir(parents=True, exist_ok=True)
    staging.mkdir()
    return staging


class OutputMaterializer:
    """Replace a target's output with the content of an apply result."""

    def materialize(self, target: PatchTarget, result: ApplyResult) -> WriteReport:
        if target.kind is TargetKind.FILE:
            report = self._write_file_target(target, result)
        elif target.kind is TargetKind.DIRECTORY:
            report = self._write_directory_target(target, result)
        else:
            report = self._write_repo_target(target, result)
        emit_event(
            "target_materialized",
            target=target.name,
            output=report.output,
            files=report.files_written,
            rejects=list(report.rejects),
        )
        return report

    # ---- single file

    def _write_file_target(self, target: PatchTarget, result: ApplyResult) -> WriteReport:
        output = target.output
        reject_path = output.with_name(output.name + REJECT_SUFFIX)
        content = result.tree.read(target.logical_path)
        written = 0
        if content is None:
            output.unlink(missing_ok=True)
        else:
            output.parent.mkdir(parents=True, exist_ok=True)
            staging = output.with_name(f".{output.name}.{os.getpid()}.tmp")
            _write_file(staging, content)
            os.replace(staging, output)
            written = 1

        rejects: list[Path] = []
        if result.rejects:
            reject_path.write_text(render_rejects(result.rejects), encoding="utf-8", errors="surrogateescape")
            rejects.append(reject_path)
        else:
            reject_path.unlink(missing_ok=True)
        return WriteReport(target=target.name, output=output, files_written=written, rejects=tuple(rejects))

    # ---- directories

    def _write_directory_target(self, target: PatchTarget, result: ApplyResult) -> WriteReport:
        output = target.output
        staging = _staging_for(output)
        carried_git = False
        try:
            files = result.tree.files()
            for path in files:
                content = result.tree.read(path)
                assert content is not None
                _write_file(staging.joinpath(*PurePosixPath(path).parts), content, _source_mode(result.base, path))
            rejects = _write_rejects(staging, output, result)
            if (output / ".git").exists():
                os.replace(output / ".git", staging / ".git")
                carried_git = True
            _replace_directory(staging, output)
        except BaseException:
            if carried_git and (staging / ".git").exists() and output.is_dir():
                os.replace(staging / ".git", output / ".git")
            shutil.rmtree(staging, ignore_errors=True)
            raise
        return WriteReport(target=target.name, output=output, files_written=len(files), rejects=rejects)

    # ---- git repositories

    def _write_repo_target(self, target: PatchTarget, result: ApplyResult) -> WriteReport:
        output = target.output
        staging = _staging_for(output)
        try:
            for path in result.base.files():
                content = result.base.read(path)
                assert content is not None
                _write_file(staging.joinpath(*PurePosixPath(path).parts), content, _source_mode(result.base, path))
            repo = GitRepository.initialise(staging)
            repo.commit_all(INITIAL_COMMIT_MESSAGE, allow_empty=True, include_ignored=True)
            repo.tag(BASE_TAG)
            for step in result.steps:
                _stage_changes(staging, step.changes, result.base)
                message, identity = _commit_details(step)
                repo.commit_all(message, identity=identity, allow_empty=True, include_ignored=True)
            repo.write_info_exclude([f"*{REJECT_SUFFIX}"])
            rejects = _write_rejects(staging, output, result)
            _replace_directory(staging, output)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        LOGGER.info("Materialized %s with %d commit(s) on top of %s", output, len(result.steps), BASE_TAG)
        return WriteReport(
            target=target.name,
            output=output,
            files_written=len(result.tree.files()),
            rejects=rejects,
        )


def _write_rejects(staging: Path, output: Path, result: ApplyResult) -> Tuple[Path, ...]:
    written: list[Path] = []
    for target_file, rejects in sorted(result.rejects_by_file().items()):
        relative = PurePosixPath(target_file + REJECT_SUFFIX)
        destination = staging.joinpath(*relative.parts)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(render_rejects(rejects), encoding="utf-8", errors="surrogateescape")
        written.append(output.joinpath(*relative.parts))
    return tuple(written)


def _stage_changes(root: Path, changes: Mapping[str, bytes | None], base: SourceTree) -> None:
    for path, content in changes.items():
        destination = root.joinpath(*PurePosixPath(path).parts)
        if content is None:
            destination.unlink(missing_ok=True)
        else:
            _write_file(destination, content, _source_mode(base, path))


def _commit_details(step: AppliedStep) -> tuple[str, CommitIdentity]:
    metadata = step.entry.metadata
    if metadata is None:
        stem = PurePosixPath(step.entry.name).name.removesuffix(".patch")
        subject = _ENTRY_PREFIX.sub("", stem).replace("-", " ") or stem
        return subject, CommitIdentity()
    name, email = metadata.author_identity()
    identity = CommitIdentity(name=name, email=email, date=metadata.date) if metadata.date else CommitIdentity(name=name, email=email)
    return metadata.message, identity


__all__ = ["INITIAL_COMMIT_MESSAGE", "OutputMaterializer", "WriteReport", "render_rejects"]
