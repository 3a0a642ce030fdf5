"""Drive apply and rebuild across every configured target."""

from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .applier import ApplyOptions, PatchApplier
from .config import PipelineConfig
from .errors import ConfigError, PatchApplyError, PatchFormatError, RebuildError, ResolutionError
from .materialize import OutputMaterializer, WriteReport
from .model import ApplyResult, PatchTarget, TargetKind, UpstreamRef
from .rebuilder import PatchRebuilder, RebuildOptions
from .stack import PatchStack, load_stack, write_stack
from .tools.run_logs import save_run_log
from .tools.telemetry import emit_event
from .tools.vcs import GitError
from .tree import REJECT_SUFFIX, DirectoryTree, ExclusionRules, SingleFileTree, SourceTree, find_reject_files
from .upstream import UpstreamSynchronizer

LOGGER = logging.getLogger(__name__)

ACCESS_TRANSFORMER_SUFFIX = ".at"


# ---- capabilities


class UpstreamResolver(Protocol):
    def resolve(self, ref: UpstreamRef) -> DirectoryTree: ...


class StackApplier(Protocol):
    def apply(
        self,
        base: SourceTree,
        stack: PatchStack,
        options: ApplyOptions = ...,
        *,
        target: str | None = None,
        exclusions: ExclusionRules = ...,
    ) -> ApplyResult: ...


class StackRebuilder(Protocol):
    def rebuild(
        self,
        base: SourceTree,
        working: SourceTree,
        exclusions: ExclusionRules = ...,
        *,
        options: RebuildOptions = ...,
        target: str | None = None,
        previous: PatchStack | None = None,
    ) -> PatchStack: ...

    def rebuild_commits(
        self,
        repo_dir: Path,
        exclusions: ExclusionRules = ...,
        *,
        options: RebuildOptions = ...,
        target: str | None = None,
    ) -> PatchStack: ...


class ResultMaterializer(Protocol):
    def materialize(self, target: PatchTarget, result: ApplyResult) -> WriteReport: ...


# ---- reports


@dataclass(slots=True)
class TargetReport:
    """Outcome of one target within a run."""

    target: str
    kind: TargetKind
    status: str
    entries: int = 0
    rejects: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    output: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "kind": self.kind.value,
            "status": self.status,
            "entries": self.entries,
            "rejects": list(self.rejects),
            "removed": list(self.removed),
            "output": self.output,
            "error": self.error,
        }

    def format_line(self) -> str:
        line = f"- {self.target} [{self.kind.value}]: {self.status} ({self.entries} patch(es))"
        if self.error:
            line += f" :: {self.error}"
        return line


@dataclass(slots=True)
class _RunReport:
    command: str = ""
    targets: List[TargetReport] = field(default_factory=list)
    log_path: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"targets": [report.to_dict() for report in self.targets]}

    def format_summary(self) -> str:
        if not self.targets:
            return f"{self.command.capitalize()}: no targets selected."
        lines = [f"{self.command.capitalize()} summary:"]
        for report in self.targets:
            lines.append(report.format_line())
            lines.extend(f"    reject: {path}" for path in report.rejects)
            lines.extend(f"    removed patch: {name}" for name in report.removed)
        return "\n".join(lines)


@dataclass(slots=True)
class ApplyRunReport(_RunReport):
    command: str = "apply"
    cancelled: bool = False

    @property
    def is_clean(self) -> bool:
        return all(report.status == "clean" for report in self.targets)

    @property
    def rejects(self) -> List[str]:
        return [path for report in self.targets for path in report.rejects]

    def to_dict(self) -> Dict[str, Any]:
        payload = _RunReport.to_dict(self)
        payload["cancelled"] = self.cancelled
        return payload

    def format_summary(self) -> str:
        summary = _RunReport.format_summary(self)
        if self.cancelled:
            summary += "\nRun cancelled before every target started."
        return summary


@dataclass(slots=True)
class RebuildRunReport(_RunReport):
    command: str = "rebuild"

    @property
    def failed(self) -> List[TargetReport]:
        return [report for report in self.targets if report.status == "failed"]


@dataclass(frozen=True, slots=True)
class TargetStatus:
    """Snapshot of a target for the ``status`` command."""

    target: PatchTarget
    entries: int
    pending_rejects: tuple[str, ...]


# ---- orchestration


class PipelineOrchestrator:
    """Run the pipeline for the targets of one configuration."""

    def __init__(
        self,
        config: PipelineConfig,
        *,
        synchronizer: UpstreamResolver | None = None,
        applier: StackApplier | None = None,
        rebuilder: StackRebuilder | None = None,
        materializer: ResultMaterializer | None = None,
    ) -> None:
        self.config = config
        self.synchronizer = synchronizer or UpstreamSynchronizer(config.cache_dir, offline=config.options.offline)
        self.applier = applier or PatchApplier()
        self.rebuilder = rebuilder or PatchRebuilder()
        self.materializer = materializer or OutputMaterializer()
        self.last_report: ApplyRunReport | RebuildRunReport | None = None

    def select_targets(self, names: Sequence[str] | None = None) -> List[PatchTarget]:
        if not names:
            return list(self.config.targets)
        return [self.config.target(name) for name in dict.fromkeys(names)]

    def resolve_upstreams(self, targets: Sequence[PatchTarget]) -> Dict[str, DirectoryTree]:
        """Resolve each upstream the targets need exactly once."""

        trees: Dict[str, DirectoryTree] = {}
        for name in sorted({target.upstream for target in targets}):
            trees[name] = self.synchronizer.resolve(self.config.upstreams[name])
        return trees

    def base_for(self, target: PatchTarget, upstream: DirectoryTree) -> SourceTree:
        """Return the slice of the upstream snapshot a target patches."""

        if target.kind is TargetKind.FILE:
            location = upstream.root.joinpath(*target.upstream_path.split("/"))
            if not location.is_file():
                raise ResolutionError(
                    f"Upstream file {target.upstream_path} not found in {upstream.describe()}",
                    details={"target": target.name},
                )
            return SingleFileTree(logical_path=target.logical_path, location=location, revision=upstream.revision)
        tree = upstream.subtree(target.upstream_path)
        if not tree.root.is_dir():
            raise ResolutionError(
                f"Upstream directory {target.upstream_path} not found in {upstream.describe()}",
                details={"target": target.name},
            )
        return tree

    # ---- apply

    def apply_target(self, target: PatchTarget, upstream: DirectoryTree) -> TargetReport:
        stack = load_stack(target.patches, target.stack_layout)
        result = self.applier.apply(
            self.base_for(target, upstream),
            stack,
            ApplyOptions(emit_rejects=self.config.options.emit_rejects),
            target=target.name,
            exclusions=target.exclusions,
        )
        self._stage_access_transformer(target)
        written = self.materializer.materialize(target, result)
        return TargetReport(
            target=target.name,
            kind=target.kind,
            status=result.status.value,
            entries=len(stack),
            rejects=[path.as_posix() for path in written.rejects],
            output=written.output.as_posix(),
        )

    def apply_all(
        self,
        targets: Sequence[str] | None = None,
        cancel: threading.Event | None = None,
    ) -> ApplyRunReport:
        """Apply every selected target's stack and materialize the results.

        Cancellation is only observed between targets. In strict mode the first
        :class:`PatchApplyError` stops targets that have not started yet and is
        re-raised once the running ones finish.
        """

        selected = self.select_targets(targets)
        upstreams = self.resolve_upstreams(selected)
        cancel = cancel or threading.Event()
        halt = threading.Event()
        report = ApplyRunReport()
        self.last_report = report
        emit_event("run_started", command="apply", targets=[target.name for target in selected])

        def run(target: PatchTarget) -> TargetReport:
            if cancel.is_set():
                return TargetReport(target=target.name, kind=target.kind, status="cancelled")
            if halt.is_set():
                return TargetReport(target=target.name, kind=target.kind, status="skipped")
            try:
                return self.apply_target(target, upstreams[target.upstream])
            except PatchApplyError:
                halt.set()
                raise

        failure: PatchApplyError | None = None
        if self.config.options.workers > 1 and len(selected) > 1:
            with ThreadPoolExecutor(max_workers=self.config.options.workers) as executor:
                futures: List[Future[TargetReport]] = [executor.submit(run, target) for target in selected]
                for target, future in zip(selected, futures):
                    try:
                        report.targets.append(future.result())
                    except PatchApplyError as error:
                        failure = failure or error
                        report.targets.append(_failed(target, error))
        else:
            for target in selected:
                try:
                    report.targets.append(run(target))
                except PatchApplyError as error:
                    failure = error
                    report.targets.append(_failed(target, error))

        report.cancelled = any(item.status == "cancelled" for item in report.targets)
        report.log_path = save_run_log(self.config.logs_dir, "apply", report.to_dict())
        emit_event("run_finished", command="apply", clean=report.is_clean, cancelled=report.cancelled)
        if failure is not None:
            raise failure
        return report

    def _stage_access_transformer(self, target: PatchTarget) -> None:
        """Expose a target's access transformer override to the build, and only that target's."""

        staged = self.config.build_data_dir / f"{target.name}{ACCESS_TRANSFORMER_SUFFIX}"
        if target.access_transformer is None:
            staged.unlink(missing_ok=True)
            return
        if not target.access_transformer.is_file():
            raise ConfigError(
                f"Access transformer {target.access_transformer} for target {target.name} does not exist",
                details={"target": target.name},
            )
        staged.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(target.access_transformer, staged)
        LOGGER.debug("Staged access transformer for %s at %s", target.name, staged)

    # ---- rebuild

    def rebuild_target(self, target: PatchTarget, upstream: DirectoryTree | None) -> TargetReport:
        options = RebuildOptions(filter_patches=self.config.options.filter_patches)
        previous = load_stack(target.patches, target.stack_layout)
        if target.kind is TargetKind.REPO:
            stack = self.rebuilder.rebuild_commits(
                target.output,
                target.exclusions,
                options=options,
                target=target.name,
            )
        else:
            assert upstream is not None
            if target.kind is TargetKind.FILE:
                reject = target.output.with_name(target.output.name + REJECT_SUFFIX)
                if reject.exists():
                    raise RebuildError(
                        f"Resolve and delete reject file {reject} before rebuilding",
                        target=target.name,
                        details={"rejects": [reject.as_posix()]},
                    )
                working: SourceTree = SingleFileTree(logical_path=target.logical_path, location=target.output)
            else:
                working = DirectoryTree(target.output)
            stack = self.rebuilder.rebuild(
                self.base_for(target, upstream),
                working,
                target.exclusions,
                options=options,
                target=target.name,
                previous=previous,
            )
        write_stack(stack, target.patches, target.stack_layout)
        removed = sorted(set(previous.names) - set(stack.names))
        return TargetReport(
            target=target.name,
            kind=target.kind,
            status="rebuilt",
            entries=len(stack),
            removed=removed,
            output=target.patches.as_posix(),
        )

    def rebuild_all(self, targets: Sequence[str] | None = None) -> RebuildRunReport:
        """Regenerate and persist the stack of every selected target.

        A failing target is reported and its stored stack left untouched; the
        other targets still run.
        """

        selected = self.select_targets(targets)
        upstreams = self.resolve_upstreams([target for target in selected if target.kind is not TargetKind.REPO])
        report = RebuildRunReport()
        self.last_report = report
        emit_event("run_started", command="rebuild", targets=[target.name for target in selected])
        for target in selected:
            try:
                report.targets.append(self.rebuild_target(target, upstreams.get(target.upstream)))
            except (RebuildError, ResolutionError, PatchFormatError, GitError, OSError) as error:
                LOGGER.error("Rebuild of %s failed: %s", target.name, error)
                report.targets.append(
                    TargetReport(target=target.name, kind=target.kind, status="failed", error=str(error))
                )
        report.log_path = save_run_log(self.config.logs_dir, "rebuild", report.to_dict())
        emit_event("run_finished", command="rebuild", failed=[item.target for item in report.failed])
        return report

    # ---- status

    def describe_targets(self) -> List[TargetStatus]:
        statuses: List[TargetStatus] = []
        for target in self.config.targets:
            stack = load_stack(target.patches, target.stack_layout)
            if target.kind is TargetKind.FILE:
                reject = target.output.with_name(target.output.name + REJECT_SUFFIX)
                pending = (reject.as_posix(),) if reject.exists() else ()
            else:
                pending = tuple(
                    (target.output / path).as_posix() for path in find_reject_files(DirectoryTree(target.output))
                )
            statuses.append(TargetStatus(target=target, entries=len(stack), pending_rejects=pending))
        return statuses


def _failed(target: PatchTarget, error: PatchApplyError) -> TargetReport:
    return TargetReport(
        target=target.name,
        kind=target.kind,
        status="failed",
        entries=len(error.applied_steps),
        error=str(error),
    )


__all__ = [
    "ApplyRunReport",
    "PipelineOrchestrator",
    "RebuildRunReport",
    "ResultMaterializer",
    "StackApplier",
    "StackRebuilder",
    "TargetReport",
    "TargetStatus",
    "UpstreamResolver",
]
