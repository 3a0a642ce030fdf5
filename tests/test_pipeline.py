from __future__ import annotations

import json
import subprocess
import threading
from pathlib import Path

import pytest
import yaml

from patchstack.errors import ConfigError, PatchApplyError
from patchstack.model import UpstreamRef
from patchstack.pipeline import PipelineOrchestrator
from patchstack.stack import PatchEntry, PatchStack, StackLayout, load_stack, write_stack
from patchstack.tools.diff import generate_file_diff
from patchstack.tree import DirectoryTree
from patchstack.upstream import UpstreamSynchronizer


def run_git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


class CountingResolver:
    """Wrap the real synchronizer and record every resolution."""

    def __init__(self, cache_root: Path) -> None:
        self.inner = UpstreamSynchronizer(cache_root)
        self.calls: list[UpstreamRef] = []
        self._lock = threading.Lock()

    def resolve(self, ref: UpstreamRef) -> DirectoryTree:
        with self._lock:
            self.calls.append(ref)
        return self.inner.resolve(ref)


def _write_broken_server_patch(project_root: Path) -> None:
    diff = generate_file_diff("build.gradle.kts", b"plugins {\n    kotlin\n}\n", b"plugins {\n    groovy\n}\n")
    stack = PatchStack((PatchEntry.compose("build.gradle.kts.patch", (diff,)),))
    write_stack(stack, project_root / "fork-server" / "build.gradle.kts.patch", StackLayout.SINGLE)


def test_clean_apply_materializes_every_target(project) -> None:
    config = project.load()
    orchestrator = PipelineOrchestrator(config)

    report = orchestrator.apply_all()

    assert report.is_clean
    assert [item.target for item in report.targets] == ["serverBuild", "api", "impl"]
    root = project.root
    assert (root / "fork-server" / "build.gradle.kts").read_text(encoding="utf-8").startswith("plugins {")
    assert DirectoryTree(root / "api").files() == ["README.md", "src/Bar.java", "src/Foo.java"]
    assert run_git(root / "impl", "log", "--format=%s") == "Initial source"
    assert run_git(root / "impl", "rev-parse", "base") == run_git(root / "impl", "rev-parse", "HEAD")

    staged = config.build_data_dir
    assert (staged / "api.at").read_text(encoding="utf-8") == "public Foo\n"
    assert not (staged / "serverBuild.at").exists()
    assert not (staged / "impl.at").exists()

    payload = json.loads(report.log_path.read_text(encoding="utf-8"))
    assert [item["status"] for item in payload["targets"]] == ["clean", "clean", "clean"]


def test_edit_rebuild_and_reapply_round_trip(project) -> None:
    orchestrator = PipelineOrchestrator(project.load())
    orchestrator.apply_all()
    api = project.root / "api"
    (api / "src" / "Foo.java").write_text("class Foo {\n    void bar() {}\n}\n", encoding="utf-8")
    (api / "README.md").write_text("# Fork readme\n", encoding="utf-8")
    server = project.root / "fork-server" / "build.gradle.kts"
    server.write_text(server.read_text(encoding="utf-8").replace("java", "java\n    `maven-publish`"), encoding="utf-8")

    rebuilt = orchestrator.rebuild_all(["api", "serverBuild"])

    assert [item.status for item in rebuilt.targets] == ["rebuilt", "rebuilt"]
    stack = load_stack(project.root / "fork-api" / "api-patches", StackLayout.FILES)
    assert stack.names == ("src/Foo.java.patch",)
    assert (project.root / "fork-server" / "build.gradle.kts.patch").is_file()

    report = orchestrator.apply_all()

    assert report.is_clean
    assert (api / "src" / "Foo.java").read_text(encoding="utf-8") == "class Foo {\n    void bar() {}\n}\n"
    assert (api / "README.md").read_text(encoding="utf-8") == "# API\n\nUpstream readme.\n"
    assert "`maven-publish`" in server.read_text(encoding="utf-8")


def test_rebuild_reports_patches_that_disappeared(project) -> None:
    orchestrator = PipelineOrchestrator(project.load())
    orchestrator.apply_all()
    foo = project.root / "api" / "src" / "Foo.java"
    foo.write_text("class Foo { }\n", encoding="utf-8")
    orchestrator.rebuild_all(["api"])
    foo.write_text("class Foo {}\n", encoding="utf-8")

    report = orchestrator.rebuild_all(["api"])

    assert report.targets[0].removed == ["src/Foo.java.patch"]
    assert not any((project.root / "fork-api" / "api-patches").iterdir())


def test_repo_target_commits_become_numbered_patches(project) -> None:
    orchestrator = PipelineOrchestrator(project.load())
    orchestrator.apply_all(["impl"])
    impl = project.root / "impl"
    main = impl / "src" / "Main.java"
    main.write_text(main.read_text(encoding="utf-8").replace("{\n    }", "{\n        tick();\n    }"), encoding="utf-8")
    run_git(impl, "commit", "-q", "-am", "Call tick from main")

    report = orchestrator.rebuild_all(["impl"])

    assert report.targets[0].entries == 1
    patches = sorted(path.name for path in (project.root / "fork-impl" / "patches").iterdir())
    assert patches == ["0001-Call-tick-from-main.patch"]

    orchestrator.apply_all(["impl"])
    assert run_git(impl, "log", "-1", "--format=%s") == "Call tick from main"
    assert "tick();" in main.read_text(encoding="utf-8")


def test_strict_failure_stops_remaining_targets(project) -> None:
    _write_broken_server_patch(project.root)
    orchestrator = PipelineOrchestrator(project.load())

    with pytest.raises(PatchApplyError) as excinfo:
        orchestrator.apply_all()

    assert excinfo.value.target == "serverBuild"
    report = orchestrator.last_report
    assert [item.status for item in report.targets] == ["failed", "skipped", "skipped"]
    assert report.log_path is not None and report.log_path.is_file()
    assert not (project.root / "api").exists()


def test_lenient_apply_leaves_rejects_and_rebuild_isolates_the_target(project) -> None:
    _write_broken_server_patch(project.root)
    patch_file = project.root / "fork-server" / "build.gradle.kts.patch"
    original_patch = patch_file.read_bytes()
    orchestrator = PipelineOrchestrator(project.load(emit_rejects=True))

    report = orchestrator.apply_all()

    assert not report.is_clean
    assert [item.status for item in report.targets] == ["partial", "clean", "clean"]
    reject = project.root / "fork-server" / "build.gradle.kts.rej"
    assert report.rejects == [reject.as_posix()]
    assert "groovy" in reject.read_text(encoding="utf-8")
    assert "reject:" in report.format_summary()

    rebuilt = orchestrator.rebuild_all()

    assert [item.status for item in rebuilt.targets] == ["failed", "rebuilt", "rebuilt"]
    assert "reject" in rebuilt.targets[0].error
    assert patch_file.read_bytes() == original_patch


def test_rebuild_failure_does_not_block_sibling_targets(project) -> None:
    data = yaml.safe_load(project.config_path.read_text(encoding="utf-8"))
    data["upstreams"]["canvas"]["targets"].append(
        {
            "name": "ghost",
            "kind": "directory",
            "upstream_path": "ghost",
            "output": "ghost",
            "patches": "fork-ghost/patches",
        }
    )
    project.config_path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    orchestrator = PipelineOrchestrator(project.load())
    orchestrator.apply_all(["api"])
    (project.root / "api" / "src" / "Foo.java").write_text("class Foo { int x; }\n", encoding="utf-8")

    report = orchestrator.rebuild_all(["ghost", "api"])

    assert [item.status for item in report.targets] == ["failed", "rebuilt"]
    assert "ghost not found" in report.targets[0].error
    assert report.log_path is not None and report.log_path.is_file()
    stack = load_stack(project.root / "fork-api" / "api-patches", StackLayout.FILES)
    assert stack.names == ("src/Foo.java.patch",)


def test_cancelled_run_starts_no_targets(project) -> None:
    cancel = threading.Event()
    cancel.set()
    orchestrator = PipelineOrchestrator(project.load())

    report = orchestrator.apply_all(cancel=cancel)

    assert report.cancelled
    assert {item.status for item in report.targets} == {"cancelled"}
    assert not (project.root / "api").exists()
    assert "cancelled" in report.format_summary()


def test_parallel_workers_keep_report_order_and_resolve_upstream_once(project) -> None:
    config = project.load(workers=2)
    resolver = CountingResolver(config.cache_dir)
    orchestrator = PipelineOrchestrator(config, synchronizer=resolver)

    report = orchestrator.apply_all()

    assert [item.target for item in report.targets] == ["serverBuild", "api", "impl"]
    assert report.is_clean
    assert len(resolver.calls) == 1


def test_selecting_an_unknown_target_is_a_config_error(project) -> None:
    with pytest.raises(ConfigError, match="Unknown target"):
        PipelineOrchestrator(project.load()).apply_all(["nope"])


def test_describe_targets_lists_pending_rejects(project) -> None:
    _write_broken_server_patch(project.root)
    orchestrator = PipelineOrchestrator(project.load(emit_rejects=True))
    orchestrator.apply_all()

    statuses = {status.target.name: status for status in orchestrator.describe_targets()}

    assert statuses["serverBuild"].entries == 1
    assert statuses["serverBuild"].pending_rejects == (
        (project.root / "fork-server" / "build.gradle.kts.rej").as_posix(),
    )
    assert statuses["api"].pending_rejects == ()
