from __future__ import annotations

import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def run_git(cwd: Path, *cmd: str) -> str:
    result = subprocess.run(
        ["git", *cmd],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@dataclass(slots=True)
class UpstreamRepo:
    """Fixture payload representing a synthetic upstream repository."""

    root: Path

    def write(self, files: Mapping[str, str | None]) -> None:
        for relative, content in files.items():
            path = self.root / relative
            if content is None:
                path.unlink()
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

    def commit(self, files: Mapping[str, str | None], message: str = "Update upstream") -> str:
        """Write ``files`` (``None`` deletes) and commit them; return the commit id."""

        self.write(files)
        run_git(self.root, "add", "--all")
        run_git(self.root, "commit", "-q", "-m", message)
        return run_git(self.root, "rev-parse", "HEAD")

    def tag(self, name: str) -> None:
        run_git(self.root, "tag", name)

    def head(self) -> str:
        return run_git(self.root, "rev-parse", "HEAD")


@pytest.fixture(autouse=True)
def git_identity(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> None:
    """Give git a stable identity without reading the developer's configuration."""

    global_config = tmp_path_factory.mktemp("git-identity") / "gitconfig"
    global_config.write_text(
        "[user]\n\tname = Fixture Author\n\temail = fixture@example.com\n"
        "[init]\n\tdefaultBranch = main\n"
        "[commit]\n\tgpgsign = false\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")


@pytest.fixture()
def upstream_repo(tmp_path: Path) -> UpstreamRepo:
    """Create a small upstream repository with a server and an api module."""

    root = tmp_path / "upstream"
    root.mkdir()
    run_git(root, "init", "-q")
    repo = UpstreamRepo(root=root)
    repo.commit(
        {
            "server/build.gradle.kts": "plugins {\n    java\n}\n\nversion = \"1.0\"\n",
            "api/README.md": "# API\n\nUpstream readme.\n",
            "api/src/Foo.java": "class Foo {}\n",
            "api/src/Bar.java": textwrap.dedent(
                """
                class Bar {
                    int one() {
                        return 1;
                    }

                    int two() {
                        return 2;
                    }
                }
                """
            ).lstrip(),
            "impl/src/Main.java": "class Main {\n    public static void main(String[] args) {\n    }\n}\n",
        },
        message="Initial upstream",
    )
    return repo


@dataclass(slots=True)
class Project:
    """A fork project wired to the ``upstream_repo`` fixture."""

    root: Path
    config_path: Path
    upstream: UpstreamRepo

    def load(self, **overrides: object):
        from patchstack.config import load_config

        return load_config(self.config_path, env={}).with_options(**overrides)


def project_config_data(upstream_root: Path) -> dict:
    return {
        "project": {"name": "Baguette"},
        "upstreams": {
            "canvas": {
                "repository": str(upstream_root),
                "ref": "v1",
                "targets": [
                    {
                        "name": "serverBuild",
                        "kind": "file",
                        "upstream_path": "server/build.gradle.kts",
                        "output": "fork-server/build.gradle.kts",
                        "patches": "fork-server/build.gradle.kts.patch",
                    },
                    {
                        "name": "api",
                        "kind": "directory",
                        "upstream_path": "api",
                        "output": "api",
                        "patches": "fork-api/api-patches",
                        "excludes": ["README.md"],
                        "access_transformer": "fork-api/api.at",
                    },
                    {
                        "name": "impl",
                        "kind": "repo",
                        "upstream_path": "impl",
                        "output": "impl",
                        "patches": "fork-impl/patches",
                    },
                ],
            }
        },
        "artifact": {"include": ["api/**", "fork-server/*.kts"]},
    }


@pytest.fixture()
def project(tmp_path: Path, upstream_repo: UpstreamRepo) -> Project:
    """Create a fork project with a file, a directory, and a repo target."""

    upstream_repo.tag("v1")
    root = tmp_path / "project"
    (root / "fork-api").mkdir(parents=True)
    root = root.resolve()
    (root / "fork-api" / "api.at").write_text("public Foo\n", encoding="utf-8")
    config_path = root / "patchstack.yaml"
    config_path.write_text(yaml.safe_dump(project_config_data(upstream_repo.root), sort_keys=False), encoding="utf-8")
    return Project(root=root, config_path=config_path, upstream=upstream_repo)
