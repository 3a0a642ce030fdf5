"""Minimal git helpers.

The helpers below cover what the pipeline needs from git: bare mirrors of
upstream repositories, snapshot export, deterministic commits for patched
repositories, and ``format-patch`` for turning commits back into patches.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Sequence


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


DEFAULT_IDENTITY = ("patchstack", "patchstack@localhost")
# Fixed timestamp for commits that carry no authorship of their own.
DEFAULT_DATE = "2000-01-01T00:00:00+00:00"


@dataclass(frozen=True, slots=True)
class CommitIdentity:
    """Author and committer settings pinned for one commit."""

    name: str = DEFAULT_IDENTITY[0]
    email: str = DEFAULT_IDENTITY[1]
    date: str = DEFAULT_DATE

    def environment(self) -> dict[str, str]:
        return {
            "GIT_AUTHOR_NAME": self.name,
            "GIT_AUTHOR_EMAIL": self.email,
            "GIT_AUTHOR_DATE": self.date,
            "GIT_COMMITTER_NAME": self.name,
            "GIT_COMMITTER_EMAIL": self.email,
            "GIT_COMMITTER_DATE": self.date,
        }


def run_git(
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess[bytes]:
    """Run ``git`` and return raw output; raise :class:`GitError` on failure when ``check``."""

    command = ["git", *args]
    environment = None
    if env:
        environment = dict(os.environ)
        environment.update(env)
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
            env=environment,
        )
    except FileNotFoundError as error:
        raise GitError("git executable not found on PATH") from error
    if check and process.returncode != 0:
        raise GitError(f"git {' '.join(args)} failed: {_failure_message(process)}")
    return process


def _decode(payload: bytes | None) -> str:
    return payload.decode("utf-8", errors="replace") if payload else ""


def _failure_message(process: subprocess.CompletedProcess[bytes]) -> str:
    return _decode(process.stderr).strip() or _decode(process.stdout).strip() or "unknown git error"


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str, *, bare: bool = False) -> None:
        self.root = Path(root).resolve()
        self.bare = bare
        marker = self.root / "HEAD" if bare else self.root / ".git"
        if not marker.exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def initialise(cls, root: Path | str) -> "GitRepository":
        """Create an empty repository at ``root`` with deterministic settings."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        run_git(["init", "--quiet"], cwd=path)
        repo = cls(path)
        for key, value in (
            ("user.name", DEFAULT_IDENTITY[0]),
            ("user.email", DEFAULT_IDENTITY[1]),
            ("commit.gpgsign", "false"),
            ("tag.gpgsign", "false"),
            ("core.autocrlf", "false"),
        ):
            repo.git("config", key, value)
        return repo

    @classmethod
    def clone_mirror(cls, source: str, destination: Path) -> "GitRepository":
        """Create a bare mirror of ``source`` at ``destination``."""

        destination.parent.mkdir(parents=True, exist_ok=True)
        run_git(["clone", "--mirror", "--quiet", source, str(destination)])
        return cls(destination, bare=True)

    # ---- git IO

    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        process = run_git(args, cwd=self.root, env=env, check=check)
        return subprocess.CompletedProcess(process.args, process.returncode, _decode(process.stdout), _decode(process.stderr))

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # ---- refs

    def resolve_commit(self, ref: str) -> str | None:
        """Return the full commit id ``ref`` points at, or ``None``."""

        result = self._run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def has_tag(self, name: str) -> bool:
        result = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/tags/{name}"], check=False)
        return result.returncode == 0

    def tag(self, name: str) -> None:
        self._run_git(["tag", name])

    def fetch(self) -> None:
        """Refresh every ref of a mirror, pruning deleted ones."""

        self._run_git(["fetch", "--prune", "--tags", "--quiet", "origin"])

    # ---- snapshots

    def archive(self, commit: str) -> bytes:
        """Return a tar stream of the tree at ``commit``."""

        process = run_git(["archive", "--format=tar", commit], cwd=self.root)
        return process.stdout

    # ---- repo status

    def status_entries(self) -> List[tuple[str, Path]]:
        """Return porcelain status entries as ``(status, path)`` pairs."""

        result = self._run_git(["status", "--porcelain", "--untracked-files=all"])
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2].strip() or line[:2]
            entries.append((status, Path(line[3:].strip())))
        return entries

    def has_changes(self) -> bool:
        return bool(self.status_entries())

    # ---- commits

    def commit_all(
        self,
        message: str,
        *,
        identity: CommitIdentity | None = None,
        allow_empty: bool = False,
        include_ignored: bool = False,
    ) -> str:
        """Stage every change and commit it under ``identity``; return the commit id."""

        self._run_git(["add", "--all", "--force"] if include_ignored else ["add", "--all"])
        args: List[str] = ["commit", "--quiet", "--no-verify", "--cleanup=verbatim", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        self._run_git(args, env=(identity or CommitIdentity()).environment())
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def format_patch(
        self,
        since: str,
        output_dir: Path,
        *,
        pathspecs: Sequence[str] = (),
        always: bool = False,
    ) -> List[Path]:
        """Write one patch per commit after ``since`` into ``output_dir``."""

        args: List[str] = [
            "format-patch",
            "--zero-commit",
            "--full-index",
            "--no-signature",
            "--no-stat",
            "--no-numbered",
            "--no-renames",
            "--src-prefix=a/",
            "--dst-prefix=b/",
            "-N",
            "--quiet",
            "-o",
            str(output_dir),
        ]
        if always:
            args.append("--always")
        args.append(f"{since}..HEAD")
        if pathspecs:
            args.extend(["--", ".", *pathspecs])
        self._run_git(args)
        return sorted(output_dir.glob("*.patch"))

    def write_info_exclude(self, patterns: Sequence[str]) -> None:
        exclude = self.root / ".git" / "info" / "exclude"
        exclude.parent.mkdir(parents=True, exist_ok=True)
        exclude.write_text("".join(f"{pattern}\n" for pattern in patterns), encoding="utf-8")


__all__ = ["CommitIdentity", "GitError", "GitRepository", "run_git"]
