"""Resolve upstream repositories to pinned, cached source snapshots."""

from __future__ import annotations

import io
import logging
import os
import re
import shutil
import tarfile
from pathlib import Path

from .errors import ResolutionError
from .model import UpstreamRef
from .tools.locking import advisory_lock
from .tools.telemetry import emit_event
from .tools.vcs import GitError, GitRepository
from .tree import DirectoryTree
from .utils.slug import repository_slug

LOGGER = logging.getLogger(__name__)

_FULL_COMMIT = re.compile(r"^[0-9a-f]{40}([0-9a-f]{24})?$")
_GITHUB_SHORTHAND = "github:"
_COMPLETE_SUFFIX = ".complete"


def expand_repository(repository: str) -> str:
    """Expand ``github:Owner/Repo`` shorthand; other locations pass through."""

    if repository.startswith(_GITHUB_SHORTHAND):
        slug = repository[len(_GITHUB_SHORTHAND) :].strip("/")
        if slug.endswith(".git"):
            slug = slug[: -len(".git")]
        return f"https://github.com/{slug}.git"
    return repository


class UpstreamSynchronizer:
    """Keep bare mirrors of upstream repositories and export snapshots from them.

    Layout under ``cache_root``::

        mirrors/<slug>.git        bare mirror, refreshed with fetch --prune
        mirrors/<slug>.lock       advisory lock for the mirror
        trees/<commit>/           exported snapshot
        trees/<commit>.complete   marker written once the export finished
    """

    def __init__(self, cache_root: Path, *, offline: bool = False) -> None:
        self.cache_root = Path(cache_root)
        self.offline = offline

    def mirror_path(self, repository: str) -> Path:
        return self.cache_root / "mirrors" / f"{repository_slug(expand_repository(repository))}.git"

    def resolve(self, ref: UpstreamRef) -> DirectoryTree:
        """Return the snapshot of ``ref`` as a read-only directory tree."""

        location = expand_repository(ref.repository)
        mirror = self.mirror_path(ref.repository)
        with advisory_lock(mirror.with_suffix(".lock")):
            repo = self._sync_mirror(location, mirror, ref.ref)
            commit = repo.resolve_commit(ref.ref)
            if commit is None:
                raise ResolutionError(
                    f"Ref {ref.ref!r} does not exist in {location}",
                    details={"repository": location, "ref": ref.ref},
                )
            snapshot = self._export(repo, commit)
        emit_event("upstream_resolved", repository=location, ref=ref.ref, commit=commit)
        LOGGER.info("Resolved %s to %s", ref.describe(), commit)
        return DirectoryTree(root=snapshot, revision=commit)

    # ---- mirrors

    def _sync_mirror(self, location: str, mirror: Path, ref: str) -> GitRepository:
        if not (mirror / "HEAD").exists():
            if self.offline:
                LOGGER.info("No cached mirror for %s; attempting a first clone", location)
            return self._clone(location, mirror)

        repo = GitRepository(mirror, bare=True)
        if _FULL_COMMIT.match(ref) and repo.resolve_commit(ref):
            LOGGER.debug("Commit %s already present in %s; skipping fetch", ref, mirror)
            return repo
        try:
            repo.fetch()
        except GitError as error:
            if not self.offline:
                raise ResolutionError(
                    f"Unable to fetch {location}: {error}",
                    details={"repository": location},
                ) from error
            LOGGER.warning("Fetching %s failed; using the cached mirror: %s", location, error)
            emit_event("upstream_offline_fallback", repository=location, mirror=mirror)
        return repo

    def _clone(self, location: str, mirror: Path) -> GitRepository:
        partial = mirror.with_name(mirror.name + ".partial")
        if partial.exists():
            shutil.rmtree(partial)
        try:
            GitRepository.clone_mirror(location, partial)
        except GitError as error:
            shutil.rmtree(partial, ignore_errors=True)
            raise ResolutionError(
                f"Unable to clone {location}: {error}",
                details={"repository": location},
            ) from error
        os.replace(partial, mirror)
        return GitRepository(mirror, bare=True)

    # ---- snapshots

    def _export(self, repo: GitRepository, commit: str) -> Path:
        trees = self.cache_root / "trees"
        destination = trees / commit
        marker = trees / f"{commit}{_COMPLETE_SUFFIX}"
        if marker.exists() and destination.is_dir():
            return destination

        trees.mkdir(parents=True, exist_ok=True)
        staging = trees / f".{commit}.staging"
        for leftover in (staging, destination):
            if leftover.exists():
                shutil.rmtree(leftover)
        staging.mkdir()
        try:
            payload = repo.archive(commit)
            with tarfile.open(fileobj=io.BytesIO(payload), mode="r:") as archive:
                archive.extractall(staging, filter="data")
        except (GitError, tarfile.TarError) as error:
            shutil.rmtree(staging, ignore_errors=True)
            raise ResolutionError(
                f"Unable to export {commit}: {error}",
                details={"commit": commit},
            ) from error
        os.replace(staging, destination)
        marker.write_text(commit + "\n", encoding="utf-8")
        return destination


__all__ = ["UpstreamSynchronizer", "expand_repository"]
