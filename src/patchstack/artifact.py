"""Reproducible, build-numbered jar bundling of the pipeline outputs."""

from __future__ import annotations

import logging
import os
import zipfile
from pathlib import Path, PurePosixPath
from typing import Iterable, Mapping

LOGGER = logging.getLogger(__name__)

# Earliest timestamp a zip entry can carry.
FIXED_TIMESTAMP = (1980, 2, 1, 0, 0, 0)
FILE_MODE = 0o644
MANIFEST_PATH = "META-INF/MANIFEST.MF"


def resolve_build_id(
    env: Mapping[str, str] | None = None,
    variable: str = "BUILD_NUMBER",
    fallback: str = "local",
) -> str:
    """Return the build id from ``variable`` or ``fallback`` when it is unset."""
    environment = os.environ if env is None else env
    value = (environment.get(variable) or "").strip()
    return value or fallback


def artifact_name(project: str, build_id: str) -> str:
    return f"{project.lower()}-build.{build_id}.jar"


def _collect(project_root: Path, include: Iterable[str]) -> dict[str, Path]:
    collected: dict[str, Path] = {}
    for pattern in include:
        matches = sorted(project_root.glob(pattern))
        if not matches:
            LOGGER.warning("Artifact include pattern %s matched nothing", pattern)
        for match in matches:
            candidates = [match] if match.is_file() else sorted(path for path in match.rglob("*") if path.is_file())
            for candidate in candidates:
                relative = candidate.relative_to(project_root)
                if ".git" in relative.parts:
                    continue
                collected[PurePosixPath(*relative.parts).as_posix()] = candidate
    return collected


def _manifest(project: str, build_id: str) -> bytes:
    lines = [
        "Manifest-Version: 1.0",
        "Created-By: patchstack",
        f"Implementation-Title: {project}",
        f"Implementation-Version: build.{build_id}",
    ]
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")


def _entry(name: str) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=FIXED_TIMESTAMP)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.create_system = 3
    info.external_attr = (0o100000 | FILE_MODE) << 16
    return info


def write_artifact(
    project_root: Path,
    include: Iterable[str],
    destination: Path,
    build_id: str,
    *,
    project: str | None = None,
) -> Path:
    """Zip the included files into ``destination``.

    Entries are sorted and carry fixed timestamps and permissions, so the same
    inputs always produce the same bytes.
    """

    project_root = Path(project_root)
    files = _collect(project_root, include)
    destination.parent.mkdir(parents=True, exist_ok=True)
    staging = destination.with_name(f".{destination.name}.{os.getpid()}.tmp")
    with zipfile.ZipFile(staging, "w") as archive:
        archive.writestr(_entry(MANIFEST_PATH), _manifest(project or project_root.name, build_id))
        for name in sorted(files):
            if name == MANIFEST_PATH:
                continue
            archive.writestr(_entry(name), files[name].read_bytes())
    os.replace(staging, destination)
    LOGGER.info("Wrote %s with %d file(s)", destination, len(files))
    return destination


__all__ = ["artifact_name", "resolve_build_id", "write_artifact"]
