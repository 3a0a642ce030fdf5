"""YAML configuration for the patch pipeline."""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .model import PatchTarget, TargetKind, UpstreamRef

DEFAULT_CONFIG_NAME = "patchstack.yaml"
DEFAULT_PROPERTIES_FILE = "gradle.properties"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "require_git_checkout": True,
    },
    "options": {
        "filter_patches": True,
        "emit_rejects": False,
        "workers": 1,
        "offline": False,
    },
    "paths": {
        "state": ".patchstack",
    },
    "upstreams": {
        "canvas": {
            "repository": "github:CraftCanvasMC/Canvas",
            "ref_property": "canvasCommit",
            "properties_file": DEFAULT_PROPERTIES_FILE,
            "targets": [
                {
                    "name": "serverBuildFile",
                    "kind": "file",
                    "upstream_path": "canvas-server/build.gradle.kts",
                    "output": "fork-server/build.gradle.kts",
                    "patches": "fork-server/build.gradle.kts.patch",
                },
                {
                    "name": "paperApi",
                    "kind": "repo",
                    "upstream_path": "paper-api",
                    "output": "paper-api",
                    "patches": "fork-api/paper-patches",
                },
                {
                    "name": "canvasApi",
                    "kind": "directory",
                    "upstream_path": "canvas-api",
                    "output": "canvas-api",
                    "patches": "fork-api/canvas-patches",
                    "excludes": ["build.gradle.kts", "build.gradle.kts.patch", "paper-patches", "folia-patches"],
                },
            ],
        },
    },
    "artifact": {
        "build_id_env": "BUILD_NUMBER",
        "fallback_build_id": "local",
        "output_dir": "build/libs",
        "include": [],
    },
}


class ConfigModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class ProjectSettings(ConfigModel):
    name: str = "patchstack"
    require_git_checkout: bool = False


class OptionSettings(ConfigModel):
    filter_patches: bool = True
    emit_rejects: bool = False
    workers: int = Field(default=1, ge=1)
    offline: bool = False


class PathSettings(ConfigModel):
    state: str = ".patchstack"


class TargetSettings(ConfigModel):
    name: str = Field(min_length=1)
    kind: TargetKind
    upstream_path: str = "."
    output: str
    patches: str
    excludes: List[str] = Field(default_factory=list)
    access_transformer: Optional[str] = None

    @field_validator("upstream_path")
    @classmethod
    def _stay_inside_upstream(cls, value: str) -> str:
        candidate = PurePosixPath(value.strip() or ".")
        if candidate.is_absolute() or ".." in candidate.parts:
            raise ValueError(f"upstream_path must stay inside the upstream tree: {value}")
        return candidate.as_posix()

    @model_validator(mode="after")
    def _excludes_only_for_directories(self) -> "TargetSettings":
        if self.excludes and self.kind is not TargetKind.DIRECTORY:
            raise ValueError(f"target {self.name}: excludes are only supported on directory targets")
        if self.kind is TargetKind.FILE and self.upstream_path == ".":
            raise ValueError(f"target {self.name}: file targets need an upstream_path naming the file")
        return self


class UpstreamSettings(ConfigModel):
    repository: str = Field(min_length=1)
    ref: Optional[str] = None
    ref_env: Optional[str] = None
    ref_property: Optional[str] = None
    properties_file: str = DEFAULT_PROPERTIES_FILE
    targets: List[TargetSettings] = Field(default_factory=list)


class ArtifactSettings(ConfigModel):
    build_id_env: str = "BUILD_NUMBER"
    fallback_build_id: str = "local"
    output_dir: str = "build/libs"
    include: List[str] = Field(default_factory=list)


class PipelineSettings(ConfigModel):
    project: ProjectSettings = Field(default_factory=ProjectSettings)
    options: OptionSettings = Field(default_factory=OptionSettings)
    paths: PathSettings = Field(default_factory=PathSettings)
    upstreams: Dict[str, UpstreamSettings] = Field(default_factory=dict)
    artifact: ArtifactSettings = Field(default_factory=ArtifactSettings)

    @model_validator(mode="after")
    def _unique_target_names(self) -> "PipelineSettings":
        seen: set[str] = set()
        for upstream in self.upstreams.values():
            for target in upstream.targets:
                if target.name in seen:
                    raise ValueError(f"duplicate target name: {target.name}")
                seen.add(target.name)
        return self


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Validated configuration with every path resolved against the project root."""

    root: Path
    config_path: Path | None
    settings: PipelineSettings
    upstreams: Mapping[str, UpstreamRef]
    targets: Tuple[PatchTarget, ...]

    @property
    def options(self) -> OptionSettings:
        return self.settings.options

    @property
    def project_name(self) -> str:
        return self.settings.project.name

    @property
    def state_dir(self) -> Path:
        return _resolve_path(self.root, self.settings.paths.state)

    @property
    def cache_dir(self) -> Path:
        return self.state_dir / "cache"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def build_data_dir(self) -> Path:
        return self.state_dir / "build-data"

    def target(self, name: str) -> PatchTarget:
        for candidate in self.targets:
            if candidate.name == name:
                return candidate
        raise ConfigError(f"Unknown target: {name}", details={"known": [item.name for item in self.targets]})

    def with_options(self, **overrides: Any) -> "PipelineConfig":
        """Return a copy with command-line overrides applied; ``None`` keeps the file value."""

        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        unknown = set(changes) - set(OptionSettings.model_fields)
        if unknown:
            raise ConfigError(f"Unknown option override(s): {', '.join(sorted(unknown))}")
        try:
            options = OptionSettings.model_validate({**self.settings.options.model_dump(), **changes})
        except ValidationError as error:
            raise ConfigError(f"Invalid option override: {error}") from error
        settings = self.settings.model_copy(update={"options": options})
        return PipelineConfig(
            root=self.root,
            config_path=self.config_path,
            settings=settings,
            upstreams=self.upstreams,
            targets=self.targets,
        )


def _resolve_path(root: Path, value: str) -> Path:
    candidate = Path(value)
    if not candidate.is_absolute():
        candidate = root / candidate
    return candidate.resolve()


def _is_remote(repository: str) -> bool:
    return "://" in repository or repository.startswith(("git@", "github:"))


def read_properties(path: Path) -> Dict[str, str]:
    """Parse a ``key=value`` properties file, ignoring comments and blank lines."""
    values: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith(("#", "!")):
            continue
        separator = min((index for index in (line.find("="), line.find(":")) if index >= 0), default=-1)
        if separator < 0:
            continue
        values[line[:separator].strip()] = line[separator + 1 :].strip()
    return values


def resolve_ref(name: str, upstream: UpstreamSettings, root: Path, env: Mapping[str, str]) -> str:
    """Pick the upstream ref: environment variable, then property, then literal."""

    if upstream.ref_env:
        value = (env.get(upstream.ref_env) or "").strip()
        if value:
            return value
    if upstream.ref_property:
        properties_path = _resolve_path(root, upstream.properties_file)
        if properties_path.is_file():
            value = read_properties(properties_path).get(upstream.ref_property, "").strip()
            if value:
                return value
    if upstream.ref and upstream.ref.strip():
        return upstream.ref.strip()
    raise ConfigError(
        f"Upstream {name} has no ref: set 'ref', '{upstream.ref_property or 'ref_property'}' in "
        f"{upstream.properties_file}, or the '{upstream.ref_env or 'ref_env'}' environment variable",
        details={"upstream": name},
    )


def build_config(
    data: Mapping[str, Any],
    root: Path,
    *,
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> PipelineConfig:
    """Validate raw configuration data and resolve refs and paths."""

    try:
        settings = PipelineSettings.model_validate(dict(data))
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration: {error}") from error

    environment = os.environ if env is None else env
    root = root.resolve()
    upstreams: Dict[str, UpstreamRef] = {}
    targets: List[PatchTarget] = []
    for name, upstream in settings.upstreams.items():
        repository = upstream.repository
        if not _is_remote(repository):
            repository = _resolve_path(root, repository).as_posix()
        upstreams[name] = UpstreamRef(repository=repository, ref=resolve_ref(name, upstream, root, environment))
        for item in upstream.targets:
            targets.append(
                PatchTarget(
                    name=item.name,
                    kind=item.kind,
                    upstream=name,
                    upstream_path=item.upstream_path,
                    output=_resolve_path(root, item.output),
                    patches=_resolve_path(root, item.patches),
                    excludes=tuple(item.excludes),
                    access_transformer=_resolve_path(root, item.access_transformer) if item.access_transformer else None,
                )
            )
    return PipelineConfig(
        root=root,
        config_path=config_path,
        settings=settings,
        upstreams=upstreams,
        targets=tuple(targets),
    )


def load_config(config_path: Path, *, env: Mapping[str, str] | None = None) -> PipelineConfig:
    """Load YAML configuration from disk; relative paths resolve against its directory."""

    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return build_config(data, config_path.resolve().parent, config_path=config_path.resolve(), env=env)


def copy_config_template(name: str | None = None) -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    template = copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)
    if name:
        template["project"]["name"] = name
    return template


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def ensure_git_checkout(config: PipelineConfig) -> None:
    """Refuse to run from a source download that is not a git clone."""

    if not config.settings.project.require_git_checkout:
        return
    if (config.root / ".git").exists():
        return
    name = config.project_name or config.root.name
    raise ConfigError(
        f"The {name} project directory is not a properly cloned Git repository.\n"
        f"In order to build {name} from source you must clone the repository using Git, "
        "not download a code zip.",
        details={"root": config.root.as_posix()},
    )


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "PipelineConfig",
    "PipelineSettings",
    "build_config",
    "copy_config_template",
    "ensure_git_checkout",
    "load_config",
    "read_properties",
    "resolve_ref",
    "write_config",
]
