"""CLI commands for applying and rebuilding patch stacks."""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer

from .artifact import artifact_name, resolve_build_id, write_artifact
from .config import (
    DEFAULT_CONFIG_NAME,
    PipelineConfig,
    copy_config_template,
    ensure_git_checkout,
    load_config,
    write_config,
)
from .errors import ConfigError, PatchApplyError, ResolutionError
from .pipeline import PipelineOrchestrator
from .tools.run_logs import latest_run_log
from .tools.telemetry import close_run_logging, configure_run_logging
from .tools.vcs import GitError

APP_HELP = "Patch-stack build pipeline: apply, rebuild, and bundle forks of an upstream tree."

app = typer.Typer(help=APP_HELP)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help=f"Console log level ({', '.join(_LOG_LEVELS)}).",
    ),
) -> None:
    """Configure console logging for every command."""
    level = log_level.upper()
    if level not in _LOG_LEVELS:
        raise typer.BadParameter(f"Unknown log level: {log_level}")
    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s")
    for handler in logging.getLogger().handlers:
        handler.setLevel(level)


def _load(config: str, **overrides: object) -> PipelineConfig:
    """Load and validate configuration, exiting with a message on failure."""
    try:
        pipeline_config = load_config(Path(config)).with_options(**overrides)
        ensure_git_checkout(pipeline_config)
    except ConfigError as error:
        typer.echo(f"Configuration error: {error}")
        raise typer.Exit(code=1) from error
    return pipeline_config


@contextmanager
def _run_logging(pipeline_config: PipelineConfig, command: str) -> Iterator[Path]:
    log_path, handler = configure_run_logging(pipeline_config.state_dir, command)
    try:
        yield log_path
    finally:
        close_run_logging(handler)


@contextmanager
def _cancel_on_interrupt(cancel: threading.Event) -> Iterator[None]:
    """Turn the first Ctrl-C into a request to stop before the next target."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def request_cancel(signum, frame) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        cancel.set()

    previous = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, request_cancel)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
    name: Optional[str] = typer.Option(
        None,
        "--name",
        "-n",
        help="Project name used for the artifact file name.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite an existing configuration file.",
    ),
) -> None:
    """Write a starter configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; pass --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path, copy_config_template(name or config_path.resolve().parent.name))
    typer.echo(f"Wrote configuration at {config_path}.")


@app.command()
def apply(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
    target: List[str] = typer.Option(
        None,
        "--target",
        "-t",
        help="Only apply the named target (repeatable).",
    ),
    emit_rejects: Optional[bool] = typer.Option(
        None,
        "--emit-rejects/--no-emit-rejects",
        help="Keep applying past failing hunks and write .rej files instead of stopping.",
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers",
        "-w",
        min=1,
        help="Number of targets processed in parallel.",
    ),
    offline: Optional[bool] = typer.Option(
        None,
        "--offline/--online",
        help="Fall back to cached upstream mirrors when fetching fails.",
    ),
) -> None:
    """Apply every patch stack onto the pinned upstream and write the outputs."""
    pipeline_config = _load(config, emit_rejects=emit_rejects, workers=workers, offline=offline)
    orchestrator = PipelineOrchestrator(pipeline_config)
    cancel = threading.Event()
    with _run_logging(pipeline_config, "apply") as log_path:
        try:
            with _cancel_on_interrupt(cancel):
                report = orchestrator.apply_all(target or None, cancel=cancel)
        except PatchApplyError as error:
            if orchestrator.last_report is not None:
                typer.echo(orchestrator.last_report.format_summary())
            typer.echo(error.describe())
            typer.echo(f"Details logged to {log_path}")
            raise typer.Exit(code=1) from error
        except (ConfigError, ResolutionError, GitError) as error:
            typer.echo(f"Apply failed: {error}")
            typer.echo(f"Details logged to {log_path}")
            raise typer.Exit(code=1) from error

    typer.echo(report.format_summary())
    if report.cancelled:
        typer.echo("Interrupted; targets already running were allowed to finish.")
        typer.echo(f"Details logged to {log_path}")
        raise typer.Exit(code=130)
    if report.rejects:
        typer.echo(f"{len(report.rejects)} reject file(s) need manual resolution before rebuilding.")
    typer.echo(f"Details logged to {log_path}")


@app.command()
def rebuild(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
    target: List[str] = typer.Option(
        None,
        "--target",
        "-t",
        help="Only rebuild the named target (repeatable).",
    ),
    filter_patches: Optional[bool] = typer.Option(
        None,
        "--filter-patches/--no-filter-patches",
        help="Drop patches whose diff is empty.",
    ),
    offline: Optional[bool] = typer.Option(
        None,
        "--offline/--online",
        help="Fall back to cached upstream mirrors when fetching fails.",
    ),
) -> None:
    """Regenerate patch stacks from the edited outputs."""
    pipeline_config = _load(config, filter_patches=filter_patches, offline=offline)
    orchestrator = PipelineOrchestrator(pipeline_config)
    with _run_logging(pipeline_config, "rebuild") as log_path:
        try:
            report = orchestrator.rebuild_all(target or None)
        except (ConfigError, ResolutionError, GitError) as error:
            typer.echo(f"Rebuild failed: {error}")
            typer.echo(f"Details logged to {log_path}")
            raise typer.Exit(code=1) from error

    typer.echo(report.format_summary())
    typer.echo(f"Details logged to {log_path}")
    if report.failed:
        raise typer.Exit(code=1)


@app.command()
def artifact(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
    build_id: Optional[str] = typer.Option(
        None,
        "--build-id",
        help="Build id to embed; defaults to the configured environment variable.",
    ),
) -> None:
    """Bundle the configured outputs into a reproducible jar."""
    pipeline_config = _load(config)
    settings = pipeline_config.settings.artifact
    if not settings.include:
        typer.echo("No artifact include patterns configured.")
        raise typer.Exit(code=1)
    resolved_id = build_id or resolve_build_id(variable=settings.build_id_env, fallback=settings.fallback_build_id)
    project = pipeline_config.project_name or pipeline_config.root.name
    output_dir = Path(settings.output_dir)
    if not output_dir.is_absolute():
        output_dir = pipeline_config.root / output_dir
    destination = output_dir / artifact_name(project, resolved_id)
    write_artifact(pipeline_config.root, settings.include, destination, resolved_id, project=project)
    typer.echo(destination.as_posix())


@app.command()
def status(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    )
) -> None:
    """Validate configuration and report targets, stacks, and pending rejects."""
    pipeline_config = _load(config)
    orchestrator = PipelineOrchestrator(pipeline_config)

    typer.echo(f"Loaded configuration from {config}")
    typer.echo(f"Project: {pipeline_config.project_name or 'unnamed'}")
    for name, ref in sorted(pipeline_config.upstreams.items()):
        typer.echo(f"Upstream {name}: {ref.describe()}")
    for entry in orchestrator.describe_targets():
        typer.echo(f"- {entry.target.name} [{entry.target.kind.value}]: {entry.entries} patch(es)")
        for path in entry.pending_rejects:
            typer.echo(f"    pending reject: {path}")

    last = latest_run_log(pipeline_config.logs_dir)
    if last is None:
        typer.echo("No runs recorded yet.")
        return
    typer.echo(f"Last run: {last.command} at {last.finished_at}")
    for failed in last.failed_targets:
        typer.echo(f"  failed: {failed}")


if __name__ == "__main__":
    app()
