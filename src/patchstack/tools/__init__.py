"""Low-level helpers: diff text, git, locking, and telemetry."""

from .locking import advisory_lock
from .telemetry import configure_run_logging, emit_event
from .vcs import CommitIdentity, GitError, GitRepository

__all__ = [
    "CommitIdentity",
    "GitError",
    "GitRepository",
    "advisory_lock",
    "configure_run_logging",
    "emit_event",
]
