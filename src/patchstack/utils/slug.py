"""Filesystem-friendly names for cache entries."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_SLUG_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalize ``value`` into a lowercase slug no longer than ``max_length``."""
    slug = _normalize((value or "").strip().lower())
    if not slug:
        slug = _normalize(fallback.lower()) or "item"
    if len(slug) > max_length:
        slug = abbreviate_slug(slug, max_length=max_length)
    return slug


def abbreviate_slug(segment: str, *, max_length: int = 80) -> str:
    """Trim ``segment`` to ``max_length`` while preserving uniqueness via hashing."""
    slug = segment.strip("-") or "item"
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}"


def repository_slug(repository: str, *, max_length: int = 64) -> str:
    """Stable cache name for a repository location.

    The readable part comes from the last path segments; a short digest of the
    full location keeps two repositories with the same name apart.
    """
    trimmed = repository.rstrip("/")
    if trimmed.endswith(".git"):
        trimmed = trimmed[: -len(".git")]
    tail = "-".join(re.split(r"[/:\\]+", trimmed)[-2:])
    digest = hashlib.sha256(repository.encode("utf-8")).hexdigest()[:10]
    readable = slugify(tail, fallback="repo", max_length=max(max_length - len(digest) - 1, 8))
    return f"{readable}-{digest}"


def _normalize(value: str) -> str:
    slug = _SLUG_PATTERN.sub("-", value)
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    return slug.strip("-")


__all__ = ["abbreviate_slug", "repository_slug", "slugify"]
