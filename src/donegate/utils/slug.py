"""Utilities for turning task names into ref- and filesystem-safe keys."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_UNSAFE_PATTERN: Pattern[str] = re.compile(r"[^A-Za-z0-9._-]")
_DOT_RUN = re.compile(r"\.{2,}")


def sanitize_name(value: str | None, *, fallback: str = "task", max_length: int = 120) -> str:
    """Replace characters outside ``[A-Za-z0-9._-]`` with ``_``.

    The result is usable as a git ref component, a file name, and a key in
    session state.  Runs of dots and leading dots are neutralised because git
    rejects them in ref names.
    """
    source = (value or "").strip() or fallback
    slug = _UNSAFE_PATTERN.sub("_", source)
    slug = _DOT_RUN.sub("_", slug)
    if slug.startswith("."):
        slug = "_" + slug[1:]
    if slug.endswith(".lock"):
        slug = slug[: -len(".lock")] + "_lock"

    if len(slug) > max_length:
        slug = abbreviate(slug, max_length=max_length)
    return slug


def abbreviate(segment: str, *, max_length: int = 120) -> str:
    """Trim ``segment`` to ``max_length`` while preserving uniqueness via hashing."""
    if len(segment) <= max_length:
        return segment

    digest = hashlib.sha256(segment.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = segment[:prefix_length].rstrip("-_")
    if not prefix:
        prefix = segment[:prefix_length]
    return f"{prefix}-{digest}"
