"""Source glob handling shared by git pathspecs and on-disk scans."""

from __future__ import annotations

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Iterator, List, Pattern, Sequence

DEFAULT_SOURCES: tuple[str, ...] = ("**",)
# Gate state (config, backchannel READMEs) is never source.
STATE_DIR_NAME = ".donegate"
_SKIPPED_DIRS = frozenset({"node_modules", "__pycache__"})


@lru_cache(maxsize=256)
def glob_to_regex(glob: str) -> Pattern[str]:
    """Compile a source glob where ``**/`` spans directories and ``*`` stays within one."""
    out: List[str] = []
    index = 0
    while index < len(glob):
        if glob.startswith("**/", index):
            out.append("(?:.*/)?")
            index += 3
        elif glob.startswith("**", index):
            out.append(".*")
            index += 2
        elif glob[index] == "*":
            out.append("[^/]*")
            index += 1
        elif glob[index] == "?":
            out.append("[^/]")
            index += 1
        else:
            out.append(re.escape(glob[index]))
            index += 1
    return re.compile("^" + "".join(out) + "$")


def effective_sources(sources: Sequence[str] | None) -> tuple[str, ...]:
    cleaned = tuple(glob for glob in (sources or ()) if glob and glob.strip())
    return cleaned or DEFAULT_SOURCES


def pathspecs(sources: Sequence[str] | None) -> List[str]:
    """Translate source globs into git ``:(glob)`` pathspecs."""
    specs = [f":(glob){glob}" for glob in effective_sources(sources)]
    specs.append(f":(exclude){STATE_DIR_NAME}")
    return specs


def is_source_file(file_path: str | Path, root: Path, sources: Sequence[str] | None) -> bool:
    """Return ``True`` when ``file_path`` falls under ``root`` and matches a source glob."""
    candidate = Path(file_path)
    if candidate.is_absolute():
        try:
            relative = candidate.resolve().relative_to(root.resolve())
        except ValueError:
            return False
    else:
        relative = candidate
    text = relative.as_posix()
    if text.startswith("..") or text.split("/", 1)[0] == STATE_DIR_NAME:
        return False
    return any(glob_to_regex(glob).match(text) for glob in effective_sources(sources))


def iter_source_files(root: Path, sources: Sequence[str] | None) -> Iterator[Path]:
    """Walk ``root`` (skipping hidden and vendored directories) yielding matching files."""
    patterns = [glob_to_regex(glob) for glob in effective_sources(sources)]
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = [name for name in dirnames if not name.startswith(".") and name not in _SKIPPED_DIRS]
        for name in filenames:
            absolute = Path(current) / name
            relative = absolute.relative_to(root).as_posix()
            if any(pattern.match(relative) for pattern in patterns):
                yield absolute


def latest_mtime(root: Path, sources: Sequence[str] | None) -> float:
    """Return the newest modification time among matching source files (0.0 when none)."""
    newest = 0.0
    for path in iter_source_files(root, sources):
        try:
            newest = max(newest, path.stat().st_mtime)
        except OSError:
            continue
    return newest


__all__ = [
    "DEFAULT_SOURCES",
    "effective_sources",
    "glob_to_regex",
    "is_source_file",
    "iter_source_files",
    "latest_mtime",
    "pathspecs",
]
