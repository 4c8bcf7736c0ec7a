"""Prompt variable detection and opaque substitution.

Values are produced elsewhere (diff generators, editor history readers) and
arrive here as plain strings; this module only finds ``{{name}}`` references,
refuses the ones that cannot be satisfied, and splices values in.
``{{#name}}...{{/name}}`` sections are kept only when ``name`` is non-empty.
"""

from __future__ import annotations

import re
from typing import Dict, List, Mapping, Optional

KNOWN_VARS: tuple[str, ...] = (
    "staged_diff",
    "staged_files",
    "working_diff",
    "changed_files",
    "recent_commits",
    "git_status",
    "git_head",
    "recently_edited_files",
    "changes_since_last_review",
    "session_diff",
    "test_output",
    "tool_command",
    "file_path",
    "project_dir",
    "root_dir",
    "session_id",
)

# Variables that only exist inside an agent session (never in git hooks).
SESSION_VARS: tuple[str, ...] = ("session_diff",)

_VARIABLE = re.compile(r"\{\{\s*([#/]?)(\w+)\s*\}\}")
_SECTION = re.compile(r"\{\{#(\w+)\}\}(.*?)\{\{/\1\}\}", re.DOTALL)

Variables = Mapping[str, Optional[str]]


def referenced_vars(template: str | None) -> List[str]:
    """Return variable names referenced by ``template`` in first-seen order."""
    seen: Dict[str, None] = {}
    for match in _VARIABLE.finditer(template or ""):
        seen.setdefault(match.group(2), None)
    return list(seen)


def unknown_vars(template: str | None) -> List[str]:
    return [name for name in referenced_vars(template) if name not in KNOWN_VARS]


def section_vars(template: str | None) -> List[str]:
    return list(dict.fromkeys(match.group(1) for match in _SECTION.finditer(template or "")))


def session_vars(template: str | None) -> List[str]:
    """Session-scoped references that are required; a section guard makes one optional."""
    guarded = set(section_vars(template))
    return [name for name in referenced_vars(template) if name in SESSION_VARS and name not in guarded]


def unresolved_vars(template: str | None, variables: Variables) -> List[str]:
    """Session-scoped references whose collaborator value is missing entirely."""
    return [name for name in session_vars(template) if variables.get(name) is None]


def render(template: str | None, variables: Variables) -> str:
    """Substitute ``variables`` into ``template``; unknown or missing values render empty."""
    if not template:
        return ""

    def _section(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return match.group(2) if value and value.strip() else ""

    expanded = _SECTION.sub(_section, template)

    def _value(match: re.Match[str]) -> str:
        if match.group(1):
            return ""
        return variables.get(match.group(2)) or ""

    return _VARIABLE.sub(_value, expanded)


__all__ = [
    "KNOWN_VARS",
    "SESSION_VARS",
    "Variables",
    "referenced_vars",
    "render",
    "section_vars",
    "session_vars",
    "unknown_vars",
    "unresolved_vars",
]
