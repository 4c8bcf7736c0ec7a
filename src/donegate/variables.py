"""Values for prompt variables and ``variablesPresent`` conditions.

Host-supplied values always win; the rest are read cheaply from git, the
session record or the triggering tool call.  Session-scoped diffs are never
computed here: when the host does not hand one in, the value stays ``None``.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Optional

from .churn import task_ref
from .config import Task
from .context import GateContext
from .tools.vcs import GitError

LOGGER = logging.getLogger(__name__)

VariableSource = Callable[[GateContext, Task], Optional[str]]


def _git_output(context: GateContext, *args: str) -> Optional[str]:
    repo = context.repo
    if repo is None:
        return ""
    try:
        return repo.git(*args, check=False).stdout.strip()
    except GitError as error:
        LOGGER.debug("git %s unavailable: %s", " ".join(args), error)
        return ""


def _recently_edited(context: GateContext, _task: Task) -> Optional[str]:
    edits = context.session.turn_edits()
    return "\n".join(edits.files) if edits else ""


VARIABLE_SOURCES: Dict[str, VariableSource] = {
    "staged_diff": lambda ctx, _task: _git_output(ctx, "diff", "--cached"),
    "staged_files": lambda ctx, _task: _git_output(ctx, "diff", "--cached", "--name-only"),
    "working_diff": lambda ctx, _task: _git_output(ctx, "diff", "HEAD"),
    "changed_files": lambda ctx, _task: _git_output(ctx, "diff", "HEAD", "--name-only"),
    "recent_commits": lambda ctx, _task: _git_output(ctx, "log", "--oneline", "-10"),
    "git_status": lambda ctx, _task: _git_output(ctx, "status", "--short"),
    "git_head": lambda ctx, _task: ctx.repo.head() if ctx.repo is not None else "",
    "recently_edited_files": _recently_edited,
    "changes_since_last_review": lambda ctx, task: ctx.churn.diff_stat_since(task_ref(task.name), ctx.sources),
    "tool_command": lambda ctx, _task: str(ctx.tool_input.get("command") or ""),
    "file_path": lambda ctx, _task: str(ctx.tool_input.get("file_path") or ctx.tool_input.get("notebook_path") or ""),
    "project_dir": lambda ctx, _task: str(ctx.project_dir),
    "root_dir": lambda ctx, _task: str(ctx.root_dir),
    "session_id": lambda ctx, _task: ctx.session_id or "",
}


def collect_variables(context: GateContext, task: Task, names: Iterable[str]) -> Dict[str, Optional[str]]:
    """Resolve ``names``; values handed in by the host take precedence over computed ones."""
    values: Dict[str, Optional[str]] = {}
    for name in names:
        if name in context.variables:
            values[name] = context.variables[name]
            continue
        source = VARIABLE_SOURCES.get(name)
        values[name] = source(context, task) if source is not None else None
    return values


__all__ = ["VARIABLE_SOURCES", "collect_variables"]
