"""Decide whether a task runs now and reconcile churn state after it ran."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from .churn import task_ref
from .config import Task, WhenClause
from .context import GateContext
from .globs import is_source_file
from .variables import collect_variables

LOGGER = logging.getLogger(__name__)

# Gates that fire on every tool call; a failure here must still advance or the
# agent is blocked from writing the fix.
COMPLETION_BOUNDARY_EVENTS: tuple[str, ...] = ("PreToolUse",)


@dataclass(slots=True)
class RunDecision:
    """Outcome of evaluating a task's ``when`` clause."""

    run: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.run


class Scheduler:
    """Evaluate ``when`` clauses and apply the advance-or-preserve policy."""

    def __init__(self, context: GateContext) -> None:
        self.context = context

    def should_run(self, task: Task) -> RunDecision:
        when = task.when
        if when is None:
            return RunDecision(True)
        for check in (
            self._check_files,
            self._check_env,
            self._check_signal,
            self._check_turn,
            self._check_variables,
            self._check_churn,
        ):
            reason = check(task, when)
            if reason:
                LOGGER.debug("Skipping %s: %s", task.name, reason)
                return RunDecision(False, reason)
        return RunDecision(True)

    # ----------------------------------------------------------- conditions
    def _check_files(self, _task: Task, when: WhenClause) -> str | None:
        if when.file_exists and not (self.context.project_dir / when.file_exists).exists():
            return f"{when.file_exists} does not exist"
        return None

    def _check_env(self, _task: Task, when: WhenClause) -> str | None:
        env = self.context.env
        if when.env_set and not env.get(when.env_set):
            return f"${when.env_set} is not set"
        if when.env_not_set and env.get(when.env_not_set):
            return f"${when.env_not_set} is set"
        return None

    def _check_signal(self, _task: Task, when: WhenClause) -> str | None:
        if not when.signal:
            return None
        current = self.context.session.get_signal()
        if current is None or current.type != when.signal:
            return f'signal "{when.signal}" is not set'
        return None

    def _check_turn(self, _task: Task, when: WhenClause) -> str | None:
        if not when.tools_used and not when.source_files_edited:
            return None
        edits = self.context.session.turn_edits()
        tools: List[str] = list(edits.tools) if edits else []
        files: List[str] = list(edits.files) if edits else []
        if when.tools_used and not any(tool in tools for tool in when.tools_used):
            return f"none of {', '.join(when.tools_used)} used this turn"
        if when.source_files_edited:
            root = self.context.root_dir
            if not any(is_source_file(path, root, self.context.sources) for path in files):
                return "no source files edited this turn"
        return None

    def _check_variables(self, task: Task, when: WhenClause) -> str | None:
        if not when.variables_present:
            return None
        values = collect_variables(self.context, task, when.variables_present)
        for name in when.variables_present:
            value = values.get(name)
            if not value or not value.strip():
                return f"{{{{{name}}}}} is empty"
        return None

    def _check_churn(self, task: Task, when: WhenClause) -> str | None:
        context = self.context
        ref = task_ref(task.name)
        if when.lines_changed or when.sources_modified_since_last_run:
            churn = context.churn.net_churn_since(ref, context.sources)
            if when.lines_changed and churn < when.lines_changed:
                return f"{churn} lines changed since last run (threshold {when.lines_changed})"
            if when.sources_modified_since_last_run and churn <= 0:
                return "no source changes since last run"
        if when.lines_written:
            written = context.churn.gross_churn_since(ref)
            if written < when.lines_written:
                return f"{written} gross lines changed since last run (threshold {when.lines_written})"
        return None

    # -------------------------------------------------------------- advance
    @staticmethod
    def should_advance(task: Task, passed: bool, event: str | None) -> bool:
        """Return whether tracked churn resets after a run with this outcome."""
        if passed:
            return True
        if task.reset_on_fail is not None:
            return task.reset_on_fail
        return event in COMPLETION_BOUNDARY_EVENTS

    def advance(self, task: Task, passed: bool, event: str | None = None) -> bool:
        """Advance the task's snapshots when policy says so; return whether it did."""
        if task.type != "agent" and not task.tracks_churn:
            return False
        if not self.should_advance(task, passed, event or self.context.event):
            LOGGER.debug("Preserving churn for %s after failure", task.name)
            return False
        context = self.context
        ref = task_ref(task.name)
        context.churn.advance_snapshot(ref, context.sources)
        context.churn.advance_gross_snapshot(ref)
        return True


__all__ = ["COMPLETION_BOUNDARY_EVENTS", "RunDecision", "Scheduler"]
