"""Route one lifecycle event through scheduling, execution, escalation and advance.

For every hook entry matching the event, tasks run in configuration order:
suspended tasks are skipped, the scheduler decides eligibility, the runner
executes, script failures pass through the appeal arbiter, and the scheduler
finally advances or preserves churn state.  ``async`` tasks are detached and
enforced on a later ``Stop``; ``parallel`` tasks are detached but awaited
before the outcome is returned.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .arbiter import AppealArbiter
from .async_worker import AsyncHandle, collect_results, spawn, wait_for
from .churn import count_written_lines
from .config import GIT_EVENTS, GateConfig, HookEntry, Task, load_config
from .context import GateContext
from .globs import is_source_file
from .reviewer import DEFAULT_REVIEW_TIMEOUT, Reviewer
from .runner import DEFAULT_SCRIPT_TIMEOUT, CheckResult, CheckRunner
from .scheduler import Scheduler

LOGGER = logging.getLogger(__name__)

DISABLE_ENV = "DONEGATE_DISABLED"


class EventDescriptor(BaseModel):
    """Lifecycle event payload as delivered by the agent host (or a git hook)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    hook_event_name: str = ""
    cwd: Optional[str] = None
    session_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Dict[str, Any] = Field(default_factory=dict)
    source: Optional[str] = None
    test_output: Optional[str] = None
    session_diff: Optional[str] = None

    def host_variables(self) -> Dict[str, Optional[str]]:
        values: Dict[str, Optional[str]] = {}
        if self.test_output is not None:
            values["test_output"] = self.test_output
        if self.session_diff is not None:
            values["session_diff"] = self.session_diff
        return values


@dataclass(slots=True)
class GateOutcome:
    """Aggregated results of one dispatch."""

    event: str
    matched: bool = False
    results: List[CheckResult] = field(default_factory=list)

    @property
    def failures(self) -> List[CheckResult]:
        return [result for result in self.results if result.blocking]

    @property
    def blocked(self) -> bool:
        return bool(self.failures)

    def messages(self) -> List[str]:
        """Reasons worth echoing on success; cached passes are noise."""
        return [
            result.reason or result.output
            for result in self.results
            if not result.blocking and (result.reason or result.output) and not result.reason.startswith("cached")
        ]


def _tool_matches(matcher: str, tool_name: str) -> bool:
    for alternative in matcher.split("|"):
        alternative = alternative.strip()
        if not alternative:
            continue
        try:
            if re.fullmatch(alternative, tool_name):
                return True
        except re.error:
            if alternative == tool_name:
                return True
    return False


def matches_entry(entry: HookEntry, event: str, descriptor: EventDescriptor) -> bool:
    """Return whether ``entry`` applies to this event and payload."""
    expected_type = "git" if event in GIT_EVENTS else "agent"
    if entry.type != expected_type or entry.event != event:
        return False
    if event == "SessionStart" and entry.source:
        if (descriptor.source or "") not in entry.source.split("|"):
            return False
    if event == "PreToolUse" and entry.matcher:
        if not _tool_matches(entry.matcher, descriptor.tool_name or ""):
            return False
    if event == "PreToolUse" and entry.triggers:
        command = str(descriptor.tool_input.get("command") or "")
        found = False
        for pattern in entry.triggers:
            try:
                if re.search(pattern, command, re.IGNORECASE):
                    found = True
                    break
            except re.error:
                LOGGER.warning("Ignoring invalid trigger pattern %r", pattern)
        if not found:
            return False
    return True


class Dispatcher:
    """Run the matching hook entries for one :class:`GateContext`."""

    def __init__(self, context: GateContext, *, reviewer_factory: Callable[..., Reviewer] = Reviewer) -> None:
        self.context = context
        self.scheduler = Scheduler(context)
        self.runner = CheckRunner(context, reviewer_factory=reviewer_factory)
        self.arbiter = AppealArbiter(context, reviewer_factory=reviewer_factory)
        self._host_test_output = "test_output" in context.variables

    # ------------------------------------------------------------ bookkeeping
    def record_tool_use(self) -> None:
        """Count lines written by a file-editing tool and remember the edit for this turn."""
        context = self.context
        tool_name = context.tool_name
        if not tool_name or tool_name not in context.config.file_editing_tools:
            return
        file_path = context.tool_input.get("file_path") or context.tool_input.get("notebook_path")
        if not isinstance(file_path, str) or not file_path:
            return
        if not is_source_file(file_path, context.root_dir, context.sources):
            return
        written = count_written_lines(tool_name, context.tool_input)
        if written > 0:
            context.churn.increment_gross(written)
        context.session.record_edit(tool_name, file_path)

    def settle(self, task: Task, result: CheckResult) -> CheckResult:
        """Escalate, advance and reset state for a finished task."""
        context = self.context
        if result.blocking and task.type == "script":
            result = self.arbiter.handle_failure(task, result)
        passed = not result.blocking
        self.scheduler.advance(task, passed)
        if passed:
            context.session.reset_failures(task.name)
            self.arbiter.clean_backchannel(task.name)
        if result.output and not self._host_test_output:
            context.variables["test_output"] = result.output
        return result

    def skip(self, task: Task, reason: str, *, journal: bool = True) -> None:
        """A skipped task ends its failure streak and any open appeal."""
        context = self.context
        if journal:
            context.journal.record(task.name, "SKIP", reason, hook_event=context.event)
        context.session.reset_failures(task.name)
        self.arbiter.clean_backchannel(task.name)

    def collect_async(self, outcome: GateOutcome) -> None:
        for task, result in collect_results(self.context):
            outcome.matched = True
            if task is not None:
                result = self.settle(task, result)
            outcome.results.append(result)

    # --------------------------------------------------------------- dispatch
    def run(self, entries: List[HookEntry]) -> GateOutcome:
        context = self.context
        outcome = GateOutcome(event=context.event, matched=bool(entries))
        if context.event == "PreToolUse":
            self.record_tool_use()
        if context.event == "Stop" and context.session_id:
            self.collect_async(outcome)

        pending: List[Tuple[Task, AsyncHandle]] = []
        for entry in entries:
            first_fail = entry.effective_mode() == "first-fail"
            for task in entry.tasks:
                if not task.enabled:
                    continue
                if context.session.is_suspended(task.name):
                    self.skip(task, "suspended for this session")
                    continue
                decision = self.scheduler.should_run(task)
                if not decision:
                    self.skip(task, decision.reason, journal=not task.quiet)
                    continue
                fire_and_forget = bool(task.async_ and context.session_id)
                if fire_and_forget or task.parallel:
                    handle = spawn(task, context)
                    if handle is not None:
                        if not fire_and_forget:
                            pending.append((task, handle))
                        continue
                result = self.settle(task, self.runner.run(task))
                outcome.results.append(result)
                if result.blocking and first_fail:
                    break

        for task, handle in pending:
            default = DEFAULT_SCRIPT_TIMEOUT if task.type == "script" else DEFAULT_REVIEW_TIMEOUT
            outcome.results.append(self.settle(task, wait_for(handle, task.timeout or default)))

        if context.event == "Stop" and not outcome.blocked:
            context.session.clear_signal()
            context.session.reset_turn()
        return outcome


def dispatch(
    event: str,
    descriptor: EventDescriptor,
    *,
    project_dir: Path | str | None = None,
    config: GateConfig | None = None,
    state_dir: Path | None = None,
    reviewer_factory: Callable[..., Reviewer] = Reviewer,
) -> GateOutcome:
    """Handle one lifecycle event end to end.

    Raises :class:`~donegate.config.ConfigError` when the configuration cannot
    be loaded; the caller reports it verbatim.
    """
    hook_event = descriptor.hook_event_name or event
    if os.getenv(DISABLE_ENV):
        LOGGER.debug("%s set; skipping %s", DISABLE_ENV, hook_event)
        return GateOutcome(event=hook_event)

    directory = Path(project_dir or descriptor.cwd or Path.cwd())
    effective = config if config is not None else load_config(directory)
    if not effective.enabled or effective.is_ignored(directory):
        return GateOutcome(event=hook_event)

    session_id = descriptor.session_id if hook_event not in GIT_EVENTS else None
    context = GateContext.build(
        event=hook_event,
        project_dir=directory,
        config=effective,
        session_id=session_id,
        tool_name=descriptor.tool_name,
        tool_input=descriptor.tool_input,
        variables=descriptor.host_variables(),
        state_dir=state_dir,
    )
    entries = [entry for entry in effective.hooks if matches_entry(entry, hook_event, descriptor)]
    return Dispatcher(context, reviewer_factory=reviewer_factory).run(entries)


__all__ = [
    "Dispatcher",
    "EventDescriptor",
    "GateOutcome",
    "dispatch",
    "matches_entry",
]
