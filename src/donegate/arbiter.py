"""Escalation for script tasks that keep failing within one session.

A task moves from *normal* to *warned* when its consecutive failure count
reaches :data:`APPEAL_THRESHOLD`; at that point a backchannel README is
written for the agent to contest the failure.  On later failures, an appeal
written into the README below its quoted failure is sent to an arbiter reviewer.
The arbiter can suspend the task for the rest of the session; anything short
of a clear PASS or SKIP keeps the original failure in place.
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import Callable

from .config import CONFIG_DIR_NAME, Task
from .context import GateContext
from .prompts import BACKCHANNEL_INSTRUCTIONS, render_arbiter_prompt, render_backchannel
from .reviewer import Reviewer, ReviewerFailed, ReviewerUnavailable
from .runner import CheckResult
from .utils.slug import sanitize_name
from .verdict import VerdictError

LOGGER = logging.getLogger(__name__)

APPEAL_THRESHOLD = 5
ARBITER_MODEL = "haiku"
BACKCHANNEL_DIR_NAME = "backchannel"
README_NAME = "README.md"

_SEPARATOR = re.compile(r"^---[ \t]*$", re.MULTILINE)
_BOILERPLATE_LINES = frozenset(line.strip() for line in BACKCHANNEL_INSTRUCTIONS.splitlines() if line.strip())


def backchannel_dir(root_dir: Path, session_id: str, task_name: str) -> Path:
    return (
        Path(root_dir)
        / CONFIG_DIR_NAME
        / BACKCHANNEL_DIR_NAME
        / sanitize_name(session_id, fallback="session")
        / sanitize_name(task_name)
    )


def extract_appeal_text(content: str | None) -> str | None:
    """Return what the agent wrote after the quoted failure, minus the README's own instructions.

    The appeal may sit under the marker line or below the closing ``---``;
    only lines that are not part of the rendered boilerplate count.
    """
    if not content:
        return None
    parts = _SEPARATOR.split(content, maxsplit=1)
    if len(parts) < 2:
        return None
    lines = [
        line
        for line in parts[1].splitlines()
        if not _SEPARATOR.match(line) and line.strip() not in _BOILERPLATE_LINES
    ]
    text = "\n".join(lines).strip()
    return text or None


class AppealArbiter:
    """Count failures, open the backchannel and adjudicate appeals for one context."""

    def __init__(
        self,
        context: GateContext,
        *,
        reviewer_factory: Callable[..., Reviewer] = Reviewer,
        threshold: int = APPEAL_THRESHOLD,
    ) -> None:
        self.context = context
        self.reviewer_factory = reviewer_factory
        self.threshold = threshold

    def readme_path(self, task_name: str) -> Path | None:
        session_id = self.context.session_id
        if not session_id:
            return None
        return backchannel_dir(self.context.root_dir, session_id, task_name) / README_NAME

    # ---------------------------------------------------------- backchannel
    def create_backchannel(self, task: Task, failures: int, failure_reason: str) -> Path | None:
        """Write the appeal README unless one already exists."""
        path = self.readme_path(task.name)
        if path is None:
            return None
        if path.exists():
            return path
        content = render_backchannel(
            task_name=task.name,
            command=task.command or "",
            failures=failures,
            failure_reason=failure_reason,
        )
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as error:
            LOGGER.warning("Failed to create backchannel %s: %s", path, error)
            return None
        return path

    def read_backchannel(self, task_name: str) -> str | None:
        path = self.readme_path(task_name)
        if path is None:
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError:
            return None

    def clean_backchannel(self, task_name: str) -> None:
        path = self.readme_path(task_name)
        if path is None or not path.parent.exists():
            return
        try:
            shutil.rmtree(path.parent)
        except OSError as error:
            LOGGER.warning("Failed to remove backchannel %s: %s", path.parent, error)

    def _hint(self, task_name: str, failures: int) -> str:
        return (
            f"\n\nThis task has failed {failures} consecutive times. You may appeal this failure.\n"
            f"To appeal, write your reasoning in:\n{self.readme_path(task_name)}"
        )

    # ------------------------------------------------------------ escalation
    def handle_failure(self, task: Task, result: CheckResult) -> CheckResult:
        """Record a script failure and return the (possibly excused) result."""
        context = self.context
        if not context.session_id:
            return result

        failures = context.session.record_failure(task.name)
        if failures < self.threshold:
            return result

        if failures == self.threshold:
            self.create_backchannel(task, failures, result.reason)
            result.reason += self._hint(task.name, failures)
            return result

        appeal = extract_appeal_text(self.read_backchannel(task.name))
        if appeal is None:
            result.reason += self._hint(task.name, failures)
            return result

        context.journal.record(
            task.name,
            "APPEAL",
            "appealed via backchannel",
            hook_event=context.event,
            extra={"appeal": appeal, "failures": failures},
        )
        prompt = render_arbiter_prompt(
            command=task.command or "",
            failures=failures,
            output=result.output,
            appeal=appeal,
        )
        reviewer = self.reviewer_factory(None, cwd=context.root_dir, env=context.config.task_env)
        try:
            verdict = reviewer.adjudicate(prompt, model=ARBITER_MODEL)
        except (ReviewerUnavailable, ReviewerFailed, VerdictError) as error:
            context.journal.record(task.name, "BOOM", f"arbiter error: {error}", hook_event=context.event)
            result.reason += f"\n\nAppeal could not be evaluated ({error}); the failure stands."
            return result

        if verdict.passed or verdict.skip:
            context.journal.record(
                task.name,
                verdict.label,  # type: ignore[arg-type]
                f"arbiter: {verdict.reason}",
                hook_event=context.event,
                extra={"failures": failures},
            )
            context.session.suspend(task.name)
            context.session.reset_failures(task.name)
            self.clean_backchannel(task.name)
            return CheckResult.skip(
                task.name,
                f"{task.name} suspended by arbiter: {verdict.reason}",
                output=result.output,
            )

        context.journal.record(
            task.name,
            "FAIL",
            f"arbiter denied appeal: {verdict.reason}",
            hook_event=context.event,
            extra={"failures": failures},
        )
        result.reason += f"\n\nAppeal denied by arbiter: {verdict.reason}"
        return result


__all__ = [
    "APPEAL_THRESHOLD",
    "ARBITER_MODEL",
    "AppealArbiter",
    "backchannel_dir",
    "extract_appeal_text",
]
