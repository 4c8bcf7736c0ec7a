"""Execute script and reviewer tasks and normalise their outcome.

Both task types produce a :class:`CheckResult`.  Failures are values, never
exceptions: a missing reviewer or a crashed subprocess is folded into the
result with a reason the operator can act on.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping

from .config import Task
from .context import GateContext
from .globs import latest_mtime
from .prompts import BUILTIN_PROMPTS
from .reviewer import DEFAULT_REVIEW_TIMEOUT, GUARD_ENV, Reviewer, ReviewerFailed, ReviewerUnavailable, resolve_model
from .template import referenced_vars, render, session_vars, unknown_vars, unresolved_vars
from .variables import collect_variables
from .verdict import VerdictError

LOGGER = logging.getLogger(__name__)

DEFAULT_SCRIPT_TIMEOUT = 60.0
SCRIPT_DIR_PREFIXES = ("./script/", "./scripts/")
CACHED_PASS_REASON = "cached pass (no code changes)"


@dataclass(slots=True)
class CheckResult:
    """Normalised outcome of one task run."""

    name: str
    passed: bool
    reason: str = ""
    output: str = ""
    skipped: bool = False
    body: str | None = None
    duration_ms: int | None = None

    @property
    def status(self) -> str:
        if self.skipped:
            return "SKIP"
        return "PASS" if self.passed else "FAIL"

    @property
    def blocking(self) -> bool:
        return not self.passed and not self.skipped

    @classmethod
    def skip(cls, name: str, reason: str, *, output: str = "") -> "CheckResult":
        return cls(name=name, passed=True, reason=reason, output=output, skipped=True)

    @classmethod
    def fail(cls, name: str, reason: str, *, output: str = "") -> "CheckResult":
        return cls(name=name, passed=False, reason=reason, output=output)

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "passed": self.passed,
            "reason": self.reason,
            "output": self.output,
            "skipped": self.skipped,
            "body": self.body,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "CheckResult":
        duration = payload.get("duration_ms")
        body = payload.get("body")
        return cls(
            name=str(payload.get("name") or ""),
            passed=bool(payload.get("passed")),
            reason=str(payload.get("reason") or ""),
            output=str(payload.get("output") or ""),
            skipped=bool(payload.get("skipped")),
            body=str(body) if body is not None else None,
            duration_ms=int(duration) if isinstance(duration, (int, float)) else None,
        )


@dataclass(slots=True)
class CommandOutcome:
    exit_code: int | None
    output: str
    timed_out: bool
    seconds: float


def run_command(command: str, *, cwd: Path, env: Mapping[str, str], timeout: float) -> CommandOutcome:
    """Run a shell command with merged output, killing its process group on timeout."""
    started = time.monotonic()
    process = subprocess.Popen(  # noqa: S602  # command is sourced from gate config
        command,
        shell=True,
        cwd=cwd,
        env=dict(env),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        start_new_session=True,
    )
    try:
        output, _ = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except OSError:
            process.kill()
        output, _ = process.communicate()
        return CommandOutcome(None, output or "", True, time.monotonic() - started)
    return CommandOutcome(process.returncode, output or "", False, time.monotonic() - started)


def truncate_tail(text: str, limit: int) -> str:
    """Keep the last ``limit`` characters, where failures usually report."""
    if limit <= 0 or len(text) <= limit:
        return text
    return f"... (truncated {len(text) - limit} chars)\n" + text[-limit:]


class CheckRunner:
    """Run tasks for one :class:`GateContext` and journal every transition."""

    def __init__(self, context: GateContext, *, reviewer_factory: Callable[..., Reviewer] = Reviewer) -> None:
        self.context = context
        self.reviewer_factory = reviewer_factory

    def run(self, task: Task) -> CheckResult:
        context = self.context
        if not task.quiet:
            context.journal.record(task.name, "RUNNING", hook_event=context.event)
        started = time.monotonic()
        if task.type == "script":
            result = self.run_script(task)
        else:
            result = self.run_agent(task)
        if result.duration_ms is None:
            result.duration_ms = int((time.monotonic() - started) * 1000)
        if result.blocking or not task.quiet:
            context.journal.record(
                task.name,
                result.status,  # type: ignore[arg-type]
                result.reason,
                duration_ms=result.duration_ms,
                hook_event=context.event,
            )
        return result

    def task_env(self) -> Dict[str, str]:
        env = dict(self.context.env)
        env.update(self.context.config.task_env)
        env.update(GUARD_ENV)
        return env

    # ------------------------------------------------------------- scripts
    def run_script(self, task: Task) -> CheckResult:
        context = self.context
        command = (task.command or "").strip()
        if not command:
            return CheckResult.fail(task.name, f"{task.name}: script task has no command")

        if command.startswith(SCRIPT_DIR_PREFIXES):
            script_path = context.project_dir / command.split()[0]
            if not script_path.exists():
                return CheckResult.fail(task.name, f"Script not found: {command}")

        if task.mtime and self._cached_pass(task):
            return CheckResult.skip(task.name, CACHED_PASS_REASON)

        timeout = task.timeout or DEFAULT_SCRIPT_TIMEOUT
        try:
            outcome = run_command(command, cwd=context.project_dir, env=self.task_env(), timeout=timeout)
        except OSError as error:
            return CheckResult.fail(task.name, f"{command} could not be started: {error}")

        output = truncate_tail(outcome.output.strip(), context.config.max_output_chars)
        duration_ms = int(outcome.seconds * 1000)
        if outcome.timed_out:
            result = CheckResult.fail(
                task.name,
                f"{command} timed out after {timeout:.0f}s\n\n{output or '(no output)'}",
                output=output,
            )
        elif outcome.exit_code == 0:
            result = CheckResult(task.name, True, f"{command} passed ({outcome.seconds:.1f}s)", output=output)
        else:
            result = CheckResult.fail(
                task.name,
                f"{command} failed (exit {outcome.exit_code}, {outcome.seconds:.1f}s)\n\n{output or '(no output)'}",
                output=output,
            )
        result.duration_ms = duration_ms
        return result

    def _cached_pass(self, task: Task) -> bool:
        last = self.context.journal.last(task.name, statuses=("PASS", "FAIL"))
        if not last or last.get("status") != "PASS":
            return False
        at = last.get("at")
        if not isinstance(at, (int, float)):
            return False
        newest = latest_mtime(self.context.root_dir, self.context.sources)
        return newest > 0 and float(at) > newest

    # -------------------------------------------------------------- agents
    def resolve_prompt(self, task: Task) -> tuple[str | None, CheckResult | None]:
        """Return the rendered prompt or the result that explains why there is none."""
        context = self.context
        template = task.prompt
        if task.prompt_type == "reference":
            template = BUILTIN_PROMPTS.get(task.prompt or "")
            if template is None:
                return None, CheckResult.fail(task.name, f'unknown prompt reference "{task.prompt}"')

        unknown = unknown_vars(template)
        if unknown:
            listed = ", ".join(f"{{{{{name}}}}}" for name in unknown)
            return None, CheckResult.fail(task.name, f"unknown template variable(s): {listed}")

        scoped = session_vars(template)
        if scoped and not context.session_id:
            listed = ", ".join(f"{{{{{name}}}}}" for name in scoped)
            return None, CheckResult.fail(
                task.name,
                f"{listed} require an agent session but session_id is missing (git hooks have no session)",
            )

        variables = collect_variables(context, task, referenced_vars(template))
        missing = unresolved_vars(template, variables)
        if missing:
            listed = ", ".join(f"{{{{{name}}}}}" for name in missing)
            return None, CheckResult.fail(task.name, f"{listed} could not be resolved for this session")

        rendered = render(template, variables)
        if not rendered.strip():
            return None, CheckResult.skip(task.name, "empty prompt - skipped")
        return rendered, None

    def run_agent(self, task: Task) -> CheckResult:
        context = self.context
        prompt, early = self.resolve_prompt(task)
        if early is not None:
            return early
        if prompt is None:
            return CheckResult.skip(task.name, "empty prompt - skipped")

        reviewer = self.reviewer_factory(task.command, cwd=context.root_dir, env=context.config.task_env)
        model = resolve_model(task, context.config, context.event)
        try:
            verdict = reviewer.review(prompt, model=model, timeout=task.timeout or DEFAULT_REVIEW_TIMEOUT)
        except ReviewerUnavailable:
            return CheckResult.skip(task.name, f"⚠ {task.name}: {reviewer.binary} not found")
        except (ReviewerFailed, VerdictError) as error:
            if task.model:
                return CheckResult.fail(task.name, f"{task.name} reviewer failed: {error}")
            return CheckResult.skip(task.name, f"⚠ {task.name} crashed: {error}")

        if verdict.skip:
            return CheckResult(task.name, True, verdict.reason, skipped=True, body=verdict.body)
        return CheckResult(task.name, bool(verdict.passed), verdict.reason, body=verdict.body)


__all__ = [
    "CACHED_PASS_REASON",
    "CheckResult",
    "CheckRunner",
    "CommandOutcome",
    "DEFAULT_SCRIPT_TIMEOUT",
    "run_command",
    "truncate_tail",
]
