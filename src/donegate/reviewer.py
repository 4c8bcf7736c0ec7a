"""Invoke the external LLM reviewer CLI and turn its transcript into a verdict.

The reviewer is any command that reads a prompt on stdin and writes its
answer to stdout (``claude -p`` by default).  Every invocation carries the
recursion guards so the reviewer's own tool calls never re-enter the gate.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Dict, Mapping, Sequence

from .config import GateConfig, Task
from .prompts import render_classifier_prompt, render_review_prompt
from .verdict import Verdict, VerdictParser

LOGGER = logging.getLogger(__name__)

DEFAULT_REVIEWER_COMMAND = "claude -p"
DEFAULT_REVIEW_TIMEOUT = 120.0
CLASSIFIER_MODEL = "haiku"
CLASSIFIER_TIMEOUT = 60.0

# Reviewers launched from a blocking per-tool gate must be fast.
EVENT_DEFAULT_MODELS: Dict[str, str] = {"PreToolUse": "haiku"}

GUARD_ENV: Dict[str, str] = {"DONEGATE_DISABLED": "1", "DONEGATE_SKIP_NOTIFY": "1"}


class ReviewerUnavailable(RuntimeError):
    """The reviewer executable cannot be found or started."""


class ReviewerFailed(RuntimeError):
    """The reviewer crashed, exited non-zero without output, or timed out."""


def resolve_model(task: Task | None, config: GateConfig | None, event: str | None) -> str | None:
    """Pick the reviewer model: task, then config, then the event default."""
    if task is not None and task.model:
        return task.model
    if config is not None and config.model:
        return config.model
    return EVENT_DEFAULT_MODELS.get(event or "")


def guarded_env(extra: Mapping[str, str] | None = None) -> Dict[str, str]:
    """Return the process environment with ``extra`` applied and guards forced on top."""
    env = dict(os.environ)
    env.update(extra or {})
    env.update(GUARD_ENV)
    return env


class Reviewer:
    """Subprocess wrapper around one reviewer command line."""

    def __init__(
        self,
        command: str | Sequence[str] | None = None,
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if command is None or (isinstance(command, str) and not command.strip()):
            command = DEFAULT_REVIEWER_COMMAND
        self.argv = shlex.split(command) if isinstance(command, str) else list(command)
        self.cwd = cwd
        self.env = dict(env or {})

    @property
    def binary(self) -> str:
        return self.argv[0] if self.argv else "reviewer"

    def available(self) -> bool:
        return bool(self.argv) and shutil.which(self.binary) is not None

    def invoke(self, prompt: str, *, model: str | None = None, timeout: float | None = None) -> str:
        """Run the reviewer with ``prompt`` on stdin and return its response text."""
        if not self.available():
            raise ReviewerUnavailable(f"{self.binary} not found")
        args = list(self.argv)
        if model:
            args.extend(["--model", model])
        limit = timeout or DEFAULT_REVIEW_TIMEOUT
        try:
            process = subprocess.run(  # noqa: S603  # reviewer command comes from gate config
                args,
                input=prompt,
                cwd=self.cwd,
                env=guarded_env(self.env),
                capture_output=True,
                text=True,
                timeout=limit,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            raise ReviewerFailed(f"reviewer timed out after {limit:.0f}s") from error
        except OSError as error:
            raise ReviewerUnavailable(f"{self.binary} could not be started: {error}") from error

        stdout = (process.stdout or "").strip()
        stderr = (process.stderr or "").strip()
        if process.returncode != 0:
            detail = stderr or stdout
            suffix = f": {detail}" if detail else " with no output"
            raise ReviewerFailed(f"reviewer exited {process.returncode}{suffix} [prompt: {len(prompt)} chars]")
        # Some reviewer CLIs answer on stderr.
        return stdout or stderr

    def classify(self, transcript: str) -> str | None:
        """Ask a fast model for a one-word verdict label; ``None`` when it cannot answer."""
        try:
            answer = self.invoke(
                render_classifier_prompt(transcript),
                model=CLASSIFIER_MODEL,
                timeout=CLASSIFIER_TIMEOUT,
            )
        except (ReviewerUnavailable, ReviewerFailed) as error:
            LOGGER.debug("Verdict classifier unavailable: %s", error)
            return None
        words = answer.split()
        return words[0] if words else None

    def parser(self) -> VerdictParser:
        return VerdictParser(self.classify)

    def review(self, prompt: str, *, model: str | None = None, timeout: float | None = None) -> Verdict:
        """Run a wrapped review prompt and parse the transcript.

        Raises :class:`ReviewerUnavailable`, :class:`ReviewerFailed` or
        :class:`~donegate.verdict.VerdictError`.
        """
        transcript = self.invoke(render_review_prompt(prompt), model=model, timeout=timeout)
        return self.parser().parse(transcript)

    def adjudicate(self, prompt: str, *, model: str | None = None, timeout: float | None = None) -> Verdict:
        """Run an already complete prompt (no review wrapper) and parse the answer."""
        transcript = self.invoke(prompt, model=model, timeout=timeout)
        return self.parser().parse(transcript)


__all__ = [
    "CLASSIFIER_MODEL",
    "DEFAULT_REVIEWER_COMMAND",
    "EVENT_DEFAULT_MODELS",
    "GUARD_ENV",
    "Reviewer",
    "ReviewerFailed",
    "ReviewerUnavailable",
    "guarded_env",
    "resolve_model",
]
