"""Render a :class:`~donegate.dispatcher.GateOutcome` in the host's hook format."""

from __future__ import annotations

import json
from dataclasses import dataclass

from .config import GIT_EVENTS
from .dispatcher import GateOutcome

PREFIX = "donegate"


@dataclass(slots=True)
class HookResponse:
    """What the hook process writes and how it exits."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


def pass_decision(event: str) -> str:
    return "approve" if event == "Stop" else "allow"


def fail_decision(event: str) -> str:
    return "block" if event == "Stop" else "deny"


def decision_response(event: str, decision: str, reason: str) -> HookResponse:
    """Encode one decision for ``event``."""
    if event == "PreToolUse":
        payload = {
            "hookSpecificOutput": {
                "hookEventName": "PreToolUse",
                "permissionDecision": decision,
                "permissionDecisionReason": reason or "",
            }
        }
        return HookResponse(stdout=json.dumps(payload))
    if event == "Stop":
        return HookResponse(stdout=json.dumps({"decision": decision, "reason": reason or ""}))
    return HookResponse(stdout=reason or "")


def render(outcome: GateOutcome) -> HookResponse:
    event = outcome.event
    if event in GIT_EVENTS:
        failures = outcome.failures
        if not failures:
            return HookResponse()
        lines = [f"{PREFIX}: git hook checks failed:", ""]
        lines.extend(f"  {result.name}: {result.reason}\n" for result in failures)
        return HookResponse(stderr="\n".join(lines), exit_code=1)

    if event == "SessionStart":
        texts = [result.reason for result in outcome.results if result.reason]
        return HookResponse(stdout="\n".join(texts))

    if not outcome.matched:
        return HookResponse()

    failures = outcome.failures
    if failures:
        first = failures[0]
        return decision_response(event, fail_decision(event), f"{PREFIX}: {first.name} failed.\n\n{first.reason}")
    summary = "\n".join(outcome.messages()) or "all checks passed"
    return decision_response(event, pass_decision(event), f"{PREFIX}: {summary}")


def render_error(event: str, message: str) -> HookResponse:
    """Fail closed when the gate itself cannot run (bad input, bad config)."""
    text = f"{PREFIX}: {message}"
    if event in GIT_EVENTS:
        return HookResponse(stderr=text + "\n", exit_code=1)
    if event == "SessionStart":
        return HookResponse(stdout=text)
    return decision_response(event, fail_decision(event), text)


__all__ = [
    "HookResponse",
    "decision_response",
    "fail_decision",
    "pass_decision",
    "render",
    "render_error",
]
