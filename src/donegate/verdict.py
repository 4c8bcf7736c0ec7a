"""Reduce free-text reviewer transcripts to PASS / FAIL / SKIP verdicts.

Parsing is two-tiered.  :func:`parse_verdict` is a pure scan for the first
line that starts with a verdict token once markdown emphasis, heading and
bullet markup are stripped.  When no such line exists, :class:`VerdictParser` asks a
cheap classifier to label the transcript in one word before giving up.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional

NO_RATIONALE = "<<Reviewer provided no rationale>>"

_LEADING_MARKUP = re.compile(r"^[\s#*_>-]+")
_VERDICT_LINE = re.compile(r"^(PASS|FAIL|SKIP)(?![A-Za-z0-9])[*_]*\s*(?::[*_]*)?\s*(.*)$")
_REASON_EDGES = "*_ \t-–—:"

Classifier = Callable[[str], Optional[str]]


class VerdictError(RuntimeError):
    """Raised when neither parsing tier can extract a verdict."""


@dataclass(slots=True)
class Verdict:
    """Trinary outcome of a review; ``passed`` is ``None`` for SKIP."""

    passed: bool | None
    skip: bool = False
    reason: str = ""
    body: str | None = None

    @property
    def label(self) -> str:
        if self.skip:
            return "SKIP"
        return "PASS" if self.passed else "FAIL"

    @classmethod
    def from_label(cls, label: str, reason: str, body: str | None = None) -> "Verdict":
        if label == "PASS":
            return cls(passed=True, reason=reason, body=body)
        if label == "FAIL":
            return cls(passed=False, reason=reason, body=body)
        if label == "SKIP":
            return cls(passed=None, skip=True, reason=reason, body=body)
        raise ValueError(f"Unknown verdict label: {label}")


def _match_line(line: str) -> tuple[str, str] | None:
    stripped = _LEADING_MARKUP.sub("", line).rstrip()
    match = _VERDICT_LINE.match(stripped)
    if not match:
        return None
    return match.group(1), match.group(2).strip(_REASON_EDGES)


def parse_verdict(text: str | None) -> Verdict | None:
    """Return the verdict carried by the first verdict line of ``text``, if any."""
    if not text:
        return None
    lines = text.splitlines()
    for index, line in enumerate(lines):
        if not line.strip():
            continue
        matched = _match_line(line)
        if matched is None:
            continue
        label, reason = matched
        body = "\n".join(lines[index + 1 :]).strip() or None
        if not reason:
            reason = body or NO_RATIONALE
        return Verdict.from_label(label, reason, body)
    return None


def first_line(text: str | None) -> str:
    for line in (text or "").splitlines():
        if line.strip():
            return line.strip()
    return ""


class VerdictParser:
    """Compose the pure parser with an optional fallback classifier."""

    def __init__(self, classifier: Classifier | None = None) -> None:
        self.classifier = classifier

    def parse(self, text: str | None) -> Verdict:
        if not text or not text.strip():
            raise VerdictError("No output from reviewer")

        verdict = parse_verdict(text)
        if verdict is not None:
            return verdict

        headline = first_line(text)
        if self.classifier is not None:
            label = self.classifier(text)
            matched = _match_line((label or "").strip().upper())
            if matched is not None:
                return Verdict.from_label(matched[0], headline or NO_RATIONALE)
        raise VerdictError(f"Unexpected reviewer output: {headline}")


__all__ = [
    "Classifier",
    "NO_RATIONALE",
    "Verdict",
    "VerdictError",
    "VerdictParser",
    "first_line",
    "parse_verdict",
]
