"""Append-only JSONL audit trail of task state transitions.

Each line is one JSON object.  Entries are never rewritten; readers scan
forward and take the last matching entry.  Session runs write to
``<state-home>/sessions/<session>.jsonl``; sessionless runs (git hooks) write
to ``_project_<hash>.jsonl`` keyed by the project directory.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, List, Literal, Mapping, Optional, Sequence

from .session import sessions_dir
from .utils.slug import sanitize_name

LOGGER = logging.getLogger(__name__)

Status = Literal["RUNNING", "PASS", "FAIL", "SKIP", "BOOM", "APPEAL", "DONE"]


def project_log_name(project_dir: Path | str) -> str:
    digest = hashlib.sha256(str(project_dir).encode("utf-8")).hexdigest()[:12]
    return f"_project_{digest}.jsonl"


@dataclass(slots=True)
class JournalEntry:
    """One recorded transition."""

    at: float
    task: str
    status: str
    reason: str | None = None
    duration_ms: int | None = None
    hook_event: str | None = None
    session_id: str | None = None
    project_dir: str | None = None
    extra: Optional[Mapping[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "at": self.at,
            "task": self.task,
            "status": self.status,
            "reason": self.reason,
            "session_id": self.session_id,
            "project_dir": self.project_dir,
        }
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        if self.hook_event:
            payload["hook_event"] = self.hook_event
        if self.extra:
            for key, value in self.extra.items():
                payload.setdefault(key, value)
        return payload


class Journal:
    """Writer/reader for one session's (or one project's) audit log."""

    def __init__(
        self,
        session_id: str | None,
        project_dir: Path | str | None,
        *,
        base_dir: Path | None = None,
    ) -> None:
        self.session_id = session_id
        self.project_dir = str(project_dir) if project_dir is not None else None
        self.base_dir = base_dir or sessions_dir()

    @property
    def path(self) -> Path:
        if self.session_id:
            return self.base_dir / f"{sanitize_name(self.session_id)}.jsonl"
        return self.base_dir / project_log_name(self.project_dir or "")

    def record(
        self,
        task: str,
        status: Status,
        reason: str | None = None,
        *,
        duration_ms: int | None = None,
        hook_event: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> JournalEntry:
        """Append one entry; write failures are logged and swallowed."""
        entry = JournalEntry(
            at=time.time(),
            task=task,
            status=status,
            reason=reason or None,
            duration_ms=duration_ms,
            hook_event=hook_event,
            session_id=self.session_id,
            project_dir=self.project_dir,
            extra=extra,
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), default=str) + "\n")
        except OSError as error:
            LOGGER.warning("Failed to append journal entry to %s: %s", self.path, error)
        return entry

    def entries(self) -> Iterator[dict[str, Any]]:
        """Yield recorded entries in write order, skipping unreadable lines."""
        try:
            handle = self.path.open("r", encoding="utf-8")
        except OSError:
            return
        with handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict):
                    yield payload

    def last(self, task: str, statuses: Sequence[str] | None = None) -> dict[str, Any] | None:
        """Return the latest entry for ``task``, optionally restricted to ``statuses``."""
        latest: dict[str, Any] | None = None
        for payload in self.entries():
            if payload.get("task") != task:
                continue
            if statuses is not None and payload.get("status") not in statuses:
                continue
            latest = payload
        return latest

    def statuses(self, task: str) -> List[str]:
        return [str(payload.get("status")) for payload in self.entries() if payload.get("task") == task]


__all__ = ["Journal", "JournalEntry", "Status", "project_log_name"]
