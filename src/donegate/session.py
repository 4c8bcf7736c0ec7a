"""Per-session state: failure streaks, suspensions, signals and turn edits.

One JSON document per session id lives at ``<state-home>/sessions/<id>.json``.
Writes are read-modify-write without locking: a lost update under a true race
degrades gating precision but never corrupts the file, because every write
goes through a temporary file and an atomic rename.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import state_home
from .utils.slug import sanitize_name

LOGGER = logging.getLogger(__name__)

SignalType = Literal["done", "stuck", "idle"]
VALID_SIGNALS: tuple[str, ...] = ("done", "stuck", "idle")


class Signal(BaseModel):
    """A session-level declaration by the agent (e.g. "I am done")."""

    model_config = ConfigDict(populate_by_name=True)

    type: SignalType
    message: Optional[str] = None
    at: float = Field(default_factory=time.time)


class TurnEdits(BaseModel):
    """Tools and files used for edits since the last completed turn."""

    tools: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)


class SessionState(BaseModel):
    """Mutable record for one agent session; unknown keys belong to collaborators."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    successive_failures: Dict[str, int] = Field(default_factory=dict, alias="successiveFailures")
    suspended: List[str] = Field(default_factory=list)
    signal: Optional[Signal] = None
    turn_edits: Optional[TurnEdits] = Field(default=None, alias="turnEdits")


def sessions_dir() -> Path:
    return state_home() / "sessions"


class SessionStore:
    """Load and save :class:`SessionState` records for one session id."""

    def __init__(self, session_id: str | None, *, base_dir: Path | None = None) -> None:
        self.session_id = session_id
        self.base_dir = base_dir or sessions_dir()

    @property
    def path(self) -> Path | None:
        if not self.session_id:
            return None
        return self.base_dir / f"{sanitize_name(self.session_id)}.json"

    @property
    def async_dir(self) -> Path | None:
        if not self.session_id:
            return None
        return self.base_dir / sanitize_name(self.session_id) / "async"

    def load(self) -> SessionState:
        path = self.path
        if path is None or not path.exists():
            return SessionState()
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            LOGGER.warning("Ignoring unreadable session state %s: %s", path, error)
            return SessionState()
        if not isinstance(payload, dict):
            return SessionState()
        try:
            return SessionState.model_validate(payload)
        except ValidationError as error:
            LOGGER.warning("Ignoring malformed session state %s: %s", path, error)
            return SessionState()

    def save(self, state: SessionState) -> None:
        """Persist ``state`` best-effort; failures are logged, never raised."""
        path = self.path
        if path is None:
            return
        payload = state.model_dump(mode="json", by_alias=True)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handle, temp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name, suffix=".tmp")
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                json.dump(payload, stream, indent=2)
                stream.write("\n")
            os.replace(temp_name, path)
        except OSError as error:
            LOGGER.warning("Failed to write session state %s: %s", path, error)

    # ------------------------------------------------------- failure streaks
    def record_failure(self, task_name: str) -> int:
        """Increment and return the consecutive failure count (0 without a session)."""
        if not self.session_id:
            return 0
        state = self.load()
        key = sanitize_name(task_name)
        count = state.successive_failures.get(key, 0) + 1
        state.successive_failures[key] = count
        self.save(state)
        return count

    def failure_count(self, task_name: str) -> int:
        if not self.session_id:
            return 0
        return self.load().successive_failures.get(sanitize_name(task_name), 0)

    def reset_failures(self, task_name: str) -> None:
        if not self.session_id:
            return
        state = self.load()
        key = sanitize_name(task_name)
        if state.successive_failures.get(key):
            state.successive_failures[key] = 0
            self.save(state)

    # ----------------------------------------------------------- suspension
    def is_suspended(self, task_name: str) -> bool:
        if not self.session_id:
            return False
        return sanitize_name(task_name) in self.load().suspended

    def suspend(self, task_name: str) -> None:
        if not self.session_id:
            return
        state = self.load()
        key = sanitize_name(task_name)
        if key not in state.suspended:
            state.suspended.append(key)
            self.save(state)

    # -------------------------------------------------------------- signals
    def set_signal(self, signal_type: str, message: str | None = None) -> bool:
        if not self.session_id or signal_type not in VALID_SIGNALS:
            return False
        state = self.load()
        state.signal = Signal(type=signal_type, message=message)  # type: ignore[arg-type]
        self.save(state)
        return True

    def get_signal(self) -> Signal | None:
        if not self.session_id:
            return None
        return self.load().signal

    def clear_signal(self) -> None:
        if not self.session_id:
            return
        state = self.load()
        if state.signal is not None:
            state.signal = None
            self.save(state)

    # ----------------------------------------------------------- turn edits
    def record_edit(self, tool_name: str, file_path: str) -> None:
        if not self.session_id or not tool_name or not file_path:
            return
        state = self.load()
        edits = state.turn_edits or TurnEdits()
        if tool_name not in edits.tools:
            edits.tools.append(tool_name)
        if file_path not in edits.files:
            edits.files.append(file_path)
        state.turn_edits = edits
        self.save(state)

    def turn_edits(self) -> TurnEdits | None:
        if not self.session_id:
            return None
        return self.load().turn_edits

    def reset_turn(self) -> None:
        if not self.session_id:
            return
        state = self.load()
        if state.turn_edits is not None:
            state.turn_edits = None
            self.save(state)


__all__ = [
    "SessionState",
    "SessionStore",
    "Signal",
    "TurnEdits",
    "VALID_SIGNALS",
    "sessions_dir",
]
