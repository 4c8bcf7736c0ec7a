"""Per-invocation state handed to the scheduler, runner and arbiter."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .churn import ChurnStore
from .config import GateConfig
from .globs import effective_sources
from .journal import Journal
from .session import SessionStore
from .tools.vcs import GitError, GitRepository


@dataclass(slots=True)
class GateContext:
    """Everything a task needs to decide, run and record itself for one event."""

    event: str
    project_dir: Path
    root_dir: Path
    config: GateConfig
    churn: ChurnStore
    session: SessionStore
    journal: Journal
    session_id: str | None = None
    tool_name: str | None = None
    tool_input: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Optional[str]] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))

    @classmethod
    def build(
        cls,
        *,
        event: str,
        project_dir: Path | str,
        config: GateConfig,
        session_id: str | None = None,
        tool_name: str | None = None,
        tool_input: Mapping[str, Any] | None = None,
        variables: Mapping[str, Optional[str]] | None = None,
        state_dir: Path | None = None,
    ) -> "GateContext":
        """Resolve the git root and wire the stores for ``project_dir``."""
        project = Path(project_dir).resolve()
        try:
            repo: GitRepository | None = GitRepository.discover(project)
        except GitError:
            repo = None
        root = repo.root if repo is not None else project
        return cls(
            event=event,
            project_dir=project,
            root_dir=root,
            config=config,
            churn=ChurnStore(repo),
            session=SessionStore(session_id, base_dir=state_dir),
            journal=Journal(session_id, project, base_dir=state_dir),
            session_id=session_id,
            tool_name=tool_name,
            tool_input=dict(tool_input or {}),
            variables=dict(variables or {}),
        )

    @property
    def sources(self) -> tuple[str, ...]:
        return effective_sources(self.config.sources)

    @property
    def repo(self) -> GitRepository | None:
        return self.churn.repo


__all__ = ["GateContext"]
