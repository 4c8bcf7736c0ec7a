"""Typed gate configuration and the layered loader that produces it."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

LOGGER = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".donegate"
CONFIG_FILE_NAME = "config.yaml"
LOCAL_CONFIG_FILE_NAME = "config.local.yaml"
DEFAULT_MAX_OUTPUT_CHARS = 12_000

# Lifecycle events fired by git hooks; every other event comes from the agent host.
GIT_EVENTS = ("pre-commit", "pre-push")


class ConfigError(ValueError):
    """Raised when configuration cannot be turned into runnable tasks."""


def state_home() -> Path:
    """Return the directory holding global config, session state and journals."""
    override = os.getenv("DONEGATE_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".donegate"


class ConfigModel(BaseModel):
    """Base model: camelCase aliases on disk, snake_case in code."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class WhenClause(ConfigModel):
    """Conjunction of run conditions; absent fields impose nothing."""

    file_exists: Optional[str] = Field(default=None, alias="fileExists")
    env_set: Optional[str] = Field(default=None, alias="envSet")
    env_not_set: Optional[str] = Field(default=None, alias="envNotSet")
    lines_changed: Optional[int] = Field(default=None, alias="linesChanged")
    lines_written: Optional[int] = Field(default=None, alias="linesWritten")
    sources_modified_since_last_run: Optional[bool] = Field(default=None, alias="sourcesModifiedSinceLastRun")
    signal: Optional[str] = None
    tools_used: Optional[List[str]] = Field(default=None, alias="toolsUsed")
    source_files_edited: Optional[bool] = Field(default=None, alias="sourceFilesEdited")
    variables_present: Optional[List[str]] = Field(default=None, alias="variablesPresent")

    @property
    def tracks_net_churn(self) -> bool:
        return bool(self.lines_changed) or bool(self.sources_modified_since_last_run)

    @property
    def tracks_gross_churn(self) -> bool:
        return bool(self.lines_written)


class Task(ConfigModel):
    """A single script or reviewer task attached to a hook entry."""

    name: str
    type: Literal["script", "agent"]
    command: Optional[str] = None
    prompt: Optional[str] = None
    prompt_type: Literal["string", "reference"] = Field(default="string", alias="promptType")
    when: Optional[WhenClause] = None
    reset_on_fail: Optional[bool] = Field(default=None, alias="resetOnFail")
    timeout: Optional[float] = None
    async_: bool = Field(default=False, alias="async")
    parallel: bool = False
    model: Optional[str] = None
    enabled: bool = True
    quiet: bool = False
    mtime: bool = True

    @property
    def tracks_churn(self) -> bool:
        return self.when is not None and (self.when.tracks_net_churn or self.when.tracks_gross_churn)


class HookEntry(ConfigModel):
    """Tasks bound to one lifecycle event, optionally narrowed by tool or source."""

    type: Literal["agent", "git"] = "agent"
    event: str
    tasks: List[Task] = Field(default_factory=list)
    matcher: Optional[str] = None
    triggers: List[str] = Field(default_factory=list)
    source: Optional[str] = None
    mode: Optional[Literal["first-fail", "all"]] = None

    def effective_mode(self) -> str:
        if self.mode:
            return self.mode
        if self.type == "git" or self.event == "SessionStart":
            return "all"
        return "first-fail"


class GateConfig(ConfigModel):
    """Effective configuration for one project."""

    enabled: bool = True
    sources: Optional[List[str]] = None
    hooks: List[HookEntry] = Field(default_factory=list)
    model: Optional[str] = None
    task_env: Dict[str, str] = Field(default_factory=dict, alias="taskEnv")
    file_editing_tools: List[str] = Field(
        default_factory=lambda: ["Write", "Edit", "MultiEdit", "NotebookEdit"],
        alias="fileEditingTools",
    )
    max_output_chars: int = Field(default=DEFAULT_MAX_OUTPUT_CHARS, alias="maxOutputChars")
    ignored_paths: List[str] = Field(default_factory=list, alias="ignoredPaths")

    def is_ignored(self, project_dir: Path) -> bool:
        resolved = project_dir.resolve()
        for entry in self.ignored_paths:
            ignored = Path(entry).expanduser().resolve()
            if resolved == ignored or ignored in resolved.parents:
                return True
        return False


def merge_deep(base: Any, override: Any) -> Any:
    """Merge mappings recursively; lists and scalars in ``override`` replace ``base``."""
    if override is None:
        return base
    if isinstance(base, Mapping) and isinstance(override, Mapping):
        merged = dict(base)
        for key, value in override.items():
            merged[key] = merge_deep(base.get(key), value)
        return merged
    return override


def _read_document(path: Path) -> Dict[str, Any]:
    """Read a YAML (or JSON) mapping, returning an empty mapping if missing."""
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as error:
        raise ConfigError(f"Failed to parse config {path}: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration must be a mapping at the top level: {path}")
    return data


def config_paths(project_dir: Path) -> List[Path]:
    """Return project config files from the filesystem root down to ``project_dir``."""
    resolved = project_dir.resolve()
    found = [
        candidate / CONFIG_DIR_NAME / CONFIG_FILE_NAME
        for candidate in (resolved, *resolved.parents)
        if (candidate / CONFIG_DIR_NAME / CONFIG_FILE_NAME).exists()
    ]
    found.reverse()
    local = resolved / CONFIG_DIR_NAME / LOCAL_CONFIG_FILE_NAME
    if local.exists():
        found.append(local)
    return found


def parse_config(data: Mapping[str, Any]) -> GateConfig:
    try:
        return GateConfig.model_validate(dict(data))
    except ValidationError as error:
        raise ConfigError(f"Invalid gate configuration:\n{error}") from error


def load_config(project_dir: Path | str) -> GateConfig:
    """Build the effective configuration for ``project_dir``.

    Resolution order (later wins): built-in defaults, the global
    ``$DONEGATE_HOME/config.yaml``, ancestor ``.donegate/config.yaml`` files
    from the root-most down, then ``.donegate/config.local.yaml``.
    """
    merged: Dict[str, Any] = {}
    layers = [state_home() / CONFIG_FILE_NAME, *config_paths(Path(project_dir))]
    for layer in layers:
        document = _read_document(layer)
        if document:
            LOGGER.debug("Merging config layer %s", layer)
            merged = merge_deep(merged, document)
    return parse_config(merged)


__all__ = [
    "CONFIG_DIR_NAME",
    "ConfigError",
    "GIT_EVENTS",
    "GateConfig",
    "HookEntry",
    "Task",
    "WhenClause",
    "config_paths",
    "load_config",
    "merge_deep",
    "parse_config",
    "state_home",
]
