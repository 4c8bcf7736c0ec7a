"""Detached task execution.

``spawn`` serialises everything a task needs into a context file and starts
``python -m donegate.async_worker <context-file>`` in its own session.  The
worker journals ``RUNNING``, the verdict and ``DONE``, then writes its result
atomically next to the context file and removes the context.  Fire-and-forget
results are picked up by :func:`collect_results` on a later ``Stop``;
``parallel`` tasks are awaited through :func:`wait_for` within the same
invocation.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

from .config import Task, parse_config
from .context import GateContext
from .journal import project_log_name
from .reviewer import guarded_env
from .runner import CheckResult, CheckRunner
from .utils.slug import sanitize_name

LOGGER = logging.getLogger(__name__)

CONTEXT_SUFFIX = ".context.json"
RESULT_SUFFIX = ".result.json"
# Extra time granted to a parallel worker beyond the task's own timeout.
WAIT_GRACE_SECONDS = 30.0


@dataclass(slots=True)
class AsyncHandle:
    """Durable pointer to a detached task run."""

    task_name: str
    context_path: Path
    result_path: Path
    process: subprocess.Popen[bytes] | None = None


def async_dir(context: GateContext) -> Path:
    """Directory for context and result files of this session (or project)."""
    session_dir = context.session.async_dir
    if session_dir is not None:
        return session_dir
    stem = project_log_name(context.project_dir).removesuffix(".jsonl")
    return context.session.base_dir / stem / "async"


def _write_json_atomic(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    handle, temp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name, suffix=".tmp")
    with os.fdopen(handle, "w", encoding="utf-8") as stream:
        json.dump(payload, stream, indent=2)
    os.replace(temp_name, path)


def spawn(task: Task, context: GateContext) -> AsyncHandle | None:
    """Start ``task`` in a detached worker process and return immediately.

    Returns ``None`` when the worker cannot be started (unwritable state
    directory, failed exec); the caller then runs the task in-process.
    """
    directory = async_dir(context)
    stem = f"{sanitize_name(task.name)}-{uuid.uuid4().hex[:8]}"
    context_path = directory / f"{stem}{CONTEXT_SUFFIX}"
    result_path = directory / f"{stem}{RESULT_SUFFIX}"
    payload = {
        "task": task.model_dump(mode="json", by_alias=True),
        "config": context.config.model_dump(mode="json", by_alias=True),
        "event": context.event,
        "project_dir": str(context.project_dir),
        "session_id": context.session_id,
        "tool_name": context.tool_name,
        "tool_input": context.tool_input,
        "variables": context.variables,
        "state_dir": str(context.session.base_dir),
        "result_path": str(result_path),
    }
    try:
        _write_json_atomic(context_path, payload)
    except OSError as error:
        LOGGER.warning("Cannot detach %s; failed to write %s: %s", task.name, context_path, error)
        return None
    env = guarded_env(context.config.task_env)
    # The worker must import this same copy of the package.
    package_parent = str(Path(__file__).resolve().parents[1])
    env["PYTHONPATH"] = os.pathsep.join(part for part in (package_parent, env.get("PYTHONPATH")) if part)
    try:
        process = subprocess.Popen(  # noqa: S603  # argv is fixed
            [sys.executable, "-m", "donegate.async_worker", str(context_path)],
            cwd=context.project_dir,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as error:
        LOGGER.warning("Failed to start async worker for %s: %s", task.name, error)
        context_path.unlink(missing_ok=True)
        return None
    LOGGER.debug("Spawned async worker %s for %s", process.pid, task.name)
    return AsyncHandle(task.name, context_path, result_path, process)


def read_result(path: Path) -> Tuple[Task | None, CheckResult] | None:
    """Load and delete one result file; ``None`` when it is missing or unreadable."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        LOGGER.warning("Ignoring unreadable async result %s: %s", path, error)
        return None
    finally:
        path.unlink(missing_ok=True)
    task_payload = payload.get("task")
    task = Task.model_validate(task_payload) if isinstance(task_payload, dict) else None
    return task, CheckResult.from_dict(payload.get("result") or {})


def wait_for(handle: AsyncHandle, timeout: float) -> CheckResult:
    """Block until a parallel worker finishes and return its result."""
    if handle.process is not None:
        try:
            handle.process.wait(timeout=timeout + WAIT_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            handle.process.kill()
            handle.process.wait()
            handle.context_path.unlink(missing_ok=True)
            return CheckResult.fail(handle.task_name, f"{handle.task_name} worker timed out after {timeout:.0f}s")
    loaded = read_result(handle.result_path)
    if loaded is None:
        handle.context_path.unlink(missing_ok=True)
        return CheckResult.fail(handle.task_name, f"{handle.task_name} worker exited without a result")
    return loaded[1]


def collect_results(context: GateContext) -> List[Tuple[Task | None, CheckResult]]:
    """Consume every finished fire-and-forget result for this session."""
    directory = async_dir(context)
    if not directory.is_dir():
        return []
    collected: List[Tuple[Task | None, CheckResult]] = []
    for path in sorted(directory.glob(f"*{RESULT_SUFFIX}")):
        loaded = read_result(path)
        if loaded is not None:
            collected.append(loaded)
    return collected


def run_worker(payload: Dict[str, Any]) -> CheckResult:
    """Execute one serialised task and write its result file."""
    task = Task.model_validate(payload["task"])
    context = GateContext.build(
        event=payload.get("event") or "",
        project_dir=payload["project_dir"],
        config=parse_config(payload.get("config") or {}),
        session_id=payload.get("session_id"),
        tool_name=payload.get("tool_name"),
        tool_input=payload.get("tool_input"),
        variables=payload.get("variables"),
        state_dir=Path(payload["state_dir"]) if payload.get("state_dir") else None,
    )
    try:
        result = CheckRunner(context).run(task)
    except Exception as error:  # noqa: BLE001  # a worker must always leave a result behind
        LOGGER.exception("Async task %s crashed", task.name)
        result = CheckResult.fail(task.name, f"async worker crash: {error}")
        context.journal.record(task.name, "BOOM", result.reason, hook_event=context.event)
    context.journal.record(task.name, "DONE", "review complete, waiting for Stop hook", hook_event=context.event)
    _write_json_atomic(
        Path(payload["result_path"]),
        {
            "task": task.model_dump(mode="json", by_alias=True),
            "result": result.to_dict(),
            "completed_at": time.time(),
        },
    )
    return result


def main(argv: Sequence[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        return 1
    context_path = Path(args[0])
    try:
        payload = json.loads(context_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return 1
    try:
        run_worker(payload)
    except OSError as error:
        LOGGER.error("Failed to write async result for %s: %s", context_path, error)
        return 1
    finally:
        context_path.unlink(missing_ok=True)
    return 0


__all__ = [
    "AsyncHandle",
    "async_dir",
    "collect_results",
    "main",
    "read_result",
    "run_worker",
    "spawn",
    "wait_for",
]


if __name__ == "__main__":
    sys.exit(main())
