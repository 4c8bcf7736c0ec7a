"""Host entry points: hook dispatch, churn reset and session signals."""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from .churn import ChurnStore
from .config import GIT_EVENTS, ConfigError
from .dispatcher import EventDescriptor, dispatch
from .protocol import HookResponse, render, render_error
from .session import VALID_SIGNALS, SessionStore

APP_HELP = "Verification gate for coding-agent workflows."

app = typer.Typer(help=APP_HELP, add_completion=False)


def _configure_logging() -> None:
    level = logging.DEBUG if os.getenv("DONEGATE_DEBUG") else logging.WARNING
    logging.basicConfig(level=level, stream=sys.stderr, format="donegate %(levelname)s %(name)s: %(message)s")


def _emit(response: HookResponse) -> None:
    if response.stdout:
        typer.echo(response.stdout)
    if response.stderr:
        typer.echo(response.stderr, err=True)
    if response.exit_code:
        raise typer.Exit(code=response.exit_code)


def _read_descriptor(event: str, project_dir: Optional[str]) -> EventDescriptor:
    if event in GIT_EVENTS:
        return EventDescriptor(hook_event_name=event, cwd=project_dir or str(Path.cwd()))
    raw = sys.stdin.read()
    payload = json.loads(raw) if raw.strip() else {}
    if not isinstance(payload, dict):
        raise ValueError("hook input must be a JSON object")
    descriptor = EventDescriptor.model_validate(payload)
    if project_dir:
        descriptor = descriptor.model_copy(update={"cwd": project_dir})
    return descriptor


@app.command()
def hook(
    event: str = typer.Argument(..., help="Lifecycle event: PreToolUse, Stop, SessionStart, pre-commit or pre-push."),
    project_dir: Optional[str] = typer.Option(
        None,
        "--project-dir",
        "-p",
        help="Project directory (defaults to the event's cwd).",
    ),
) -> None:
    """Run the gate for one event; agent events read their payload from stdin."""
    _configure_logging()
    if os.getenv("DONEGATE_DISABLED"):
        return
    try:
        descriptor = _read_descriptor(event, project_dir)
    except (ValueError, ValidationError) as error:
        _emit(render_error(event, f"Failed to parse hook input.\n\nError: {error}\n\nThis is a safety block."))
        return
    try:
        outcome = dispatch(event, descriptor)
    except ConfigError as error:
        _emit(render_error(descriptor.hook_event_name or event, f"configuration error: {error}"))
        return
    _emit(render(outcome))


@app.command()
def reset(
    project_dir: str = typer.Option(".", "--project-dir", "-p", help="Repository whose churn refs are cleared."),
) -> None:
    """Delete every churn ref and counter kept for this repository."""
    _configure_logging()
    store = ChurnStore.open(Path(project_dir))
    if not store.available:
        typer.echo(f"Not a git repository: {project_dir}", err=True)
        raise typer.Exit(code=1)
    removed = store.delete_all()
    typer.echo(f"Removed {removed} ref(s).")


@app.command()
def signal(
    kind: str = typer.Argument(..., help="Signal type: done, stuck or idle."),
    session_id: str = typer.Option(..., "--session-id", "-s", help="Agent session identifier."),
    message: Optional[str] = typer.Option(None, "--message", "-m", help="Optional note stored with the signal."),
) -> None:
    """Record a session signal consumed by ``when.signal`` conditions."""
    _configure_logging()
    if kind not in VALID_SIGNALS:
        typer.echo(f"Unknown signal '{kind}'. Expected one of: {', '.join(VALID_SIGNALS)}", err=True)
        raise typer.Exit(code=1)
    SessionStore(session_id).set_signal(kind, message)
    typer.echo(f"Signal '{kind}' recorded for session {session_id}.")


if __name__ == "__main__":
    app()
