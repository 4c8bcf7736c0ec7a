from __future__ import annotations

import json

import pytest
import yaml
from typer.testing import CliRunner

from donegate.churn import ChurnStore
from donegate.cli import app
from donegate.session import SessionStore

runner = CliRunner()


def _write_config(root, hooks: list[dict]) -> None:
    config_dir = root / ".donegate"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "config.yaml").write_text(yaml.safe_dump({"hooks": hooks}), encoding="utf-8")


def _hook(event: str, payload: dict | str) -> object:
    stdin = payload if isinstance(payload, str) else json.dumps(payload)
    return runner.invoke(app, ["hook", event], input=stdin)


def test_stop_hook_blocks_on_failing_script(tiny_repo) -> None:
    _write_config(
        tiny_repo.root,
        [{"event": "Stop", "tasks": [{"name": "tests", "type": "script", "command": "echo nope; exit 1"}]}],
    )

    result = _hook("Stop", {"hook_event_name": "Stop", "session_id": "s-1", "cwd": str(tiny_repo.root)})

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["decision"] == "block"
    assert payload["reason"].startswith("donegate: tests failed.")


def test_pre_tool_use_hook_allows_when_checks_pass(tiny_repo) -> None:
    _write_config(
        tiny_repo.root,
        [{"event": "PreToolUse", "matcher": "Bash", "tasks": [{"name": "ok", "type": "script", "command": "true"}]}],
    )

    result = _hook(
        "PreToolUse",
        {
            "hook_event_name": "PreToolUse",
            "session_id": "s-1",
            "cwd": str(tiny_repo.root),
            "tool_name": "Bash",
            "tool_input": {"command": "ls"},
        },
    )

    payload = json.loads(result.stdout)
    assert payload["hookSpecificOutput"]["permissionDecision"] == "allow"


def test_malformed_input_is_a_safety_block() -> None:
    result = _hook("Stop", "{not json")

    payload = json.loads(result.stdout)
    assert payload["decision"] == "block"
    assert "Failed to parse hook input" in payload["reason"]


def test_bad_configuration_fails_closed(tiny_repo) -> None:
    config_dir = tiny_repo.root / ".donegate"
    config_dir.mkdir()
    (config_dir / "config.yaml").write_text("hooks: [{event: Stop, tasks: [{name: x}]}]\n", encoding="utf-8")

    result = _hook("Stop", {"hook_event_name": "Stop", "session_id": "s-1", "cwd": str(tiny_repo.root)})

    payload = json.loads(result.stdout)
    assert payload["decision"] == "block"
    assert "configuration error" in payload["reason"]


def test_git_hook_exits_non_zero(tiny_repo) -> None:
    _write_config(
        tiny_repo.root,
        [{"type": "git", "event": "pre-commit", "tasks": [{"name": "lint", "type": "script", "command": "exit 1"}]}],
    )

    result = runner.invoke(app, ["hook", "pre-commit", "--project-dir", str(tiny_repo.root)])

    assert result.exit_code == 1


def test_disabled_env_produces_no_output(tiny_repo, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DONEGATE_DISABLED", "1")

    result = _hook("Stop", "{not json")

    assert result.exit_code == 0
    assert result.stdout == ""


def test_reset_removes_refs(tiny_repo) -> None:
    store = ChurnStore(tiny_repo.repo)
    store.net_churn_since("review")
    store.increment_gross(3)

    result = runner.invoke(app, ["reset", "--project-dir", str(tiny_repo.root)])

    assert result.exit_code == 0
    assert "Removed 2 ref(s)." in result.stdout
    assert tiny_repo.repo.list_refs() == []


def test_reset_outside_git(tmp_path) -> None:
    result = runner.invoke(app, ["reset", "--project-dir", str(tmp_path)])

    assert result.exit_code == 1


def test_signal_command_records_and_validates() -> None:
    ok = runner.invoke(app, ["signal", "done", "--session-id", "s-9", "--message", "ready"])
    bad = runner.invoke(app, ["signal", "finished", "--session-id", "s-9"])

    assert ok.exit_code == 0
    signal = SessionStore("s-9").get_signal()
    assert signal is not None
    assert (signal.type, signal.message) == ("done", "ready")
    assert bad.exit_code == 1


def test_module_entry_point_blocks_failing_stop(tiny_repo) -> None:
    _write_config(
        tiny_repo.root,
        [{"event": "Stop", "tasks": [{"name": "tests", "type": "script", "command": "exit 1"}]}],
    )
    payload = json.dumps({"hook_event_name": "Stop", "session_id": "s-2", "cwd": str(tiny_repo.root)})

    completed = tiny_repo.run_cli("hook", "Stop", stdin=payload)

    assert completed.returncode == 0, completed.stderr
    assert json.loads(completed.stdout)["decision"] == "block"
