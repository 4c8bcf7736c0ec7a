from __future__ import annotations

import os
import stat
import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from donegate.churn import ChurnStore  # noqa: E402
from donegate.config import GateConfig, parse_config  # noqa: E402
from donegate.context import GateContext  # noqa: E402
from donegate.tools.vcs import GitRepository  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep session state, journals and global config inside the test's tmp dir."""

    home = tmp_path / "state-home"
    monkeypatch.setenv("DONEGATE_HOME", str(home))
    monkeypatch.delenv("DONEGATE_DISABLED", raising=False)
    monkeypatch.delenv("DONEGATE_DEBUG", raising=False)
    return home


@dataclass(slots=True)
class TinyRepo:
    """Fixture payload representing the synthetic repository under test."""

    root: Path
    repo: GitRepository

    def write(self, relative: str, content: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def write_lines(self, relative: str, count: int, prefix: str = "line") -> Path:
        return self.write(relative, "".join(f"{prefix} {index}\n" for index in range(count)))

    def run_cli(self, *args: str, stdin: str = "") -> subprocess.CompletedProcess[str]:
        """Invoke ``python -m donegate.cli`` with the provided arguments."""

        env = os.environ.copy()
        pythonpath = str(SRC)
        if env.get("PYTHONPATH"):
            pythonpath = os.pathsep.join([pythonpath, env["PYTHONPATH"]])
        env["PYTHONPATH"] = pythonpath

        command = [sys.executable, "-m", "donegate.cli", *args]
        return subprocess.run(  # noqa: S603 - command constructed from known values
            command,
            cwd=self.root,
            env=env,
            input=stdin,
            capture_output=True,
            text=True,
            check=False,
        )

    def store(self) -> ChurnStore:
        return ChurnStore(self.repo)

    def context(
        self,
        *,
        event: str = "Stop",
        config: GateConfig | dict | None = None,
        session_id: str | None = "session-1",
        tool_name: str | None = None,
        tool_input: dict | None = None,
        variables: dict | None = None,
    ) -> GateContext:
        if config is None:
            config = GateConfig()
        elif isinstance(config, dict):
            config = parse_config(config)
        return GateContext.build(
            event=event,
            project_dir=self.root,
            config=config,
            session_id=session_id,
            tool_name=tool_name,
            tool_input=tool_input,
            variables=variables,
        )


@pytest.fixture()
def tiny_repo(tmp_path: Path) -> TinyRepo:
    """Create a tiny committed git repository with one source file."""

    repo_root = tmp_path / "tiny-repo"
    repo_root.mkdir()
    (repo_root / "src").mkdir()
    (repo_root / "src" / "calculator.py").write_text(
        textwrap.dedent(
            """
            def add(left, right):
                return left + right
            """
        ).lstrip(),
        encoding="utf-8",
    )
    repo = GitRepository.initialise(repo_root)
    return TinyRepo(root=repo_root, repo=repo)


@dataclass(slots=True)
class FakeReviewer:
    """Executable stand-in for the reviewer CLI.

    The script records each prompt it receives and answers with the text in
    ``response_file`` (or exits with ``exit_code``).
    """

    bin_dir: Path
    name: str
    response_file: Path
    log_file: Path

    @property
    def command(self) -> str:
        return str(self.bin_dir / self.name)

    def respond(self, text: str) -> None:
        self.response_file.write_text(text, encoding="utf-8")

    def fail_with(self, code: int) -> None:
        Path(f"{self.response_file}.exit").write_text(str(code), encoding="utf-8")

    def prompts(self) -> list[str]:
        if not self.log_file.exists():
            return []
        chunks = self.log_file.read_text(encoding="utf-8").split("\n<<END>>\n")
        return [chunk for chunk in chunks if chunk]

    def calls(self) -> list[str]:
        args_log = self.log_file.with_suffix(".args")
        if not args_log.exists():
            return []
        return [line for line in args_log.read_text(encoding="utf-8").splitlines() if line]


def _make_reviewer(directory: Path, name: str) -> FakeReviewer:
    directory.mkdir(parents=True, exist_ok=True)
    response = directory / f"{name}.response"
    log = directory / f"{name}.log"
    script = directory / name
    script.write_text(
        textwrap.dedent(
            f"""\
            #!/bin/sh
            echo "$*|DISABLED=$DONEGATE_DISABLED" >> "{log.with_suffix('.args')}"
            cat >> "{log}"
            printf '\\n<<END>>\\n' >> "{log}"
            if [ -f "{response}.exit" ]; then
                exit "$(cat "{response}.exit")"
            fi
            cat "{response}"
            """
        ),
        encoding="utf-8",
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    response.write_text("PASS: looks good\n", encoding="utf-8")
    return FakeReviewer(bin_dir=directory, name=name, response_file=response, log_file=log)


@pytest.fixture()
def fake_reviewer(tmp_path: Path) -> FakeReviewer:
    """A reviewer script referenced by absolute path from a task's ``command``."""

    return _make_reviewer(tmp_path / "bin", "fake-reviewer")


@pytest.fixture()
def fake_claude(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeReviewer:
    """A ``claude`` executable placed first on ``PATH`` for default-command reviewers."""

    reviewer = _make_reviewer(tmp_path / "claude-bin", "claude")
    monkeypatch.setenv("PATH", os.pathsep.join([str(reviewer.bin_dir), os.environ.get("PATH", "")]))
    return reviewer
