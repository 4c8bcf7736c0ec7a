"""Minimal git plumbing helpers
The helpers below provide just enough structure to read and write refs, hash
counter blobs, and capture the working tree without touching the index on exit.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Sequence

import subprocess

REF_NAMESPACE = "refs/worktree/donegate"


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    @classmethod
    def initialise(cls, root: Path | str) -> "GitRepository":
        """Initialise a new git repository at ``root`` with an initial commit."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)

        def _run(args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
            return _execute(path, args, check=check)

        _run(["init"])

        def _ensure_config(key: str, value: str) -> None:
            current = _run(["config", "--get", key], check=False)
            if current.returncode != 0 or not current.stdout.strip():
                _run(["config", key, value])

        _ensure_config("user.email", "gate@example.com")
        _ensure_config("user.name", "Done Gate")
        _ensure_config("commit.gpgsign", "false")

        _run(["add", "."])
        _run(["commit", "--allow-empty", "-m", "Initial commit"])

        return cls(path)

    # ------------------------------------------------------------------ git IO
    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return _execute(self.root, args, check=check, input_text=input_text)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # -------------------------------------------------------------- commits
    def head(self) -> str | None:
        """Return the current ``HEAD`` commit or ``None`` for an unborn branch."""

        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    # ------------------------------------------------------------------ refs
    @staticmethod
    def qualify(name: str) -> str:
        """Return the fully-qualified ref for a short donegate ref name."""

        if name.startswith("refs/"):
            return name
        return f"{REF_NAMESPACE}/{name}"

    def read_ref(self, name: str) -> str | None:
        """Return the object id a ref points at, or ``None`` when it is missing."""

        result = self._run_git(["rev-parse", "--verify", "--quiet", self.qualify(name)], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def update_ref(self, name: str, new_value: str, *, old_value: str | None = None) -> bool:
        """Point ``name`` at ``new_value``.

        When ``old_value`` is supplied the update is a compare-and-swap: git
        refuses it unless the ref still points at ``old_value``.  Returns
        ``True`` when the ref was written.
        """

        args = ["update-ref", self.qualify(name), new_value]
        if old_value is not None:
            args.append(old_value)
        result = self._run_git(args, check=False)
        return result.returncode == 0

    def delete_ref(self, name: str) -> bool:
        result = self._run_git(["update-ref", "-d", self.qualify(name)], check=False)
        return result.returncode == 0

    def list_refs(self, prefix: str = REF_NAMESPACE) -> List[str]:
        """Return fully-qualified refs under ``prefix``."""

        result = self._run_git(["for-each-ref", "--format=%(refname)", f"{prefix}/"], check=False)
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # ----------------------------------------------------------------- blobs
    def hash_blob(self, content: str) -> str:
        """Write ``content`` as a blob object and return its id."""

        result = self._run_git(["hash-object", "-w", "--stdin"], input_text=content)
        object_id = result.stdout.strip()
        if not object_id:
            raise GitError("git hash-object returned no object id")
        return object_id

    def read_blob(self, object_id: str) -> str | None:
        result = self._run_git(["cat-file", "blob", object_id], check=False)
        if result.returncode != 0:
            return None
        return result.stdout

    # ------------------------------------------------------------- index ops
    def untracked_files(self, pathspecs: Sequence[str] = ()) -> List[str]:
        """Return untracked, non-ignored paths matching ``pathspecs``."""

        args: List[str] = ["ls-files", "-z", "--others", "--exclude-standard"]
        if pathspecs:
            args.extend(["--", *pathspecs])
        result = self._run_git(args, check=False)
        if result.returncode != 0:
            message = result.stderr.strip() or "unable to list untracked paths"
            raise GitError(f"git ls-files failed: {message}")
        return [entry for entry in result.stdout.split("\0") if entry]

    def add(self, paths: Sequence[str], *, intent_only: bool = False) -> None:
        """Stage ``paths``; ``intent_only`` records an empty intent-to-add entry."""

        if not paths:
            return
        args: List[str] = ["add"]
        if intent_only:
            args.append("-N")
        args.extend(["--", *paths])
        self._run_git(args, check=True)

    def unstage(self, paths: Sequence[str]) -> None:
        """Remove ``paths`` from the index again, leaving the files on disk."""

        if not paths:
            return
        self._run_git(["reset", "-q", "--", *paths], check=False)

    def stash_create(self) -> str | None:
        """Return a stash commit for the current tree without recording it."""

        result = self._run_git(["stash", "create"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    # ----------------------------------------------------------- diff helpers
    def diff_numstat(self, base: str, pathspecs: Sequence[str] = ()) -> List[tuple[int | None, int | None, str]]:
        """Return ``(added, removed, path)`` rows between ``base`` and the working tree.

        Binary files report ``None`` for both counts.
        """

        args: List[str] = ["diff", "--numstat", base]
        if pathspecs:
            args.extend(["--", *pathspecs])
        result = self._run_git(args, check=True)
        rows: List[tuple[int | None, int | None, str]] = []
        for line in result.stdout.splitlines():
            parts = line.split("\t", 2)
            if len(parts) != 3:
                continue
            rows.append((_parse_count(parts[0]), _parse_count(parts[1]), parts[2]))
        return rows

    def diff_stat(self, base: str, pathspecs: Sequence[str] = ()) -> str:
        args: List[str] = ["diff", "--stat", base]
        if pathspecs:
            args.extend(["--", *pathspecs])
        return self._run_git(args, check=True).stdout.strip()


def _parse_count(token: str) -> int | None:
    try:
        return int(token)
    except ValueError:
        return None


def _execute(
    cwd: Path,
    args: Sequence[str],
    *,
    check: bool,
    input_text: str | None = None,
) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            input=input_text.encode("utf-8") if input_text is not None else None,
            text=False,
            check=False,
        )
    except OSError as error:
        raise GitError(f"git {' '.join(args)} could not start: {error}") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


__all__ = ["GitError", "GitRepository", "REF_NAMESPACE"]
