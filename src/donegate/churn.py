"""Durable churn counters kept in git's object store.

Two measurements are tracked per task:

* **net churn** diffs a per-task snapshot ref against the live working tree
  (tracked, staged, unstaged and untracked source files), so reverts cancel out;
* **gross churn** subtracts a per-task copy of a global, monotonically growing
  counter blob from the current global value, so every written line counts.

Refs live under ``refs/worktree/donegate/``.  The global counter is the only
value shared by concurrent writers and is updated with a compare-and-swap
``git update-ref`` and a small retry budget.  Every git failure is treated as
"no information": reads return ``0``/``None`` and writes become no-ops.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Mapping, Sequence

from .globs import pathspecs
from .tools.vcs import GitError, GitRepository
from .utils.slug import sanitize_name

LOGGER = logging.getLogger(__name__)

GROSS_COUNTER_REF = "__gross_lines"
GROSS_SNAPSHOT_SUFFIX = ".__gross_lines"
CAS_ATTEMPTS = 3


def task_ref(task_name: str) -> str:
    """Return the short ref name owned by ``task_name``."""
    return sanitize_name(task_name)


class ChurnStore:
    """Net and gross churn tracking backed by git refs and blobs."""

    def __init__(self, repo: GitRepository | None) -> None:
        self.repo = repo

    @classmethod
    def open(cls, root_dir: Path | str) -> "ChurnStore":
        """Return a store for ``root_dir``; outside git every operation degrades to a no-op."""
        try:
            repo = GitRepository.discover(root_dir)
        except GitError:
            LOGGER.debug("No git repository at %s; churn tracking disabled", root_dir)
            repo = None
        return cls(repo)

    @property
    def available(self) -> bool:
        return self.repo is not None

    # ---------------------------------------------------------- net churn
    def snapshot(self, sources: Sequence[str] | None = None) -> str | None:
        """Capture the working tree (untracked sources included) as one object id.

        Untracked source files are staged just long enough for ``git stash
        create`` to see them and are unstaged again before returning.  A tree
        identical to ``HEAD`` yields ``HEAD`` itself.
        """
        repo = self.repo
        if repo is None:
            return None
        try:
            untracked = repo.untracked_files(pathspecs(sources))
        except GitError as error:
            LOGGER.debug("snapshot: %s", error)
            return None
        try:
            repo.add(untracked)
            stash = repo.stash_create()
            return stash or repo.head()
        except GitError as error:
            LOGGER.debug("snapshot: %s", error)
            return None
        finally:
            repo.unstage(untracked)

    def net_churn_since(self, ref: str, sources: Sequence[str] | None = None) -> int:
        """Return added + removed source lines between ``ref`` and the working tree.

        A missing ref is bootstrapped at ``HEAD`` and measured immediately, so
        uncommitted work already in flight is counted on the first call.
        """
        repo = self.repo
        if repo is None:
            return 0
        try:
            head = repo.head()
            if head is None:
                return 0
            existing = repo.read_ref(ref)
            if existing is None:
                repo.update_ref(ref, head)
            base = existing or head
            return self._diff_total(repo, base, sources)
        except GitError as error:
            LOGGER.debug("net churn for %s unavailable: %s", ref, error)
            return 0

    def advance_snapshot(self, ref: str, sources: Sequence[str] | None = None) -> str | None:
        """Reset net churn for ``ref`` by pointing it at a fresh working-tree snapshot."""
        repo = self.repo
        if repo is None:
            return None
        snap = self.snapshot(sources)
        if snap is None:
            return None
        if not repo.update_ref(ref, snap):
            LOGGER.warning("Failed to advance %s to %s", ref, snap)
            return None
        return snap

    def diff_stat_since(self, ref: str, sources: Sequence[str] | None = None) -> str:
        """Return ``git diff --stat`` output for ``ref`` or an empty string when it is unknown."""
        repo = self.repo
        if repo is None:
            return ""
        try:
            base = repo.read_ref(ref)
            if base is None:
                return ""
            specs = pathspecs(sources)
            untracked = repo.untracked_files(specs)
            try:
                repo.add(untracked, intent_only=True)
                return repo.diff_stat(base, specs)
            finally:
                repo.unstage(untracked)
        except GitError as error:
            LOGGER.debug("diff stat for %s unavailable: %s", ref, error)
            return ""

    def _diff_total(self, repo: GitRepository, base: str, sources: Sequence[str] | None) -> int:
        specs = pathspecs(sources)
        untracked = repo.untracked_files(specs)
        try:
            # Intent-to-add entries make untracked files visible to ``git diff``.
            repo.add(untracked, intent_only=True)
            rows = repo.diff_numstat(base, specs)
        finally:
            repo.unstage(untracked)
        total = 0
        for added, removed, _path in rows:
            total += (added or 0) + (removed or 0)
        return total

    # -------------------------------------------------------- gross churn
    def read_gross_counter(self) -> int:
        repo = self.repo
        if repo is None:
            return 0
        try:
            return self._read_counter(repo.read_ref(GROSS_COUNTER_REF))
        except GitError:
            return 0

    def increment_gross(self, delta: int) -> bool:
        """Add ``delta`` to the global counter with compare-and-swap and bounded retry.

        Returns ``True`` when the increment landed.  Under heavy contention an
        increment may be dropped after ``CAS_ATTEMPTS`` conflicts; the counter
        under-counts rather than blocking.
        """
        repo = self.repo
        if repo is None or not delta or delta <= 0:
            return False
        for attempt in range(1, CAS_ATTEMPTS + 1):
            try:
                old_id = repo.read_ref(GROSS_COUNTER_REF)
                current = self._read_counter(old_id)
                new_id = repo.hash_blob(str(current + delta))
            except GitError as error:
                LOGGER.debug("gross counter unavailable: %s", error)
                return False
            # An empty old value asks git to create the ref only if it is still absent.
            if repo.update_ref(GROSS_COUNTER_REF, new_id, old_value=old_id or ""):
                return True
            LOGGER.debug("gross counter CAS conflict (attempt %d/%d)", attempt, CAS_ATTEMPTS)
        LOGGER.warning("Dropped gross churn increment of %d after %d conflicts", delta, CAS_ATTEMPTS)
        return False

    def gross_churn_since(self, ref: str) -> int:
        """Return lines written since ``ref`` last acknowledged the global counter."""
        repo = self.repo
        if repo is None:
            return 0
        current = self.read_gross_counter()
        snapshot_ref = ref + GROSS_SNAPSHOT_SUFFIX
        try:
            snapshot_id = repo.read_ref(snapshot_ref)
        except GitError:
            return 0
        if snapshot_id is None:
            self._write_counter(snapshot_ref, current)
            return 0
        return max(0, current - self._read_counter(snapshot_id))

    def advance_gross_snapshot(self, ref: str) -> None:
        self._write_counter(ref + GROSS_SNAPSHOT_SUFFIX, self.read_gross_counter())

    def _read_counter(self, object_id: str | None) -> int:
        if not object_id or self.repo is None:
            return 0
        content = self.repo.read_blob(object_id)
        if content is None:
            return 0
        try:
            return int(content.strip())
        except ValueError:
            return 0

    def _write_counter(self, ref: str, value: int) -> None:
        repo = self.repo
        if repo is None:
            return
        try:
            object_id = repo.hash_blob(str(value))
        except GitError as error:
            LOGGER.debug("counter write for %s failed: %s", ref, error)
            return
        repo.update_ref(ref, object_id)

    # ------------------------------------------------------------ cleanup
    def delete_all(self) -> int:
        """Delete every donegate ref and return how many were removed."""
        repo = self.repo
        if repo is None:
            return 0
        refs = repo.list_refs()
        removed = 0
        for ref in refs:
            if repo.delete_ref(ref):
                removed += 1
        return removed


def count_written_lines(tool_name: str | None, tool_input: Mapping[str, Any] | None) -> int:
    """Estimate lines written by a file-editing tool call from its payload alone."""
    if not tool_input:
        return 0
    if tool_name == "Write":
        content = tool_input.get("content")
        return _line_count(content) if isinstance(content, str) else 0
    if tool_name == "Edit":
        total = 0
        for key in ("old_string", "new_string"):
            value = tool_input.get(key)
            if isinstance(value, str):
                total += _line_count(value)
        return total
    if tool_name == "MultiEdit":
        total = 0
        edits = tool_input.get("edits")
        if isinstance(edits, list):
            for edit in edits:
                if isinstance(edit, Mapping):
                    total += count_written_lines("Edit", edit)
        return total
    if tool_name == "NotebookEdit":
        if (tool_input.get("edit_mode") or "replace") == "delete":
            return 0
        source = tool_input.get("new_source")
        return _line_count(source) if isinstance(source, str) else 0

    # Unknown editors: the longest string value stands in for the written content.
    strings: List[str] = [value for value in tool_input.values() if isinstance(value, str)]
    longest = max(strings, key=len, default="")
    return _line_count(longest) if longest else 0


def _line_count(text: str) -> int:
    return len(text.split("\n"))


__all__ = [
    "CAS_ATTEMPTS",
    "ChurnStore",
    "GROSS_COUNTER_REF",
    "count_written_lines",
    "task_ref",
]
