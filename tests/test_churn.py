from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from donegate.churn import GROSS_COUNTER_REF, ChurnStore, count_written_lines
from donegate.tools.vcs import REF_NAMESPACE


def test_net_churn_bootstrap_is_idempotent(tiny_repo) -> None:
    store = tiny_repo.store()

    assert store.net_churn_since("fast-tests") == 0
    assert store.net_churn_since("fast-tests") == 0
    assert tiny_repo.repo.list_refs() == [f"{REF_NAMESPACE}/fast-tests"]
    assert tiny_repo.repo.read_ref("fast-tests") == tiny_repo.repo.head()


def test_bootstrap_counts_in_flight_changes(tiny_repo) -> None:
    tiny_repo.write_lines("src/new_module.py", 10)

    assert tiny_repo.store().net_churn_since("fast-tests") == 10


def test_net_churn_is_monotonic_until_advanced(tiny_repo) -> None:
    store = tiny_repo.store()
    store.net_churn_since("review")

    observed = []
    for count in (2, 5, 9):
        tiny_repo.write_lines("src/grow.py", count)
        observed.append(store.net_churn_since("review"))

    assert observed == sorted(observed)
    assert observed[-1] == 9

    store.advance_snapshot("review")
    assert store.net_churn_since("review") == 0

    tiny_repo.write_lines("src/later.py", 3)
    assert store.net_churn_since("review") == 3


def test_reverted_edits_cancel_out(tiny_repo) -> None:
    store = tiny_repo.store()
    original = (tiny_repo.root / "src" / "calculator.py").read_text(encoding="utf-8")
    store.net_churn_since("review")

    tiny_repo.write("src/calculator.py", original + "extra = 1\n")
    assert store.net_churn_since("review") == 1

    tiny_repo.write("src/calculator.py", original)
    assert store.net_churn_since("review") == 0


def test_measurement_leaves_index_untouched(tiny_repo) -> None:
    store = tiny_repo.store()
    tiny_repo.write_lines("src/untracked.py", 4)

    store.net_churn_since("review")
    store.advance_snapshot("review")
    store.diff_stat_since("review")

    status = tiny_repo.repo.git("status", "--porcelain").stdout
    assert "?? src/untracked.py" in status
    assert tiny_repo.repo.git("diff", "--cached", "--name-only").stdout.strip() == ""


def test_snapshot_of_clean_tree_is_head(tiny_repo) -> None:
    store = tiny_repo.store()

    assert store.snapshot() == tiny_repo.repo.head()

    tiny_repo.write_lines("src/dirty.py", 2)
    snap = store.snapshot()
    assert snap is not None
    assert snap != tiny_repo.repo.head()


def test_source_globs_restrict_churn(tiny_repo) -> None:
    store = tiny_repo.store()
    tiny_repo.write_lines("docs/notes.md", 6)
    tiny_repo.write_lines("src/code.py", 2)

    assert store.net_churn_since("narrow", ["src/**"]) == 2
    assert store.net_churn_since("wide") == 8


def test_diff_stat_since_reports_changed_files(tiny_repo) -> None:
    store = tiny_repo.store()
    assert store.diff_stat_since("review") == ""

    store.net_churn_since("review")
    tiny_repo.write_lines("src/feature.py", 3)

    assert "src/feature.py" in store.diff_stat_since("review")


def test_gross_counter_bootstrap_and_accumulation(tiny_repo) -> None:
    store = tiny_repo.store()

    assert store.gross_churn_since("lint") == 0
    assert store.gross_churn_since("lint") == 0

    assert store.increment_gross(7)
    assert store.increment_gross(0) is False
    assert store.increment_gross(-3) is False
    assert store.read_gross_counter() == 7
    assert store.gross_churn_since("lint") == 7

    store.advance_gross_snapshot("lint")
    assert store.gross_churn_since("lint") == 0

    store.increment_gross(4)
    assert store.gross_churn_since("lint") == 4


def test_gross_churn_survives_reverts(tiny_repo) -> None:
    store = tiny_repo.store()
    store.gross_churn_since("lint")
    store.net_churn_since("lint")

    tiny_repo.write_lines("src/tmp.py", 5)
    store.increment_gross(5)
    (tiny_repo.root / "src" / "tmp.py").unlink()

    assert store.net_churn_since("lint") == 0
    assert store.gross_churn_since("lint") == 5


def test_concurrent_increments_never_over_count(tiny_repo) -> None:
    store = tiny_repo.store()
    store.increment_gross(10)
    initial = store.read_gross_counter()
    delta, workers = 3, 8

    def bump(_: int) -> bool:
        return ChurnStore(tiny_repo.repo).increment_gross(delta)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(bump, range(workers)))

    final = store.read_gross_counter()
    assert any(outcomes)
    assert initial + delta <= final <= initial + workers * delta
    assert final == initial + delta * sum(1 for landed in outcomes if landed)


def test_delete_all_removes_owned_refs(tiny_repo) -> None:
    store = tiny_repo.store()
    store.net_churn_since("a")
    store.gross_churn_since("b")
    store.increment_gross(2)

    assert f"{REF_NAMESPACE}/{GROSS_COUNTER_REF}" in tiny_repo.repo.list_refs()
    assert store.delete_all() == 3
    assert tiny_repo.repo.list_refs() == []


def test_non_git_directory_degrades_to_no_information(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    (plain / "file.py").write_text("x = 1\n", encoding="utf-8")
    store = ChurnStore.open(plain)

    assert store.available is False
    assert store.snapshot() is None
    assert store.net_churn_since("t") == 0
    assert store.advance_snapshot("t") is None
    assert store.increment_gross(5) is False
    assert store.gross_churn_since("t") == 0
    assert store.diff_stat_since("t") == ""
    assert store.delete_all() == 0


def test_corrupt_counter_blob_reads_as_zero(tiny_repo) -> None:
    repo = tiny_repo.repo
    repo.update_ref(GROSS_COUNTER_REF, repo.hash_blob("not a number"))

    assert tiny_repo.store().read_gross_counter() == 0


def test_update_ref_compare_and_swap(tiny_repo) -> None:
    repo = tiny_repo.repo
    first = repo.hash_blob("1")
    second = repo.hash_blob("2")

    assert repo.update_ref("cas", first, old_value="")
    assert repo.update_ref("cas", second, old_value="") is False
    assert repo.update_ref("cas", second, old_value=second) is False
    assert repo.update_ref("cas", second, old_value=first)
    assert repo.read_ref("cas") == second


def test_count_written_lines_per_tool() -> None:
    assert count_written_lines("Write", {"file_path": "a.py", "content": "a\nb\nc"}) == 3
    assert count_written_lines("Edit", {"old_string": "x", "new_string": "y\nz"}) == 3
    assert (
        count_written_lines(
            "MultiEdit",
            {"edits": [{"old_string": "a", "new_string": "b"}, {"old_string": "c\nd", "new_string": "e"}]},
        )
        == 5
    )
    assert count_written_lines("NotebookEdit", {"new_source": "1\n2", "edit_mode": "insert"}) == 2
    assert count_written_lines("NotebookEdit", {"new_source": "1\n2", "edit_mode": "delete"}) == 0
    assert count_written_lines("CustomWriter", {"path": "x", "body": "1\n2\n3\n4"}) == 4
    assert count_written_lines("Write", None) == 0


def test_gate_state_directory_is_not_churn(tiny_repo) -> None:
    store = tiny_repo.store()
    tiny_repo.write_lines(".donegate/backchannel/s/t/README.md", 40)
    tiny_repo.write_lines(".donegate/config.yaml", 5)

    assert store.net_churn_since("review") == 0
