"""Tests for SearchIndex filtering, generations and result ordering."""

import threading

from leetcli_py.client.models import Difficulty, ProblemStatus
from leetcli_py.engine.cache_store import CacheStore, problem_key
from leetcli_py.engine.search_index import LatestResultGate, ProblemFilter, QueryResult, SearchIndex

from conftest import make_problem, wait_for

CATALOG = [
    make_problem(1, "Two Sum", Difficulty.EASY, ProblemStatus.SOLVED, tags=("array", "hash-table")),
    make_problem(2, "Add Two Numbers", Difficulty.MEDIUM, tags=("linked-list",)),
    make_problem(15, "3Sum", Difficulty.MEDIUM, ProblemStatus.ATTEMPTED, tags=("array",)),
    make_problem(21, "Merge Two Sorted Lists", Difficulty.EASY, tags=("linked-list",)),
    make_problem(167, "Two Sum II", Difficulty.MEDIUM, tags=("array",)),
    make_problem(170, "Two Sum III", Difficulty.EASY, paid_only=True),
]


def _index(problems=CATALOG):
    store = CacheStore()
    for p in problems:
        store.put(problem_key(p.slug), p)
    index = SearchIndex(store, debounce=0.01)
    index.rebuild()
    return store, index


def _slugs(result: QueryResult):
    return [p.slug for p in result.problems]


def test_empty_filter_returns_catalog_order() -> None:
    _, index = _index()

    result = index.query(ProblemFilter())

    assert [p.frontend_id for p in result.problems] == ["1", "2", "15", "21", "167", "170"]
    assert result.total == 6


def test_exact_id_then_prefix_then_substring() -> None:
    _, index = _index()

    result = index.query(ProblemFilter(text="two"))

    # "Two Sum*" titles start with the text, the rest only contain it
    assert _slugs(result) == [
        "two-sum",
        "two-sum-ii",
        "two-sum-iii",
        "add-two-numbers",
        "merge-two-sorted-lists",
    ]
    assert _slugs(index.query(ProblemFilter(text="15"))) == ["3sum"]


def test_set_filters_combine() -> None:
    _, index = _index()

    medium_arrays = index.query(
        ProblemFilter(difficulties=frozenset({Difficulty.MEDIUM}), tags=frozenset({"array"}))
    )
    unsolved_easy = index.query(
        ProblemFilter(
            difficulties=frozenset({Difficulty.EASY}),
            statuses=frozenset({ProblemStatus.TODO}),
            include_paid=False,
        )
    )

    assert _slugs(medium_arrays) == ["3sum", "two-sum-ii"]
    assert _slugs(unsolved_easy) == ["merge-two-sorted-lists"]


def test_limit_keeps_total() -> None:
    _, index = _index()

    result = index.query(ProblemFilter(limit=2))

    assert len(result.problems) == 2
    assert result.total == 6


def test_generation_tracks_store_version() -> None:
    store, index = _index()

    assert index.generation == store.version
    assert index.query(ProblemFilter()).generation == store.version


def test_commit_listener_applies_changes_incrementally() -> None:
    store, index = _index()
    store.add_commit_listener(index.on_commit)
    rebuilds = index.full_rebuilds

    store.put(problem_key("two-sum"), make_problem(1, "Two Sum", status=ProblemStatus.TODO))
    store.put(problem_key("new-problem"), make_problem(3, "New Problem"))
    store.invalidate(problem_key("3sum"))

    assert wait_for(lambda: index.generation == store.version)
    assert index.full_rebuilds == rebuilds
    assert index.incremental_updates >= 1
    assert index.get("two-sum").status == ProblemStatus.TODO
    assert [p.frontend_id for p in index.query(ProblemFilter()).problems] == ["1", "2", "3", "21", "167", "170"]


def test_rebuild_from_older_snapshot_is_ignored() -> None:
    store, index = _index()
    old = store.snapshot()
    store.put(problem_key("x"), make_problem(99, "X"))
    index.rebuild()

    assert index.rebuild(old) == store.version
    assert index.get("x") is not None


def test_gate_rejects_result_of_earlier_query() -> None:
    _, index = _index()
    shown = []
    gate = LatestResultGate(on_accept=shown.append)
    seq_a = index.next_query_seq()
    seq_b = index.next_query_seq()

    result_b = index.query(ProblemFilter(text="sum"), query_seq=seq_b)
    result_a = index.query(ProblemFilter(text="two"), query_seq=seq_a)

    assert gate.offer(result_b)
    assert not gate.offer(result_a)
    assert gate.current is result_b
    assert shown == [result_b]


def test_query_async_late_result_is_dropped(engine) -> None:
    for p in CATALOG:
        engine.store.put(problem_key(p.slug), p)
    engine.index.rebuild()
    gate = LatestResultGate()
    release_a = threading.Event()

    def deliver_a(result):
        release_a.wait(5)
        gate.offer(result)

    future_a = engine.query_async(ProblemFilter(text="two"), deliver_a)
    future_b = engine.query_async(ProblemFilter(text="sum"), gate.offer)
    future_b.result(timeout=5)
    release_a.set()
    result_a = future_a.result(timeout=5)

    assert gate.current.query_seq == future_b.result().query_seq
    assert gate.current.query_seq > result_a.query_seq


def test_change_queued_after_later_commit_is_still_indexed() -> None:
    store, index = _index()
    two_sum = problem_key("two-sum")
    three_sum = problem_key("3sum")

    # Both commits land before the first one's keys reach the index
    store.put(three_sum, make_problem(15, "3Sum", Difficulty.MEDIUM, ProblemStatus.SOLVED, tags=("array",)))
    store.put(two_sum, make_problem(1, "Two Sum", Difficulty.EASY, ProblemStatus.ATTEMPTED))
    index.apply_changes([two_sum])
    assert index.generation == store.version

    index.apply_changes([three_sum])

    assert index.generation == store.version
    assert index.get("3sum").status == ProblemStatus.SOLVED
    assert index.get("two-sum").status == ProblemStatus.ATTEMPTED


def test_delayed_commit_listener_does_not_lose_update() -> None:
    store, index = _index()
    release = threading.Event()

    def slow_listener(keys, version):
        if problem_key("3sum") in keys:
            release.wait(5)
        index.on_commit(keys, version)

    store.add_commit_listener(slow_listener)
    writer = threading.Thread(
        target=store.put,
        args=(problem_key("3sum"), make_problem(15, "3Sum", Difficulty.MEDIUM, ProblemStatus.SOLVED)),
    )
    writer.start()
    assert wait_for(lambda: store.get(problem_key("3sum")).value.status == ProblemStatus.SOLVED)
    store.put(problem_key("two-sum"), make_problem(1, "Two Sum", status=ProblemStatus.TODO))
    index.flush_pending()
    release.set()
    writer.join(timeout=5)
    index.flush_pending()

    assert index.generation == store.version
    assert index.get("3sum").status == ProblemStatus.SOLVED
    assert index.get("two-sum").status == ProblemStatus.TODO
