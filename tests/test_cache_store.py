"""Tests for the persistent CacheStore."""

import json

from leetcli_py.client.models import PersonalList, ProblemStatus
from leetcli_py.engine.cache_store import (
    CATALOG_META,
    CacheStore,
    CacheWrite,
    list_key,
    problem_key,
)

from conftest import make_problem, wait_for


def _fill(store: CacheStore) -> None:
    problem = make_problem(1, status=ProblemStatus.SOLVED, tags=("array",))
    store.put(problem_key(problem.slug), problem, version="abc", seqs={"status": store.next_seq()})
    store.put(list_key("fav1"), PersonalList(id="fav1", name="Warmup", problem_ids=("1001",)), ttl=600.0)
    store.put(CATALOG_META, {"total": 1, "count": 1, "pages": 1}, ttl=3600.0)


def test_reload_gives_identical_snapshot(tmp_path) -> None:
    path = tmp_path / "cache.json"
    store = CacheStore(path)
    _fill(store)
    store.close()

    reloaded = CacheStore(path)

    assert dict(reloaded.snapshot().entries) == dict(store.snapshot().entries)
    assert not reloaded.recovered_from_corruption


def test_reload_restores_write_sequence(tmp_path) -> None:
    path = tmp_path / "cache.json"
    store = CacheStore(path)
    _fill(store)
    store.close()
    last = store.current_seq()

    reloaded = CacheStore(path)

    assert reloaded.next_seq() == last + 1


def test_unreadable_file_starts_empty_and_flags_recovery(tmp_path) -> None:
    path = tmp_path / "cache.json"
    path.write_text("{ this is not json", encoding="utf-8")

    store = CacheStore(path)

    assert len(store.snapshot()) == 0
    assert store.recovered_from_corruption


def test_bad_records_are_skipped_and_unknown_fields_ignored(tmp_path) -> None:
    path = tmp_path / "cache.json"
    problem = make_problem(2)
    good = {
        "schema_version": 1,
        "key": problem_key(problem.slug),
        "payload": dict(problem.to_dict(), added_later="ignored"),
        "fetched_at": 10.0,
        "ttl": None,
        "version": "v",
        "seqs": {},
        "something_new": True,
    }
    bad = {"key": problem_key("broken"), "payload": {"slug": "broken"}}
    path.write_text(json.dumps({"schema_version": 1, "records": [good, bad]}), encoding="utf-8")

    store = CacheStore(path)

    assert store.keys() == [problem_key(problem.slug)]
    assert store.get(problem_key(problem.slug)).value == problem
    assert not store.recovered_from_corruption


def test_stale_temp_files_are_removed_on_open(tmp_path) -> None:
    path = tmp_path / "cache.json"
    leftover = tmp_path / ".cache.json.abc123.tmp"
    leftover.write_text("partial", encoding="utf-8")

    CacheStore(path)

    assert not leftover.exists()


def test_flush_leaves_no_temp_files(tmp_path) -> None:
    path = tmp_path / "cache.json"
    store = CacheStore(path)
    _fill(store)

    assert store.flush()
    assert path.exists()
    assert list(tmp_path.glob("*.tmp")) == []


def test_commits_are_written_in_the_background(tmp_path) -> None:
    path = tmp_path / "cache.json"
    store = CacheStore(path, flush_delay=0.2)

    _fill(store)

    # Writers never wait for the disk
    assert not path.exists()
    assert wait_for(lambda: path.exists())
    assert len(CacheStore(path).snapshot()) == 3
    store.close()


def test_close_writes_pending_commits(tmp_path) -> None:
    path = tmp_path / "cache.json"
    store = CacheStore(path, flush_delay=60.0)
    _fill(store)

    store.close()

    assert len(CacheStore(path).snapshot()) == 3


def test_snapshot_is_isolated_from_later_writes() -> None:
    store = CacheStore()
    problem = make_problem(1)
    store.put(problem_key(problem.slug), problem)
    before = store.snapshot()

    store.put(problem_key(problem.slug), make_problem(1, status=ProblemStatus.SOLVED))
    store.put(problem_key("other"), make_problem(2))

    assert before.get(problem_key(problem.slug)).value.status == ProblemStatus.TODO
    assert before.get(problem_key("other")) is None
    assert store.snapshot().version == before.version + 2


def test_put_many_commits_once_and_notifies_listeners() -> None:
    store = CacheStore()
    seen = []
    store.add_commit_listener(lambda keys, version: seen.append((keys, version)))

    version = store.put_many(
        [
            CacheWrite(problem_key("a"), make_problem(1, title="A")),
            CacheWrite(problem_key("b"), make_problem(2, title="B")),
        ]
    )

    assert version == 1
    assert seen == [((problem_key("a"), problem_key("b")), 1)]


def test_failing_listener_does_not_break_commit() -> None:
    store = CacheStore()

    def explode(keys, version):
        raise RuntimeError("boom")

    store.add_commit_listener(explode)
    store.put(problem_key("a"), make_problem(1, title="A"))

    assert store.get(problem_key("a")) is not None


def test_expiry_follows_ttl() -> None:
    now = [100.0]
    store = CacheStore(clock=lambda: now[0])
    entry = store.put(CATALOG_META, {}, ttl=10.0)

    assert not entry.is_expired(now=105.0)
    assert entry.is_expired(now=110.0)
    assert not store.put("meta:forever", {}).is_expired(now=1e12)


def test_invalidate_reports_missing_keys() -> None:
    store = CacheStore()
    store.put(problem_key("a"), make_problem(1, title="A"))

    assert store.invalidate(problem_key("a"))
    assert not store.invalidate(problem_key("a"))
    assert store.get(problem_key("a")) is None
