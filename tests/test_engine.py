"""Tests for the Engine facade and the command line."""

import json
import threading

import pytest
from click.testing import CliRunner

from leetcli_py import __version__, cli as cli_module
from leetcli_py.client.models import JobMode, PersonalList
from leetcli_py.config import Language, LocalConfig
from leetcli_py.engine import ChangeKind, Engine, JobState

from conftest import EventRecorder, FakeRemote, accepted, make_problem, wait_for


def test_find_problem_by_slug_frontend_id_or_id(engine) -> None:
    engine.sync.sync_catalog()

    assert engine.find_problem("problem-3").frontend_id == "3"
    assert engine.find_problem("3").slug == "problem-3"
    assert engine.find_problem("1003").slug == "problem-3"
    assert engine.find_problem("42") is None


def test_unsubscribe_stops_delivery(engine) -> None:
    recorder = EventRecorder()
    unsubscribe = engine.subscribe(recorder)
    engine.sync.sync_catalog()
    seen = len(recorder.events)

    unsubscribe()
    engine.sync.sync_catalog()

    assert seen > 0
    assert len(recorder.events) == seen


def test_failing_subscriber_does_not_break_sync(engine) -> None:
    def explode(event):
        raise RuntimeError("ui crashed")

    engine.subscribe(explode)

    assert engine.sync.sync_catalog().total == 5


def test_open_uses_local_config(tmp_path, remote) -> None:
    local = LocalConfig(language=Language.CPP, engine={"cache_dir": str(tmp_path / "c"), "run_timeout": 5})

    engine = Engine.open(remote, local_config=local, start=False)
    try:
        assert engine.language == Language.CPP
        assert engine.config.run_timeout == 5.0
        assert engine.store.path == tmp_path / "c" / "cache.json"
    finally:
        engine.close()


def test_default_language_comes_from_engine(remote, fast_config) -> None:
    engine = Engine(remote, config=fast_config, language=Language.JAVA)
    try:
        engine.sync.sync_catalog()
        remote.poll_script = [accepted()]

        job = engine.run_or_submit("1", "class Solution {}", JobMode.SUBMIT).wait(timeout=5)

        assert job.state == JobState.ACCEPTED
        assert job.language == "java"
    finally:
        engine.close()


def test_closed_engine_serves_from_disk_on_next_start(remote, fast_config) -> None:
    first = Engine(remote, config=fast_config)
    first.start()
    first.close()
    remote.gates["catalog:None"] = threading.Event()

    second = Engine(remote, config=fast_config)
    try:
        second.start()
        # Served from the cache while the background refresh is still blocked
        assert second.get_problem_list().total == 5
    finally:
        remote.release_all()
        second.close()


def _readable(path) -> bool:
    try:
        return json.loads(path.read_text(encoding="utf-8"))["schema_version"] == 1
    except ValueError:
        return False


def test_corrupt_cache_is_rebuilt(remote, fast_config) -> None:
    fast_config.cache_dir.mkdir(parents=True)
    fast_config.cache_path.write_text('{"records": [truncated', encoding="utf-8")
    engine = Engine(remote, config=fast_config)
    recorder = EventRecorder()
    engine.subscribe(recorder)
    try:
        engine.start()

        assert recorder.of_kind(ChangeKind.CACHE_RECOVERED)
        assert engine.get_problem_list().total == 5
        assert wait_for(lambda: _readable(fast_config.cache_path))
    finally:
        engine.close()


def test_lists_are_sorted_by_name(engine, remote) -> None:
    remote.lists = {
        "b": PersonalList(id="b", name="beta"),
        "a": PersonalList(id="a", name="Alpha"),
    }
    engine.sync.sync_lists()

    assert [pl.id for pl in engine.lists()] == ["a", "b"]


class LoggedInRemote(FakeRemote):
    def auto_login(self) -> bool:
        return True


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Run CLI commands against a fake LeetCode from a workspace in tmp_path."""
    fake = LoggedInRemote([make_problem(1, "Two Sum"), make_problem(2, "Add Two Numbers")], page_size=10)
    LocalConfig(engine={"cache_dir": str(tmp_path / "cache")}).save(tmp_path / LocalConfig.FILE_NAME)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli_module, "LeetCodeClient", lambda: fake)
    yield fake
    fake.release_all()


def test_cli_version() -> None:
    result = CliRunner().invoke(cli_module.cli, ["version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_cli_problems_lists_matches(cli_env) -> None:
    result = CliRunner().invoke(cli_module.cli, ["problems", "--search", "two"])

    assert result.exit_code == 0, result.output
    assert "Two Sum" in result.output
    assert "Add Two Numbers" in result.output


def test_cli_submit_reports_verdict(cli_env, tmp_path) -> None:
    solution = tmp_path / "1.two-sum.py"
    solution.write_text("class Solution: pass\n", encoding="utf-8")
    cli_env.poll_script = [accepted(runtime="3 ms")]

    result = CliRunner().invoke(cli_module.cli, ["submit", str(solution)])

    assert result.exit_code == 0, result.output
    assert "Accepted" in result.output
    assert cli_env.submitted[0][:2] == ("two-sum", "python3")


def test_cli_lists_add(cli_env) -> None:
    cli_env.lists["fav9"] = PersonalList(id="fav9", name="Warmup")

    result = CliRunner().invoke(cli_module.cli, ["lists", "add", "Warmup", "1"])

    assert result.exit_code == 0, result.output
    assert wait_for(lambda: cli_env.lists["fav9"].problem_ids == ("1001",))
