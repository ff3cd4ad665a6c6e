"""Tests for LeetCodeClient response parsing and error mapping."""

from typing import Any, List, Optional

import pytest
import requests

from leetcli_py.client import LeetCodeClient, html_to_text
from leetcli_py.client.base import RemoteClient
from leetcli_py.client.models import Difficulty, JobMode, ListOp, ProblemStatus
from leetcli_py.config import GlobalConfig
from leetcli_py.errors import AuthError, NetworkError, RateLimited, RemoteError

from conftest import make_problem


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = "", headers=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Replays queued responses and records requests."""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.requests: List[tuple] = []
        self.cookies = requests.cookies.RequestsCookieJar()

    def request(self, method: str, url: str, headers=None, **kwargs):
        self.requests.append((method, url, headers, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(tmp_path, *responses) -> LeetCodeClient:
    config = GlobalConfig(session="sess", csrf_token="csrf", username="alice")
    client = LeetCodeClient(config=config, config_path=tmp_path / "global.json", page_size=2)
    client.session = FakeSession(list(responses))
    return client


def _question(number: int, status: Optional[str] = None) -> dict:
    return {
        "questionId": str(1000 + number),
        "frontendQuestionId": str(number),
        "title": f"Problem {number}",
        "titleSlug": f"problem-{number}",
        "difficulty": "Medium",
        "status": status,
        "acRate": 47.5,
        "isPaidOnly": False,
        "topicTags": [{"name": "Array", "slug": "array"}],
    }


def test_catalog_page_is_parsed_with_cursor(tmp_path) -> None:
    listing = {"total": 3, "questions": [_question(1, "ac"), _question(2, "notac")]}
    client = _client(tmp_path, FakeResponse(payload={"data": {"problemsetQuestionList": listing}}))

    page = client.fetch_catalog_page(None)

    assert page.next_cursor == 2
    assert page.total == 3
    first, second = page.problems
    assert first.id == "1001" and first.frontend_id == "1"
    assert first.difficulty == Difficulty.MEDIUM
    assert first.status == ProblemStatus.SOLVED
    assert second.status == ProblemStatus.ATTEMPTED
    assert first.tags == ("array",)
    method, url, headers, kwargs = client.session.requests[0]
    assert headers["x-csrftoken"] == "csrf"
    assert kwargs["json"]["variables"]["skip"] == 0


def test_last_catalog_page_has_no_cursor(tmp_path) -> None:
    listing = {"total": 3, "questions": [_question(3)]}
    client = _client(tmp_path, FakeResponse(payload={"data": {"problemsetQuestionList": listing}}))

    page = client.fetch_catalog_page(2)

    assert page.next_cursor is None
    assert page.problems[0].status == ProblemStatus.TODO


@pytest.mark.parametrize(
    "response, error",
    [
        (FakeResponse(401), AuthError),
        (FakeResponse(403), AuthError),
        (FakeResponse(429, headers={"Retry-After": "7"}), RateLimited),
        (FakeResponse(502), NetworkError),
        (FakeResponse(404, text="not found"), RemoteError),
        (requests.ConnectionError("refused"), NetworkError),
        (requests.Timeout("read timed out"), NetworkError),
        (FakeResponse(200, text="<html><body>Sign in</body></html>"), AuthError),
    ],
)
def test_failures_map_to_error_types(tmp_path, response, error) -> None:
    client = _client(tmp_path, response)

    with pytest.raises(error):
        client.fetch_catalog_page(None)


def test_rate_limit_carries_retry_after(tmp_path) -> None:
    client = _client(tmp_path, FakeResponse(429, headers={"Retry-After": "7"}))

    with pytest.raises(RateLimited) as info:
        client.poll_job("123")

    assert info.value.retry_after == 7.0


def test_run_posts_sample_input_and_returns_interpret_id(tmp_path) -> None:
    client = _client(tmp_path, FakeResponse(payload={"interpret_id": "run_abc"}))

    remote_id = client.submit_code(make_problem(1), "python3", "code", JobMode.RUN, "[1,2]")

    assert remote_id == "run_abc"
    method, url, _, kwargs = client.session.requests[0]
    assert url.endswith("/problems/problem-1/interpret_solution/")
    assert kwargs["json"] == {
        "lang": "python3",
        "question_id": "1001",
        "typed_code": "code",
        "data_input": "[1,2]",
    }


def test_submit_returns_submission_id(tmp_path) -> None:
    client = _client(tmp_path, FakeResponse(payload={"submission_id": 987}))

    assert client.submit_code(make_problem(1), "cpp", "code", JobMode.SUBMIT) == "987"


def test_poll_parses_finished_verdict(tmp_path) -> None:
    check = {
        "state": "SUCCESS",
        "status_code": 11,
        "status_msg": "Wrong Answer",
        "total_correct": 5,
        "total_testcases": 9,
        "code_output": "[0,2]",
        "expected_output": "[0,1]",
        "last_testcase": "[2,7,11,15]\n9",
    }
    client = _client(tmp_path, FakeResponse(payload={"state": "STARTED"}), FakeResponse(payload=check))

    assert not client.poll_job("1").finished
    poll = client.poll_job("1")

    assert poll.finished
    assert poll.result.status_msg == "Wrong Answer"
    assert not poll.result.status_accepted
    assert poll.result.code_output == ("[0,2]",)


def test_personal_lists_are_parsed(tmp_path) -> None:
    favorites = {
        "allFavorites": [
            {"idHash": "abc", "name": "Warmup", "description": None, "questions": [{"questionId": "1001"}]}
        ]
    }
    client = _client(tmp_path, FakeResponse(payload={"data": {"favoritesLists": favorites}}))

    (warmup,) = client.list_personal_lists()

    assert warmup.id == "abc"
    assert warmup.problem_ids == ("1001",)
    assert warmup.description == ""


def test_create_list_returns_new_id(tmp_path) -> None:
    client = _client(tmp_path, FakeResponse(payload={"id_hash": "xyz"}))

    assert client.mutate_personal_list(ListOp.create("Graphs")) == "xyz"


def test_login_saves_verified_session(tmp_path) -> None:
    signed_in = {"data": {"userStatus": {"isSignedIn": True, "username": "bob"}}}
    client = _client(tmp_path, FakeResponse(payload=signed_in))

    assert client.login(session="new-session", csrf_token="new-csrf")

    saved = GlobalConfig.load(tmp_path / "global.json")
    assert (saved.session, saved.csrf_token, saved.username) == ("new-session", "new-csrf", "bob")


def test_login_with_rejected_session_saves_nothing(tmp_path) -> None:
    signed_out = {"data": {"userStatus": {"isSignedIn": False, "username": ""}}}
    client = _client(tmp_path, FakeResponse(payload=signed_out))

    assert not client.login(session="bad", csrf_token="bad")
    assert not (tmp_path / "global.json").exists()


def test_html_to_text_keeps_structure() -> None:
    html = "<p>Given <code>nums</code>, return x<sup>2</sup>.</p><p></p><p>Example:</p><pre>1<br>2</pre>"

    text = html_to_text(html)

    assert "Given nums, return x^2." in text
    assert "1\n2" in text
    assert "\n\n\n" not in text


def test_remote_client_must_provide_user_stats() -> None:
    class NoStats(RemoteClient):
        def fetch_catalog_page(self, cursor):
            raise NotImplementedError

        def fetch_problem_detail(self, slug):
            raise NotImplementedError

        def submit_code(self, problem, language, code, mode, data_input=""):
            raise NotImplementedError

        def poll_job(self, remote_job_id):
            raise NotImplementedError

        def list_personal_lists(self):
            return []

        def mutate_personal_list(self, op):
            return None

    with pytest.raises(TypeError):
        NoStats()
