"""Shared fixtures: an in-memory LeetCode stand-in and a fast engine config.

The project root is put on ``sys.path`` so ``import leetcli_py`` works when
the tests are run from a plain checkout.
"""

import os
import sys
import threading
import time
from collections import Counter
from dataclasses import replace
from typing import Callable, Dict, List, Optional

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from leetcli_py.client.base import RemoteClient  # noqa: E402
from leetcli_py.client.models import (  # noqa: E402
    CatalogPage,
    Difficulty,
    JobMode,
    JobResult,
    ListOp,
    ListOpKind,
    PersonalList,
    PollResult,
    ProblemDetail,
    ProblemStatus,
    ProblemSummary,
    UserStats,
)
from leetcli_py.config.engine_config import EngineConfig  # noqa: E402
from leetcli_py.engine import ChangeEvent, Engine  # noqa: E402
from leetcli_py.utils.backoff import BackoffPolicy  # noqa: E402

GATE_TIMEOUT = 5.0


def make_problem(
    number: int,
    title: Optional[str] = None,
    difficulty: Difficulty = Difficulty.EASY,
    status: ProblemStatus = ProblemStatus.TODO,
    tags=(),
    paid_only: bool = False,
) -> ProblemSummary:
    title = title or f"Problem {number}"
    return ProblemSummary(
        id=str(1000 + number),
        slug=title.lower().replace(" ", "-"),
        title=title,
        difficulty=difficulty,
        frontend_id=str(number),
        tags=tuple(tags),
        status=status,
        ac_rate=50.0,
        paid_only=paid_only,
    )


def accepted(**kwargs) -> PollResult:
    return PollResult("SUCCESS", JobResult(status_msg="Accepted", status_code=10, **kwargs))


def rejected(status_msg: str = "Wrong Answer", status_code: int = 11, **kwargs) -> PollResult:
    return PollResult("SUCCESS", JobResult(status_msg=status_msg, status_code=status_code, **kwargs))


PENDING = PollResult("PENDING")


class FakeRemote(RemoteClient):
    """
    In-memory LeetCode.

    ``page_errors`` maps a catalog cursor to the exception that page raises.
    ``gates`` maps a call name (``catalog:<cursor>``, ``poll``, ``lists``,
    ``mutate``) to an Event the call waits on before answering.
    ``poll_script`` is consumed one item per poll; exceptions are raised.
    ``submit_error``, ``detail_error`` and ``list_error`` are raised by those calls.
    """

    def __init__(self, problems: Optional[List[ProblemSummary]] = None, page_size: int = 2):
        self.problems: List[ProblemSummary] = list(problems or [])
        self.page_size = page_size
        self.page_errors: Dict[Optional[int], Exception] = {}
        self.gates: Dict[str, threading.Event] = {}
        self.poll_script: List[object] = []
        self.submit_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.detail_error: Optional[Exception] = None
        self.lists: Dict[str, PersonalList] = {}
        self.submitted: List[tuple] = []
        self.username: Optional[str] = "alice"
        self.calls: Counter = Counter()
        self._lock = threading.Lock()
        self._ids = 0

    def _enter(self, name: str, gate: Optional[str] = None) -> None:
        with self._lock:
            self.calls[name] += 1
        event = self.gates.get(gate or name)
        if event is not None:
            event.wait(GATE_TIMEOUT)

    def release_all(self) -> None:
        for event in self.gates.values():
            event.set()

    def fetch_catalog_page(self, cursor: Optional[int]) -> CatalogPage:
        self._enter("catalog", f"catalog:{cursor}")
        if cursor in self.page_errors:
            raise self.page_errors[cursor]
        start = cursor or 0
        chunk = tuple(self.problems[start:start + self.page_size])
        end = start + len(chunk)
        next_cursor = end if end < len(self.problems) else None
        return CatalogPage(problems=chunk, next_cursor=next_cursor, total=len(self.problems))

    def fetch_problem_detail(self, slug: str) -> ProblemDetail:
        self._enter("detail")
        if self.detail_error is not None:
            raise self.detail_error
        summary = next(p for p in self.problems if p.slug == slug)
        return ProblemDetail(
            id=summary.id,
            slug=summary.slug,
            title=summary.title,
            frontend_id=summary.frontend_id,
            difficulty=summary.difficulty,
            statement=f"Solve {summary.title}.",
            snippets={"python3": "class Solution:\n    pass\n"},
            sample_cases=("[1,2]", "3"),
        )

    def submit_code(
        self,
        problem: ProblemSummary,
        language: str,
        code: str,
        mode: JobMode,
        data_input: str = "",
    ) -> str:
        self._enter("submit")
        if self.submit_error is not None:
            raise self.submit_error
        with self._lock:
            self.submitted.append((problem.slug, language, code, mode, data_input))
            self._ids += 1
            return f"remote-{self._ids}"

    def poll_job(self, remote_job_id: str) -> PollResult:
        self._enter("poll")
        with self._lock:
            item = self.poll_script.pop(0) if self.poll_script else PENDING
        if isinstance(item, Exception):
            raise item
        return item

    def list_personal_lists(self) -> List[PersonalList]:
        with self._lock:
            answer = list(self.lists.values())
        self._enter("lists")
        return answer

    def mutate_personal_list(self, op: ListOp) -> Optional[str]:
        self._enter("mutate")
        if self.list_error is not None:
            raise self.list_error
        with self._lock:
            if op.kind == ListOpKind.CREATE:
                self._ids += 1
                new_id = f"fav{self._ids}"
                self.lists[new_id] = PersonalList(id=new_id, name=op.name)
                return new_id
            if op.kind == ListOpKind.DELETE:
                self.lists.pop(op.list_id, None)
                return None
            current = self.lists[op.list_id]
            ids = tuple(i for i in current.problem_ids if i != op.problem_id)
            if op.kind == ListOpKind.ADD:
                ids = current.problem_ids if op.problem_id in current.problem_ids else ids + (op.problem_id,)
            self.lists[op.list_id] = replace(current, problem_ids=ids)
            return None

    def fetch_username(self) -> Optional[str]:
        self._enter("username")
        return self.username

    def fetch_user_stats(self, username: str) -> UserStats:
        self._enter("stats")
        return UserStats(username=username, solved={"Easy": 1}, totals={"Easy": len(self.problems)})


def wait_for(predicate: Callable[[], bool], timeout: float = GATE_TIMEOUT) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class EventRecorder:
    """Collects change events published on the bus."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[ChangeEvent] = []

    def __call__(self, event: ChangeEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_kind(self, kind) -> List[ChangeEvent]:
        with self._lock:
            return [e for e in self.events if e.kind == kind]


@pytest.fixture
def fast_config(tmp_path) -> EngineConfig:
    return EngineConfig(
        cache_dir=tmp_path / "cache",
        sync_backoff=BackoffPolicy(initial=0.01, multiplier=2.0, maximum=0.05, jitter=0.0),
        poll_backoff=BackoffPolicy(initial=0.01, multiplier=1.5, maximum=0.03, jitter=0.0),
        run_timeout=2.0,
        submit_timeout=2.0,
        index_debounce=0.01,
        flush_delay=0.01,
    )


@pytest.fixture
def remote() -> FakeRemote:
    fake = FakeRemote([make_problem(i) for i in range(1, 6)], page_size=2)
    yield fake
    fake.release_all()


@pytest.fixture
def engine(remote, fast_config) -> Engine:
    """An engine over ``remote``, not started."""
    eng = Engine(remote, config=fast_config)
    yield eng
    remote.release_all()
    eng.close()


@pytest.fixture
def events(engine) -> EventRecorder:
    recorder = EventRecorder()
    engine.subscribe(recorder)
    return recorder
