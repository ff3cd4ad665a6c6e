"""Life cycle of run/submit jobs against the remote judge.

Each job is driven by one worker thread:

    Created -> Submitting -> Submitted -> Polling -> Accepted | Rejected | Error | TimedOut

with Cancelled reachable from every non-terminal state. Transitions only
move forward; a transition attempted from a terminal state is ignored,
which is how results arriving after a cancel or a timeout get discarded.
Remote calls run through the coalescer's pool so the worker can stop
waiting on them when the job is cancelled or its deadline passes.
"""

import itertools
import logging
import random
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..client.base import RemoteClient
from ..client.models import JobMode, JobResult, PollResult, ProblemDetail, ProblemStatus, ProblemSummary
from ..config.engine_config import EngineConfig
from ..errors import JobCancelled, JobTimeout, RateLimited, RemoteError, is_retriable
from .cache_store import CacheStore, detail_key, problem_key
from .coalescer import RequestCoalescer
from .notifications import ChangeBus, ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

# Judge status codes that mean the judge itself failed, not the solution
JUDGE_ERROR_CODES = {16, 21}
MAX_FINISHED_JOBS = 100


class JobState(str, Enum):
    CREATED = "Created"
    SUBMITTING = "Submitting"
    SUBMITTED = "Submitted"
    POLLING = "Polling"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    ERROR = "Error"
    TIMED_OUT = "TimedOut"
    CANCELLED = "Cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobState.ACCEPTED, JobState.REJECTED, JobState.ERROR, JobState.TIMED_OUT, JobState.CANCELLED}
)

_JOB_TRANSITIONS = {
    JobState.CREATED: {JobState.SUBMITTING, JobState.CANCELLED},
    JobState.SUBMITTING: {JobState.SUBMITTED, JobState.ERROR, JobState.TIMED_OUT, JobState.CANCELLED},
    JobState.SUBMITTED: {JobState.POLLING, JobState.CANCELLED},
    JobState.POLLING: {
        JobState.ACCEPTED,
        JobState.REJECTED,
        JobState.ERROR,
        JobState.TIMED_OUT,
        JobState.CANCELLED,
    },
}


@dataclass
class SubmissionJob:
    """One run or submit attempt. Mutated only by the JobTracker under ``lock``."""

    id: str
    problem_id: str
    language: str
    code: str
    mode: JobMode
    state: JobState = JobState.CREATED
    remote_id: Optional[str] = None
    attempts: int = 0
    next_poll_at: Optional[float] = None
    cancel_requested: bool = False
    result: Optional[JobResult] = None
    reason: str = ""
    history: Tuple[JobState, ...] = (JobState.CREATED,)
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    done: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)
    waiter: Optional[threading.Event] = field(default=None, repr=False, compare=False)

    @property
    def key(self) -> Tuple[str, JobMode]:
        return self.problem_id, self.mode

    @property
    def finished(self) -> bool:
        return self.state.terminal

    def snapshot(self) -> "SubmissionJob":
        """Copy safe to hand to the UI."""
        return replace(self, lock=threading.Lock(), done=threading.Event(), waiter=None)


class JobHandle:
    """What ``run_or_submit`` hands back to the UI."""

    def __init__(self, tracker: "JobTracker", job_id: str):
        self._tracker = tracker
        self.job_id = job_id

    def __repr__(self) -> str:
        return f"JobHandle({self.job_id!r}, {self.state.value})"

    @property
    def job(self) -> SubmissionJob:
        return self._tracker.get(self.job_id)

    @property
    def state(self) -> JobState:
        return self.job.state

    def wait(self, timeout: Optional[float] = None) -> SubmissionJob:
        """Block until the job is terminal (or ``timeout``) and return a snapshot."""
        self._tracker._job(self.job_id).done.wait(timeout)
        return self.job

    def result(self, timeout: Optional[float] = None) -> JobResult:
        """Wait and return the judge result, raising for cancel, timeout and errors."""
        job = self.wait(timeout)
        if job.state == JobState.CANCELLED:
            raise JobCancelled(f"Job {job.id} was cancelled")
        if job.state == JobState.TIMED_OUT:
            raise JobTimeout(job.reason or f"Job {job.id} timed out")
        if job.state == JobState.ERROR:
            raise RemoteError(job.reason or f"Job {job.id} failed")
        if not job.finished:
            raise JobTimeout(f"Job {job.id} still {job.state.value}")
        return job.result or JobResult()

    def cancel(self) -> bool:
        return self._tracker.cancel(self.job_id)


_ABANDONED = object()


class JobTracker:
    """Runs submission jobs concurrently, at most one per (problem, mode).

    ``detail_loader`` starts a fetch of a problem's detail and returns its
    future; Run jobs without explicit input use it to find the sample cases.
    Without one, the tracker asks the remote client directly.
    """

    def __init__(
        self,
        remote: RemoteClient,
        store: CacheStore,
        coalescer: RequestCoalescer,
        bus: ChangeBus,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        detail_loader: Optional[Callable[[str], "Future[ProblemDetail]"]] = None,
    ):
        self.remote = remote
        self.store = store
        self.coalescer = coalescer
        self.bus = bus
        self.config = config or EngineConfig()
        self.clock = clock
        self.rng = rng or random.Random()
        self.detail_loader = detail_loader

        self._lock = threading.Lock()
        self._jobs: "OrderedDict[str, SubmissionJob]" = OrderedDict()
        self._active: Dict[Tuple[str, JobMode], SubmissionJob] = {}
        self._ids = itertools.count(1)
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="job")

    def timeout_for(self, mode: JobMode) -> float:
        return self.config.run_timeout if mode == JobMode.RUN else self.config.submit_timeout

    # Public API

    def start(
        self,
        problem: ProblemSummary,
        language: str,
        code: str,
        mode: JobMode,
        data_input: Optional[str] = None,
    ) -> JobHandle:
        """Create and launch a job, cancelling any pending one for the same problem and mode.

        A Run without ``data_input`` uses the problem's sample cases, looked
        up on the job's worker.
        """
        job = SubmissionJob(
            id=f"job-{next(self._ids)}",
            problem_id=problem.slug,
            language=language,
            code=code,
            mode=mode,
        )
        with self._lock:
            previous = self._active.get(job.key)
            self._jobs[job.id] = job
            self._active[job.key] = job
            self._trim_locked()
        if previous is not None:
            logger.info("Cancelling %s: superseded by %s", previous.id, job.id)
            self._cancel(previous, reason=f"Superseded by {job.id}")

        self._publish(job)
        self._executor.submit(self._drive, job, problem, data_input)
        return JobHandle(self, job.id)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation. Returns False if the job already finished."""
        return self._cancel(self._job(job_id), reason="Cancelled by user")

    def get(self, job_id: str) -> SubmissionJob:
        job = self._job(job_id)
        with job.lock:
            return job.snapshot()

    def jobs(self) -> List[SubmissionJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        return [self.get(j.id) for j in jobs]

    def active(self, problem_id: str, mode: JobMode) -> Optional[SubmissionJob]:
        with self._lock:
            job = self._active.get((problem_id, mode))
        return self.get(job.id) if job is not None else None

    def close(self) -> None:
        with self._lock:
            jobs = list(self._active.values())
        for job in jobs:
            self._cancel(job, reason="Shutting down")
        self._executor.shutdown(wait=False, cancel_futures=True)

    # Internals

    def _job(self, job_id: str) -> SubmissionJob:
        with self._lock:
            try:
                return self._jobs[job_id]
            except KeyError:
                raise KeyError(f"Unknown job {job_id!r}") from None

    def _trim_locked(self) -> None:
        finished = [j.id for j in self._jobs.values() if j.finished]
        for job_id in finished[: max(0, len(finished) - MAX_FINISHED_JOBS)]:
            del self._jobs[job_id]

    def _cancel(self, job: SubmissionJob, reason: str) -> bool:
        with job.lock:
            if job.state.terminal:
                return False
            job.cancel_requested = True
            self._apply_locked(job, JobState.CANCELLED, {"reason": reason})
            waiter = job.waiter
        if waiter is not None:
            waiter.set()
        self._finished(job)
        return True

    def _transition(self, job: SubmissionJob, new_state: JobState, **changes: Any) -> bool:
        """Move ``job`` forward. Returns False (and changes nothing) if not allowed."""
        with job.lock:
            allowed = _JOB_TRANSITIONS.get(job.state, set())
            if new_state not in allowed:
                logger.debug("Job %s: ignoring %s -> %s", job.id, job.state.value, new_state.value)
                return False
            self._apply_locked(job, new_state, changes)
        self._finished(job)
        return True

    @staticmethod
    def _apply_locked(job: SubmissionJob, new_state: JobState, changes: Dict[str, Any]) -> None:
        for name, value in changes.items():
            setattr(job, name, value)
        job.state = new_state
        job.history = job.history + (new_state,)
        if new_state.terminal:
            job.finished_at = time.time()
            job.next_poll_at = None

    def _finished(self, job: SubmissionJob) -> None:
        """Publish the transition just applied and release waiters on a terminal state."""
        terminal = job.state.terminal
        if terminal:
            with self._lock:
                if self._active.get(job.key) is job:
                    del self._active[job.key]
            logger.info("Job %s (%s %s) finished: %s %s", job.id, job.mode.value, job.problem_id, job.state.value, job.reason)
        self._publish(job)
        if terminal:
            job.done.set()

    def _publish(self, job: SubmissionJob) -> None:
        with job.lock:
            snap = job.snapshot()
        self.bus.publish(
            ChangeEvent(
                ChangeKind.JOB_UPDATED,
                task=job.id,
                keys=(problem_key(job.problem_id),),
                message=f"{job.mode.value} {job.problem_id}: {snap.state.value}",
                payload=snap,
            )
        )

    def _await(self, job: SubmissionJob, future: Future, deadline: float):
        """Wait for ``future`` unless the job is cancelled or its deadline passes first.

        Returns the call's result or exception, or ``_ABANDONED`` if the job
        was cancelled or timed out meanwhile; an abandoned call is left to
        finish on its own and its outcome is dropped.
        """
        woke = threading.Event()
        with job.lock:
            job.waiter = woke
            cancelled = job.cancel_requested
        future.add_done_callback(lambda _: woke.set())
        try:
            while True:
                if cancelled or job.cancel_requested:
                    return _ABANDONED
                if future.done():
                    error = future.exception()
                    return error if error is not None else future.result()
                remaining = deadline - self.clock()
                if remaining <= 0:
                    self._timed_out(job)
                    return _ABANDONED
                woke.wait(remaining)
        finally:
            with job.lock:
                if job.waiter is woke:
                    job.waiter = None

    def _sleep(self, job: SubmissionJob, seconds: float) -> bool:
        """Sleep between polls. Returns False if the job was cancelled meanwhile."""
        woke = threading.Event()
        with job.lock:
            if job.cancel_requested:
                return False
            job.waiter = woke
        try:
            woke.wait(max(0.0, seconds))
        finally:
            with job.lock:
                if job.waiter is woke:
                    job.waiter = None
        return not job.cancel_requested

    def _timed_out(self, job: SubmissionJob) -> None:
        timeout = self.timeout_for(job.mode)
        self._transition(job, JobState.TIMED_OUT, reason=f"No verdict within {timeout:.0f}s")

    def _drive(self, job: SubmissionJob, problem: ProblemSummary, data_input: Optional[str]) -> None:
        try:
            self._run(job, problem, data_input)
        except Exception as e:
            logger.exception("Job %s crashed", job.id)
            self._transition(job, JobState.ERROR, reason=f"Internal error: {e}")

    def _run(self, job: SubmissionJob, problem: ProblemSummary, data_input: Optional[str]) -> None:
        deadline = self.clock() + self.timeout_for(job.mode)

        if not self._transition(job, JobState.SUBMITTING):
            return
        if data_input is None:
            data_input = ""
            if job.mode == JobMode.RUN:
                outcome = self._sample_input(job, problem, deadline)
                if outcome is _ABANDONED:
                    return
                if isinstance(outcome, BaseException):
                    self._transition(job, JobState.ERROR, reason=f"Could not load sample cases: {outcome}")
                    return
                data_input = outcome
        future = self.coalescer.submit(
            "submit",
            job.id,
            partial(self.remote.submit_code, problem, job.language, job.code, job.mode, data_input),
        )
        outcome = self._await(job, future, deadline)
        if outcome is _ABANDONED:
            return
        if isinstance(outcome, BaseException):
            self._transition(job, JobState.ERROR, reason=f"Submit failed: {outcome}")
            return
        if not self._transition(job, JobState.SUBMITTED, remote_id=str(outcome)):
            return
        if not self._transition(job, JobState.POLLING):
            return

        policy = self.config.poll_backoff
        errors = 0
        poll_number = 0
        while True:
            if job.cancel_requested:
                self._transition(job, JobState.CANCELLED)
                return
            if self.clock() >= deadline:
                self._timed_out(job)
                return

            with job.lock:
                job.attempts += 1
            future = self.coalescer.submit(
                "poll", job.remote_id, partial(self.remote.poll_job, job.remote_id)
            )
            outcome = self._await(job, future, deadline)
            if outcome is _ABANDONED:
                return

            extra_delay = 0.0
            if isinstance(outcome, BaseException):
                retriable = is_retriable(outcome)
                errors += 1
                if not retriable or errors > self.config.max_poll_errors:
                    self._transition(job, JobState.ERROR, reason=f"Polling failed: {outcome}")
                    return
                logger.debug("Job %s poll error %d: %s", job.id, errors, outcome)
                if isinstance(outcome, RateLimited):
                    extra_delay = outcome.retry_after or 0.0
            else:
                errors = 0
                poll: PollResult = outcome
                if poll.finished:
                    self._finish(job, poll.result or JobResult())
                    return

            delay = max(policy.delay(poll_number, self.rng), extra_delay)
            poll_number += 1
            with job.lock:
                job.next_poll_at = self.clock() + delay
            if not self._sleep(job, min(delay, max(0.0, deadline - self.clock()))):
                self._transition(job, JobState.CANCELLED)
                return

    def _sample_input(self, job: SubmissionJob, problem: ProblemSummary, deadline: float):
        """The cached sample input of ``problem``, fetching the detail if needed."""
        entry = self.store.get(detail_key(problem.slug))
        if entry is not None:
            return entry.value.sample_input
        if self.detail_loader is not None:
            future = self.detail_loader(problem.slug)
        else:
            future = self.coalescer.submit(
                "detail", problem.slug, partial(self.remote.fetch_problem_detail, problem.slug)
            )
        outcome = self._await(job, future, deadline)
        if outcome is _ABANDONED or isinstance(outcome, BaseException):
            return outcome
        return outcome.sample_input

    def _finish(self, job: SubmissionJob, result: JobResult) -> None:
        if result.status_code in JUDGE_ERROR_CODES:
            self._transition(job, JobState.ERROR, result=result, reason=result.status_msg or "Judge error")
            return

        accepted = result.status_accepted
        if job.mode == JobMode.RUN:
            accepted = accepted and result.correct_answer is not False
        reason = result.status_msg
        if result.status_accepted and not accepted:
            reason = "Wrong Answer"

        new_state = JobState.ACCEPTED if accepted else JobState.REJECTED
        if not self._transition(job, new_state, result=result, reason=reason):
            return
        if job.mode == JobMode.SUBMIT:
            self._record_status(job, accepted)

    def _record_status(self, job: SubmissionJob, accepted: bool) -> None:
        """Write the verdict into the cached catalog with a fresh sequence number.

        The sequence number makes this status win over any catalog page that
        was fetched before the verdict but merged after it.
        """
        key = problem_key(job.problem_id)
        with self.store.locked([key]):
            entry = self.store.get(key)
            if entry is None:
                return
            current = entry.value.status
            if accepted:
                status = ProblemStatus.SOLVED
            elif current == ProblemStatus.TODO:
                status = ProblemStatus.ATTEMPTED
            else:
                return
            seqs = dict(entry.seqs)
            seqs["status"] = self.store.next_seq()
            self.store.put(
                key,
                replace(entry.value, status=status),
                ttl=entry.ttl,
                version=entry.version,
                seqs=seqs,
            )
        logger.info("Marked %s as %s", job.problem_id, status.value)
