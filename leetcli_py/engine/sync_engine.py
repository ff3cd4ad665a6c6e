"""Background synchronization of the local cache with the platform.

Refresh work is modelled as ``RefreshTask`` objects moving through
``Idle -> Scheduled -> Running -> (Idle | Backoff -> Scheduled)``. A single
dispatcher thread pops due tasks off a heap and hands them to a small
worker pool, so slow tasks never hold up unrelated ones.

Remote data is merged field by field: a field written locally after a sync
started (its sequence number is newer than the sync's start sequence) keeps
the local value. That is how a status set by an accepted submission, or a
list edit made mid-sync, survives a sync that fetched older data.
"""

import hashlib
import heapq
import itertools
import json
import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from ..client.base import RemoteClient
from ..client.models import (
    LOCAL_LIST_PREFIX,
    ListOp,
    ListOpKind,
    PersonalList,
    ProblemDetail,
    ProblemSummary,
    UserStats,
)
from ..config.engine_config import EngineConfig
from ..errors import AuthError, NetworkError, RateLimited, RemoteError
from .cache_store import (
    CATALOG_META,
    LIST_PREFIX,
    LISTS_META,
    PROBLEM_PREFIX,
    STATS_META,
    CacheEntry,
    CacheStore,
    CacheWrite,
    detail_key,
    key_suffix,
    list_key,
    problem_key,
)
from .coalescer import RequestCoalescer
from .notifications import ChangeBus, ChangeEvent, ChangeKind
from .search_index import SearchIndex

logger = logging.getLogger(__name__)

CATALOG_TASK = "catalog"
LISTS_TASK = "lists"
STATS_TASK = "stats"
DETAIL_TASK_PREFIX = "detail:"

MAX_ONE_SHOT_FAILURES = 5

_LIST_FIELDS = ("name", "problem_ids", "description")


class TaskState(str, Enum):
    IDLE = "Idle"
    SCHEDULED = "Scheduled"
    RUNNING = "Running"
    BACKOFF = "Backoff"


_TASK_TRANSITIONS = {
    TaskState.IDLE: {TaskState.SCHEDULED},
    TaskState.SCHEDULED: {TaskState.SCHEDULED, TaskState.RUNNING},
    TaskState.RUNNING: {TaskState.IDLE, TaskState.BACKOFF},
    TaskState.BACKOFF: {TaskState.SCHEDULED},
}


@dataclass
class RefreshTask:
    """A periodic or one-shot refresh of one cache category."""

    key: str
    interval: Optional[float] = None
    priority: int = 5
    state: TaskState = TaskState.IDLE
    next_run: float = 0.0
    last_run: Optional[float] = None
    last_success: Optional[float] = None
    failures: int = 0
    last_error: Optional[str] = None
    rerun: bool = False
    token: int = 0
    history: List[TaskState] = field(default_factory=list)

    @property
    def periodic(self) -> bool:
        return self.interval is not None

    def move(self, new_state: TaskState) -> None:
        if new_state not in _TASK_TRANSITIONS[self.state]:
            raise RuntimeError(f"Task {self.key}: illegal transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        del self.history[:-32]


@dataclass(frozen=True)
class SyncReport:
    task: str
    pages: int = 0
    changed: int = 0
    pruned: int = 0
    total: int = 0


@dataclass
class ListMutation:
    """Result of an optimistic list edit.

    ``optimistic`` is the list as it looks locally right now (None after a
    delete). ``future`` resolves to True once the platform confirms, or
    raises the platform's error after the local edit has been rolled back.
    """

    op: ListOp
    list_id: str
    optimistic: Optional[PersonalList]
    future: "Future[bool]"

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.future.result(timeout=timeout)

    @property
    def done(self) -> bool:
        return self.future.done()


def fingerprint(value) -> str:
    """Content hash used as the version token of remote-sourced entries."""
    payload = json.dumps(value.to_dict(), sort_keys=True, ensure_ascii=False)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]


def _format_time(timestamp: Optional[float]) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M")


class SyncEngine:
    """Schedules refresh tasks and merges remote data into the CacheStore."""

    def __init__(
        self,
        remote: RemoteClient,
        store: CacheStore,
        coalescer: RequestCoalescer,
        bus: ChangeBus,
        index: SearchIndex,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.remote = remote
        self.store = store
        self.coalescer = coalescer
        self.bus = bus
        self.index = index
        self.config = config or EngineConfig()
        self.clock = clock

        self._cond = threading.Condition()
        self._tasks: Dict[str, RefreshTask] = {}
        self._heap: List[Tuple[float, int, int, str]] = []
        self._counter = itertools.count()
        self._running = 0
        self._paused = False
        self._stopped = False
        self._dispatcher: Optional[threading.Thread] = None
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.sync_workers, thread_name_prefix="sync"
        )

        self._run_locks: Dict[str, threading.Lock] = {CATALOG_TASK: threading.Lock(), LISTS_TASK: threading.Lock()}
        self._lists_guard = threading.Lock()
        # Unconfirmed edits per list id; ids without edits in flight have no entry
        self._pending_list_ops: Dict[str, int] = {}
        self._tombstones: Dict[str, int] = {}

    # Life cycle

    def start(self) -> None:
        """Bring the cache up to date enough to serve, then start background refresh."""
        catalog = self.store.get(CATALOG_META)
        recovered = self.store.recovered_from_corruption
        if recovered:
            self.bus.publish(
                ChangeEvent(
                    ChangeKind.CACHE_RECOVERED,
                    task=CATALOG_TASK,
                    message="Local cache was unreadable; rebuilding it from LeetCode",
                )
            )

        now = self.clock()
        self.add_task(RefreshTask(CATALOG_TASK, interval=self.config.catalog_refresh_interval, priority=5))
        self.add_task(RefreshTask(LISTS_TASK, interval=self.config.lists_refresh_interval, priority=1), delay=0.0)
        self.add_task(RefreshTask(STATS_TASK, interval=self.config.stats_refresh_interval, priority=9), delay=0.0)

        if recovered or catalog is None or catalog.is_expired():
            logger.info("Catalog cache missing or expired; running full sync before first serve")
            try:
                self._run_task_inline(CATALOG_TASK)
            except RemoteError:
                # Failure already published and the task put into backoff; serve what we have
                self.index.rebuild()
        else:
            self.index.rebuild()
            self.schedule(CATALOG_TASK, delay=0.0)

        with self._cond:
            if self._dispatcher is None:
                self._dispatcher = threading.Thread(
                    target=self._dispatch_loop, name="sync-dispatcher", daemon=True
                )
                self._dispatcher.start()

    def close(self, wait: bool = False) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
        if self._dispatcher is not None and wait:
            self._dispatcher.join(timeout=5)
        self._executor.shutdown(wait=wait, cancel_futures=True)

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self, reason: str = "") -> None:
        """Stop dispatching background tasks; queued tasks are kept."""
        with self._cond:
            if self._paused:
                return
            self._paused = True
        logger.warning("Background sync paused: %s", reason)
        self.bus.publish(ChangeEvent(ChangeKind.SYNC_PAUSED, message=reason or "Background sync paused"))

    def resume(self) -> None:
        """Restart dispatching after the user re-authenticated."""
        with self._cond:
            if not self._paused:
                return
            self._paused = False
            self._cond.notify_all()
        logger.info("Background sync resumed")
        self.bus.publish(ChangeEvent(ChangeKind.SYNC_RESUMED, message="Background sync resumed"))

    # Scheduling

    def add_task(self, task: RefreshTask, delay: Optional[float] = None) -> RefreshTask:
        """Register ``task``; schedule it after ``delay`` seconds if given."""
        with self._cond:
            existing = self._tasks.get(task.key)
            if existing is not None:
                task = existing
            else:
                self._tasks[task.key] = task
            if delay is not None:
                self._schedule_locked(task, delay)
        return task

    def task(self, key: str) -> Optional[RefreshTask]:
        with self._cond:
            return self._tasks.get(key)

    def tasks(self) -> List[RefreshTask]:
        with self._cond:
            return list(self._tasks.values())

    def schedule(self, key: str, delay: float = 0.0, priority: Optional[int] = None) -> RefreshTask:
        """Ask for ``key`` to run within ``delay`` seconds, creating a one-shot task if needed."""
        with self._cond:
            task = self._tasks.get(key)
            if task is None:
                task = self._tasks[key] = RefreshTask(key, priority=0 if priority is None else priority)
            elif priority is not None:
                task.priority = priority
            if task.state == TaskState.RUNNING:
                task.rerun = True
            elif task.state == TaskState.SCHEDULED and task.next_run <= self.clock() + delay:
                pass
            else:
                self._schedule_locked(task, delay)
        return task

    def _schedule_locked(self, task: RefreshTask, delay: float) -> None:
        if task.state == TaskState.RUNNING:
            task.rerun = True
            return
        task.move(TaskState.SCHEDULED)
        task.next_run = self.clock() + max(0.0, delay)
        task.token += 1
        heapq.heappush(self._heap, (task.next_run, task.priority, next(self._counter), task.key))
        self._cond.notify_all()

    def _pop_due_locked(self) -> Tuple[Optional[RefreshTask], Optional[float]]:
        """Return a due task, or the seconds until the next one."""
        while self._heap:
            next_run, _, _, key = self._heap[0]
            task = self._tasks.get(key)
            if task is None or task.state != TaskState.SCHEDULED or task.next_run != next_run:
                heapq.heappop(self._heap)
                continue
            wait = next_run - self.clock()
            if wait > 0:
                return None, wait
            heapq.heappop(self._heap)
            return task, None
        return None, None

    def _dispatch_loop(self) -> None:
        while True:
            with self._cond:
                while True:
                    if self._stopped:
                        return
                    if self._paused:
                        self._cond.wait()
                        continue
                    task, wait = self._pop_due_locked()
                    if task is not None:
                        break
                    self._cond.wait(timeout=wait)
                task.move(TaskState.RUNNING)
                task.last_run = self.clock()
                self._running += 1
            try:
                self._executor.submit(self._run_task, task)
            except RuntimeError:
                # Executor shut down under us
                return

    def wait_idle(self, timeout: float = 10.0) -> bool:
        """Block until no task is running or due. For tests and one-shot CLI commands."""
        deadline = self.clock() + timeout
        with self._cond:
            while True:
                due = any(
                    t.state == TaskState.SCHEDULED and t.next_run <= self.clock()
                    for t in self._tasks.values()
                )
                if self._running == 0 and (not due or self._paused):
                    return True
                remaining = deadline - self.clock()
                if remaining <= 0:
                    return False
                self._cond.wait(timeout=min(remaining, 0.05))

    # Task execution

    def _handler_for(self, key: str) -> Callable[[], SyncReport]:
        if key == CATALOG_TASK:
            return self.sync_catalog
        if key == LISTS_TASK:
            return self.sync_lists
        if key == STATS_TASK:
            return self.sync_stats
        if key.startswith(DETAIL_TASK_PREFIX):
            return partial(self.sync_detail, key[len(DETAIL_TASK_PREFIX):])
        raise KeyError(f"No handler for refresh task {key!r}")

    def _run_task_inline(self, key: str) -> SyncReport:
        """Run a task on the calling thread, outside the dispatcher."""
        with self._cond:
            task = self._tasks.get(key)
            if task is None:
                task = self._tasks[key] = RefreshTask(key, priority=0)
            if task.state == TaskState.IDLE:
                task.move(TaskState.SCHEDULED)
            if task.state == TaskState.SCHEDULED:
                task.move(TaskState.RUNNING)
                task.last_run = self.clock()
                self._running += 1
                owned = True
            else:
                owned = False
        if not owned:
            # Already running or backing off in the background; run the work without touching its state
            return self._handler_for(key)()
        report = self._run_task(task)
        if report is None:
            raise RemoteError(task.last_error or f"{key} sync failed")
        return report

    def _run_task(self, task: RefreshTask) -> Optional[SyncReport]:
        try:
            report = self._handler_for(task.key)()
        except AuthError as e:
            self._task_failed(task, e, delay=0.0)
            self.pause(f"Authentication failed: {e}")
            return None
        except RateLimited as e:
            delay = self.config.sync_backoff.delay(task.failures)
            self._task_failed(task, e, delay=max(delay, e.retry_after or 0.0))
            return None
        except Exception as e:
            if not isinstance(e, RemoteError):
                logger.exception("Refresh task %s crashed", task.key)
            self._task_failed(task, e, delay=self.config.sync_backoff.delay(task.failures))
            return None
        self._task_succeeded(task, report)
        return report

    def _task_succeeded(self, task: RefreshTask, report: SyncReport) -> None:
        with self._cond:
            self._running -= 1
            task.failures = 0
            task.last_error = None
            task.last_success = self.clock()
            task.move(TaskState.IDLE)
            if task.rerun:
                task.rerun = False
                self._schedule_locked(task, 0.0)
            elif task.periodic:
                self._schedule_locked(task, task.interval)
            else:
                del self._tasks[task.key]
            self._cond.notify_all()
        logger.info(
            "Sync %s ok: %d pages, %d changed, %d pruned", task.key, report.pages, report.changed, report.pruned
        )
        self.bus.publish(
            ChangeEvent(ChangeKind.SYNCED, task=task.key, payload=report, generation=self.index.generation)
        )

    def _task_failed(self, task: RefreshTask, error: Exception, delay: float) -> None:
        with self._cond:
            self._running -= 1
            task.failures += 1
            task.last_error = str(error)
            task.rerun = False
            task.move(TaskState.BACKOFF)
            if not task.periodic and task.failures >= MAX_ONE_SHOT_FAILURES:
                del self._tasks[task.key]
                retry = None
            else:
                task.move(TaskState.SCHEDULED)
                task.next_run = self.clock() + delay
                task.token += 1
                heapq.heappush(self._heap, (task.next_run, task.priority, next(self._counter), task.key))
                retry = delay
            self._cond.notify_all()

        as_of = self._as_of(task.key)
        if retry is None:
            message = f"{task.key} sync failed ({error}); giving up, showing data as of {as_of}"
        else:
            message = f"{task.key} sync failed ({error}); showing data as of {as_of}, retrying in {retry:.0f}s"
        logger.warning(message)
        self.bus.publish(ChangeEvent(ChangeKind.SYNC_FAILED, task=task.key, message=message, error=error))

    def _as_of(self, task_key: str) -> str:
        meta_key = {CATALOG_TASK: CATALOG_META, LISTS_TASK: LISTS_META, STATS_TASK: STATS_META}.get(task_key)
        if meta_key is None and task_key.startswith(DETAIL_TASK_PREFIX):
            meta_key = detail_key(task_key[len(DETAIL_TASK_PREFIX):])
        entry = self.store.get(meta_key) if meta_key else None
        return _format_time(entry.fetched_at if entry else None)

    @contextmanager
    def _exclusive(self, name: str) -> Iterator[None]:
        with self._run_locks[name]:
            yield

    # Catalog

    def sync_catalog(self) -> SyncReport:
        """Enumerate the whole catalog, merge it, and prune what disappeared.

        Pruning happens only after every page was fetched; a failure on any
        page raises before anything is removed.
        """
        with self._exclusive(CATALOG_TASK):
            start_seq = self.store.current_seq()
            seen: Set[str] = set()
            cursors: Set[Optional[int]] = set()
            cursor: Optional[int] = None
            pages = changed = total = 0
            while True:
                if cursor in cursors:
                    raise NetworkError(f"Catalog cursor {cursor!r} did not advance")
                cursors.add(cursor)
                page = self.coalescer.call(
                    "catalog_page", cursor, partial(self.remote.fetch_catalog_page, cursor)
                )
                changed += self._merge_problems(page.problems, start_seq)
                seen.update(p.slug for p in page.problems)
                pages += 1
                total = page.total
                if page.next_cursor is None:
                    break
                cursor = page.next_cursor

            pruned = self._prune_problems(seen, start_seq)
            self.store.put(
                CATALOG_META,
                {"total": total, "count": len(seen), "pages": pages},
                ttl=self.config.catalog_ttl,
            )
        self.index.rebuild()
        return SyncReport(CATALOG_TASK, pages=pages, changed=changed, pruned=pruned, total=len(seen))

    def _merge_problems(self, problems: Tuple[ProblemSummary, ...], start_seq: int) -> int:
        keys = [problem_key(p.slug) for p in problems]
        writes: List[CacheWrite] = []
        with self.store.locked(keys):
            for remote_problem in problems:
                key = problem_key(remote_problem.slug)
                version = fingerprint(remote_problem)
                existing = self.store.get(key)
                merged = remote_problem
                if existing is not None:
                    if existing.field_seq("status") > start_seq:
                        merged = replace(merged, status=existing.value.status)
                    if existing.version == version and existing.value == merged:
                        continue
                writes.append(
                    CacheWrite(key, merged, version=version, seqs=dict(existing.seqs) if existing else {})
                )
            self.store.put_many(writes)
        return len(writes)

    def _prune_problems(self, seen: Set[str], start_seq: int) -> int:
        stale: List[str] = []
        for key in self.store.keys(PROBLEM_PREFIX):
            slug = key_suffix(key)
            entry = self.store.get(key)
            if slug in seen or entry is None or entry.max_seq > start_seq:
                continue
            stale.append(slug)
        if not stale:
            return 0
        logger.info("Pruning %d problems no longer in the catalog", len(stale))
        writes = [CacheWrite(problem_key(s), delete=True) for s in stale]
        writes += [CacheWrite(detail_key(s), delete=True) for s in stale if self.store.get(detail_key(s))]
        self.store.put_many(writes)
        return len(stale)

    # Problem detail

    def get_detail(self, slug: str, fetch_missing: bool = True) -> Optional[CacheEntry]:
        """Return the cached detail, refreshing stale entries in the background.

        A missing entry is fetched on the calling thread when
        ``fetch_missing`` is set, otherwise queued and None is returned.
        """
        entry = self.store.get(detail_key(slug))
        if entry is not None:
            if entry.is_expired():
                self.schedule(DETAIL_TASK_PREFIX + slug, priority=0)
            return entry
        if not fetch_missing:
            self.schedule(DETAIL_TASK_PREFIX + slug, priority=0)
            return None
        self.sync_detail(slug)
        return self.store.get(detail_key(slug))

    def sync_detail(self, slug: str) -> SyncReport:
        existing = self.store.get(detail_key(slug))
        detail = self.detail_future(slug).result()
        changed = 0 if existing is not None and existing.version == fingerprint(detail) else 1
        return SyncReport(DETAIL_TASK_PREFIX + slug, pages=1, changed=changed, total=1)

    def detail_future(self, slug: str) -> "Future[ProblemDetail]":
        """Fetch and cache the detail of ``slug`` on a remote worker."""
        return self.coalescer.submit("detail", slug, partial(self._fetch_detail, slug))

    def _fetch_detail(self, slug: str) -> ProblemDetail:
        detail = self.remote.fetch_problem_detail(slug)
        key = detail_key(slug)
        with self.store.locked([key]):
            self.store.put(key, detail, ttl=self.config.detail_ttl, version=fingerprint(detail))
        return detail

    # Stats

    def sync_stats(self) -> SyncReport:
        username = self.coalescer.call("username", "me", self.remote.fetch_username)
        if not username:
            return SyncReport(STATS_TASK)
        stats: UserStats = self.coalescer.call(
            "stats", username, partial(self.remote.fetch_user_stats, username)
        )
        self.store.put(STATS_META, stats.to_dict(), ttl=self.config.stats_ttl, version=fingerprint(stats))
        return SyncReport(STATS_TASK, pages=1, changed=1, total=1)

    # Personal lists

    def sync_lists(self) -> SyncReport:
        """Replace local lists with the remote ones, keeping local edits newer than the fetch."""
        with self._exclusive(LISTS_TASK):
            start_seq = self.store.current_seq()
            remote_lists: List[PersonalList] = self.coalescer.call(
                "lists", "all", self.remote.list_personal_lists
            )
            remote_ids = {pl.id for pl in remote_lists}
            keys = set(self.store.keys(LIST_PREFIX)) | {list_key(i) for i in remote_ids}
            writes: List[CacheWrite] = []
            pruned = 0
            with self.store.locked(keys), self._lists_guard:
                for remote_list in remote_lists:
                    tombstone = self._tombstones.get(remote_list.id)
                    if tombstone is not None and (tombstone > start_seq or self._pending_list_ops.get(remote_list.id)):
                        continue
                    write = self._merge_list(remote_list, start_seq)
                    if write is not None:
                        writes.append(write)

                for key in keys:
                    list_id = key_suffix(key)
                    entry = self.store.get(key)
                    if list_id in remote_ids or entry is None:
                        continue
                    if entry.max_seq > start_seq or self._pending_list_ops.get(list_id):
                        continue
                    writes.append(CacheWrite(key, delete=True))
                    pruned += 1

                for list_id, seq in list(self._tombstones.items()):
                    if list_id not in remote_ids and seq <= start_seq and not self._pending_list_ops.get(list_id):
                        del self._tombstones[list_id]

                self.store.put_many(writes)
            self.store.put(LISTS_META, {"count": len(remote_lists)}, ttl=self.config.lists_ttl)

        if writes:
            self.bus.publish(
                ChangeEvent(ChangeKind.LIST_CHANGED, task=LISTS_TASK, keys=tuple(w.key for w in writes))
            )
        return SyncReport(LISTS_TASK, pages=1, changed=len(writes) - pruned, pruned=pruned, total=len(remote_lists))

    def _merge_list(self, remote_list: PersonalList, start_seq: int) -> Optional[CacheWrite]:
        key = list_key(remote_list.id)
        existing = self.store.get(key)
        merged = remote_list
        if existing is not None:
            pending = remote_list.id in self._pending_list_ops
            for name in _LIST_FIELDS:
                if pending or existing.field_seq(name) > start_seq:
                    merged = replace(merged, **{name: getattr(existing.value, name)})
            if existing.value == merged:
                return None
        return CacheWrite(
            key,
            merged,
            ttl=self.config.lists_ttl,
            seqs=dict(existing.seqs) if existing else {},
        )

    def mutate_list(self, op: ListOp) -> ListMutation:
        """Apply ``op`` locally right away and confirm it with the platform in the background."""
        if op.kind == ListOpKind.CREATE:
            if not op.name.strip():
                raise ValueError("List name must not be empty")
            list_id = LOCAL_LIST_PREFIX + uuid.uuid4().hex[:12]
        else:
            list_id = op.list_id
            entry = self.store.get(list_key(list_id))
            if entry is None:
                raise KeyError(f"Unknown list {list_id!r}")
            if entry.value.is_local:
                raise ValueError(f"List {entry.value.name!r} is still being created")

        key = list_key(list_id)
        with self.store.locked([key]), self._lists_guard:
            seq = self.store.next_seq()
            entry = self.store.get(key)
            previous = entry.value if entry else None
            optimistic = self._apply_list_edit(op, list_id, previous, entry, seq)
            self._pending_list_ops[list_id] = self._pending_list_ops.get(list_id, 0) + 1

        self.bus.publish(ChangeEvent(ChangeKind.LIST_CHANGED, task=LISTS_TASK, keys=(key,), payload=op))
        future = self._executor.submit(self._confirm_list_edit, op, list_id, previous)
        return ListMutation(op=op, list_id=list_id, optimistic=optimistic, future=future)

    def _apply_list_edit(
        self,
        op: ListOp,
        list_id: str,
        previous: Optional[PersonalList],
        entry: Optional[CacheEntry],
        seq: int,
    ) -> Optional[PersonalList]:
        key = list_key(list_id)
        if op.kind != ListOpKind.CREATE and previous is None:
            raise KeyError(f"Unknown list {list_id!r}")
        seqs = dict(entry.seqs) if entry else {}
        if op.kind == ListOpKind.CREATE:
            new = PersonalList(id=list_id, name=op.name.strip())
            seqs.update({name: seq for name in _LIST_FIELDS})
        elif op.kind == ListOpKind.DELETE:
            self._tombstones[list_id] = seq
            self.store.invalidate(key)
            return None
        elif op.kind == ListOpKind.ADD:
            ids = previous.problem_ids
            new = previous if op.problem_id in ids else replace(previous, problem_ids=ids + (op.problem_id,))
            seqs["problem_ids"] = seq
        else:
            new = replace(previous, problem_ids=tuple(i for i in previous.problem_ids if i != op.problem_id))
            seqs["problem_ids"] = seq
        self.store.put(key, new, ttl=self.config.lists_ttl, seqs=seqs)
        return new

    def _list_op_done(self, list_id: str) -> None:
        with self._lists_guard:
            remaining = self._pending_list_ops.get(list_id, 0) - 1
            if remaining > 0:
                self._pending_list_ops[list_id] = remaining
            else:
                self._pending_list_ops.pop(list_id, None)

    def _confirm_list_edit(self, op: ListOp, list_id: str, previous: Optional[PersonalList]) -> bool:
        remote_op = op if op.kind == ListOpKind.CREATE else replace(op, list_id=list_id)
        try:
            new_id = self.coalescer.call(
                "mutate_list", (list_id, uuid.uuid4().hex), partial(self.remote.mutate_personal_list, remote_op)
            )
        except RemoteError as e:
            self._rollback_list_edit(op, list_id, previous)
            self._list_op_done(list_id)
            logger.warning("List edit %s on %s rejected: %s", op.kind.value, list_id, e)
            self.bus.publish(
                ChangeEvent(
                    ChangeKind.LIST_ROLLBACK,
                    task=LISTS_TASK,
                    keys=(list_key(list_id),),
                    message=f"Could not {op.kind.value} list: {e}",
                    error=e,
                    payload=op,
                )
            )
            if isinstance(e, AuthError):
                self.pause(f"Authentication failed: {e}")
            raise

        if op.kind == ListOpKind.CREATE and new_id:
            self._adopt_remote_id(list_id, new_id)
        self._list_op_done(list_id)
        if op.kind == ListOpKind.CREATE:
            # Learn the server-side id and contents
            self.schedule(LISTS_TASK, delay=0.0)
        self.bus.publish(
            ChangeEvent(ChangeKind.LIST_CONFIRMED, task=LISTS_TASK, keys=(list_key(new_id or list_id),), payload=op)
        )
        return True

    def _adopt_remote_id(self, local_id: str, remote_id: str) -> None:
        local_key, remote_key = list_key(local_id), list_key(remote_id)
        with self.store.locked([local_key, remote_key]):
            entry = self.store.get(local_key)
            if entry is None:
                return
            self.store.put_many(
                [
                    CacheWrite(local_key, delete=True),
                    CacheWrite(
                        remote_key,
                        replace(entry.value, id=remote_id),
                        ttl=entry.ttl,
                        seqs=dict(entry.seqs),
                    ),
                ]
            )

    def _rollback_list_edit(self, op: ListOp, list_id: str, previous: Optional[PersonalList]) -> None:
        """Undo a rejected edit by applying its inverse as a new local write."""
        key = list_key(list_id)
        with self.store.locked([key]), self._lists_guard:
            seq = self.store.next_seq()
            entry = self.store.get(key)
            if op.kind == ListOpKind.CREATE:
                self.store.invalidate(key)
            elif op.kind == ListOpKind.DELETE:
                self._tombstones.pop(list_id, None)
                if previous is not None:
                    self.store.put(
                        key, previous, ttl=self.config.lists_ttl, seqs={name: seq for name in _LIST_FIELDS}
                    )
            elif entry is not None and previous is not None:
                was_member = op.problem_id in previous.problem_ids
                ids = entry.value.problem_ids
                if op.kind == ListOpKind.ADD and not was_member:
                    ids = tuple(i for i in ids if i != op.problem_id)
                elif op.kind == ListOpKind.REMOVE and was_member and op.problem_id not in ids:
                    ids = ids + (op.problem_id,)
                else:
                    return
                seqs = dict(entry.seqs)
                seqs["problem_ids"] = seq
                self.store.put(key, replace(entry.value, problem_ids=ids), ttl=entry.ttl, seqs=seqs)
