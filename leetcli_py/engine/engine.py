"""The engine as seen by the UI."""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

from ..client.base import RemoteClient
from ..client.models import JobMode, ListOp, PersonalList, ProblemDetail, ProblemSummary, UserStats
from ..config.engine_config import EngineConfig
from ..config.local_config import Language, LocalConfig
from .cache_store import LIST_PREFIX, STATS_META, CacheStore
from .coalescer import RequestCoalescer
from .job_tracker import JobHandle, JobTracker
from .notifications import ChangeBus, Subscriber
from .search_index import ProblemFilter, QueryResult, SearchIndex
from .sync_engine import CATALOG_TASK, LISTS_TASK, STATS_TASK, ListMutation, SyncEngine

logger = logging.getLogger(__name__)


class Engine:
    """
    Cache, sync, search and submission behind one object.

    Reads are served from the local cache immediately; everything that
    talks to the platform happens on background threads and is reported
    through ``subscribe``.
    """

    def __init__(
        self,
        remote: RemoteClient,
        config: Optional[EngineConfig] = None,
        language: Language = Language.PYTHON3,
        store: Optional[CacheStore] = None,
    ):
        self.config = config or EngineConfig()
        self.language = language
        self.remote = remote
        if store is None:
            store = CacheStore(self.config.cache_path, flush_delay=self.config.flush_delay)
        self.store = store
        self.bus = ChangeBus()
        self.coalescer = RequestCoalescer(max_workers=self.config.remote_workers)
        self.index = SearchIndex(self.store, self.bus, debounce=self.config.index_debounce)
        self.store.add_commit_listener(self.index.on_commit)
        self.sync = SyncEngine(remote, self.store, self.coalescer, self.bus, self.index, self.config)
        self.jobs = JobTracker(
            remote, self.store, self.coalescer, self.bus, self.config, detail_loader=self.sync.detail_future
        )
        self._queries = ThreadPoolExecutor(max_workers=2, thread_name_prefix="query")
        self._started = False
        self._closed = False

    @classmethod
    def open(
        cls,
        remote: RemoteClient,
        local_config: Optional[LocalConfig] = None,
        start: bool = True,
    ) -> "Engine":
        """Build an engine from the workspace's local config and start it."""
        if local_config is None:
            local_config = LocalConfig.load() or LocalConfig()
        engine = cls(remote, config=local_config.engine_config(), language=local_config.language)
        if start:
            engine.start()
        return engine

    def start(self) -> None:
        """Load the cache and start background refresh. May sync the catalog first."""
        if self._started:
            return
        self._started = True
        self.sync.start()

    def __enter__(self) -> "Engine":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Problems

    def get_problem_list(self, problem_filter: Optional[ProblemFilter] = None) -> QueryResult:
        """Query the catalog as currently cached. Never touches the network."""
        return self.index.query(problem_filter or ProblemFilter())

    def query_async(
        self,
        problem_filter: ProblemFilter,
        callback: Callable[[QueryResult], None],
    ) -> "Future[QueryResult]":
        """
        Run a query off the calling thread and hand the result to ``callback``.
        The query sequence number is taken now, so results can be ordered by
        issue time with ``LatestResultGate``.
        """
        query_seq = self.index.next_query_seq()

        def run() -> QueryResult:
            result = self.index.query(problem_filter, query_seq=query_seq)
            callback(result)
            return result

        return self._queries.submit(run)

    def find_problem(self, problem_id: str) -> Optional[ProblemSummary]:
        """Look a problem up by slug, frontend id or internal id."""
        problem_id = problem_id.strip()
        problem = self.index.get(problem_id) or self.index.get_by_id(problem_id)
        if problem is not None:
            return problem
        for candidate in self.index.query(ProblemFilter(text=problem_id, limit=1), query_seq=0).problems:
            if candidate.frontend_id == problem_id:
                return candidate
        return None

    def get_problem_detail(self, slug: str, fetch_missing: bool = True) -> Optional[ProblemDetail]:
        """Statement, snippets and samples; stale entries are returned and refreshed later."""
        entry = self.sync.get_detail(slug, fetch_missing=fetch_missing)
        return entry.value if entry is not None else None

    def stats(self) -> Optional[UserStats]:
        entry = self.store.get(STATS_META)
        return UserStats.from_dict(entry.value) if entry is not None else None

    # Change notifications

    def subscribe(self, on_change: Subscriber) -> Callable[[], None]:
        return self.bus.subscribe(on_change)

    # Jobs

    def run_or_submit(
        self,
        problem_id: str,
        code: str,
        mode: JobMode,
        language: Optional[str] = None,
        data_input: Optional[str] = None,
    ) -> JobHandle:
        """
        Start a run or submission and return immediately.
        Run mode uses the problem's sample cases unless ``data_input`` is given.
        """
        problem = self.find_problem(problem_id)
        if problem is None:
            raise KeyError(f"Unknown problem {problem_id!r}")
        if language is None:
            language = self.language.value
        logger.info("Starting %s of %s in %s", mode.value, problem.slug, language)
        return self.jobs.start(problem, language, code, mode, data_input)

    def cancel(self, handle: JobHandle) -> bool:
        return handle.cancel()

    # Personal lists

    def lists(self) -> List[PersonalList]:
        snap = self.store.snapshot()
        return sorted((e.value for e in snap.with_prefix(LIST_PREFIX)), key=lambda pl: pl.name.lower())

    def mutate_list(self, op: ListOp) -> ListMutation:
        return self.sync.mutate_list(op)

    # Sync control

    def refresh(self) -> None:
        """Ask for every periodic refresh to run now."""
        for key in (CATALOG_TASK, LISTS_TASK, STATS_TASK):
            self.sync.schedule(key, delay=0.0)

    def resume_sync(self) -> None:
        """Resume background sync after a new login."""
        self.sync.resume()
        self.refresh()

    def wait_idle(self, timeout: float = 10.0) -> bool:
        self.index.flush_pending()
        idle = self.sync.wait_idle(timeout)
        self.index.flush_pending()
        return idle

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.jobs.close()
        self.sync.close()
        self.index.close()
        self._queries.shutdown(wait=False, cancel_futures=True)
        self.coalescer.shutdown()
        try:
            self.store.close()
        except OSError as e:
            logger.warning("Could not write cache to %s: %s", self.store.path, e)
