"""In-memory search index over the cached catalog.

The index state is immutable and replaced wholesale; queries read whatever
state is current when they start. Each state carries the version of the
CacheStore snapshot it was built from as its generation.
"""

import bisect
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from ..client.models import Difficulty, ProblemStatus, ProblemSummary
from .cache_store import PROBLEM_PREFIX, CacheSnapshot, CacheStore, key_suffix
from .notifications import ChangeBus, ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

SortKey = Tuple[Tuple[int, str], str]


@dataclass(frozen=True)
class ProblemFilter:
    """Search text plus set filters; empty sets mean "any"."""

    text: str = ""
    difficulties: FrozenSet[Difficulty] = frozenset()
    statuses: FrozenSet[ProblemStatus] = frozenset()
    tags: FrozenSet[str] = frozenset()
    include_paid: bool = True
    limit: Optional[int] = None


@dataclass(frozen=True)
class QueryResult:
    problems: Tuple[ProblemSummary, ...]
    generation: int
    query_seq: int = 0
    total: int = 0


@dataclass(frozen=True)
class _IndexState:
    generation: int = 0
    by_slug: Dict[str, ProblemSummary] = field(default_factory=dict)
    titles: Dict[str, str] = field(default_factory=dict)
    order: Tuple[SortKey, ...] = ()
    slug_by_id: Dict[str, str] = field(default_factory=dict)
    by_difficulty: Dict[Difficulty, FrozenSet[str]] = field(default_factory=dict)
    by_status: Dict[ProblemStatus, FrozenSet[str]] = field(default_factory=dict)


def _sort_key(problem: ProblemSummary) -> SortKey:
    return problem.sort_key, problem.slug


def _build_state(generation: int, problems: Iterable[ProblemSummary]) -> _IndexState:
    by_slug = {p.slug: p for p in problems}
    by_difficulty: Dict[Difficulty, Set[str]] = {}
    by_status: Dict[ProblemStatus, Set[str]] = {}
    for p in by_slug.values():
        by_difficulty.setdefault(p.difficulty, set()).add(p.slug)
        by_status.setdefault(p.status, set()).add(p.slug)
    return _IndexState(
        generation=generation,
        by_slug=by_slug,
        titles={slug: p.title.lower() for slug, p in by_slug.items()},
        order=tuple(sorted(_sort_key(p) for p in by_slug.values())),
        slug_by_id={p.id: slug for slug, p in by_slug.items()},
        by_difficulty={k: frozenset(v) for k, v in by_difficulty.items()},
        by_status={k: frozenset(v) for k, v in by_status.items()},
    )


class SearchIndex:
    """Generation-numbered index supporting instant filter and search."""

    def __init__(
        self,
        store: CacheStore,
        bus: Optional[ChangeBus] = None,
        debounce: float = 0.05,
    ):
        self.store = store
        self.bus = bus
        self.debounce = debounce
        self._state = _IndexState()
        self._update_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending: Set[str] = set()
        self._timer: Optional[threading.Timer] = None
        self._query_seq = 0
        self._query_seq_lock = threading.Lock()
        self.full_rebuilds = 0
        self.incremental_updates = 0

    @property
    def generation(self) -> int:
        return self._state.generation

    def __len__(self) -> int:
        return len(self._state.by_slug)

    # Updates

    def rebuild(self, snapshot: Optional[CacheSnapshot] = None) -> int:
        """Rebuild from a committed snapshot. Returns the new generation."""
        snapshot = snapshot or self.store.snapshot()
        with self._update_lock:
            if snapshot.version < self._state.generation:
                return self._state.generation
            problems = [e.value for e in snapshot.with_prefix(PROBLEM_PREFIX)]
            self._state = _build_state(snapshot.version, problems)
            self.full_rebuilds += 1
            generation = self._state.generation
        logger.debug("Index rebuilt: %d problems, generation %d", len(problems), generation)
        self._publish(generation, ())
        return generation

    def apply_changes(self, keys: Iterable[str], snapshot: Optional[CacheSnapshot] = None) -> int:
        """Re-index only the problems behind ``keys``."""
        slugs = {key_suffix(k) for k in keys if k.startswith(PROBLEM_PREFIX)}
        snapshot = snapshot or self.store.snapshot()
        with self._update_lock:
            state = self._state
            if not slugs:
                return state.generation
            if snapshot.version < state.generation:
                # Keys can be queued after a later commit was already indexed
                snapshot = self.store.snapshot()
            self._state = self._patched(state, snapshot, slugs)
            self.incremental_updates += 1
            generation = self._state.generation
        self._publish(generation, tuple(PROBLEM_PREFIX + s for s in sorted(slugs)))
        return generation

    def _patched(self, state: _IndexState, snapshot: CacheSnapshot, slugs: Set[str]) -> _IndexState:
        by_slug = dict(state.by_slug)
        titles = dict(state.titles)
        slug_by_id = dict(state.slug_by_id)
        order: List[SortKey] = list(state.order)
        by_difficulty = {k: set(v) for k, v in state.by_difficulty.items()}
        by_status = {k: set(v) for k, v in state.by_status.items()}

        for slug in slugs:
            old = by_slug.pop(slug, None)
            if old is not None:
                titles.pop(slug, None)
                slug_by_id.pop(old.id, None)
                by_difficulty.get(old.difficulty, set()).discard(slug)
                by_status.get(old.status, set()).discard(slug)
                i = bisect.bisect_left(order, _sort_key(old))
                if i < len(order) and order[i] == _sort_key(old):
                    del order[i]

            entry = snapshot.get(PROBLEM_PREFIX + slug)
            if entry is None:
                continue
            new: ProblemSummary = entry.value
            by_slug[slug] = new
            titles[slug] = new.title.lower()
            slug_by_id[new.id] = slug
            by_difficulty.setdefault(new.difficulty, set()).add(slug)
            by_status.setdefault(new.status, set()).add(slug)
            bisect.insort(order, _sort_key(new))

        return _IndexState(
            generation=max(state.generation, snapshot.version),
            by_slug=by_slug,
            titles=titles,
            order=tuple(order),
            slug_by_id=slug_by_id,
            by_difficulty={k: frozenset(v) for k, v in by_difficulty.items()},
            by_status={k: frozenset(v) for k, v in by_status.items()},
        )

    def on_commit(self, keys: Tuple[str, ...], version: int) -> None:
        """CacheStore commit listener: queue a debounced incremental update."""
        problem_keys = [k for k in keys if k.startswith(PROBLEM_PREFIX)]
        if not problem_keys:
            return
        with self._pending_lock:
            self._pending.update(problem_keys)
            if self._timer is not None:
                return
            self._timer = threading.Timer(self.debounce, self._drain)
            self._timer.daemon = True
            self._timer.start()

    def _drain(self) -> None:
        with self._pending_lock:
            keys, self._pending = self._pending, set()
            self._timer = None
        if keys:
            self.apply_changes(keys)

    def flush_pending(self) -> None:
        """Apply queued changes now instead of waiting for the debounce."""
        with self._pending_lock:
            if self._timer is not None:
                self._timer.cancel()
        self._drain()

    def close(self) -> None:
        with self._pending_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _publish(self, generation: int, keys: Tuple[str, ...]) -> None:
        if self.bus is not None:
            self.bus.publish(ChangeEvent(ChangeKind.INDEX_UPDATED, keys=keys, generation=generation))

    # Queries

    def next_query_seq(self) -> int:
        with self._query_seq_lock:
            self._query_seq += 1
            return self._query_seq

    def get(self, slug: str) -> Optional[ProblemSummary]:
        return self._state.by_slug.get(slug)

    def get_by_id(self, problem_id: str) -> Optional[ProblemSummary]:
        state = self._state
        slug = state.slug_by_id.get(problem_id)
        return state.by_slug.get(slug) if slug is not None else None

    def query(self, problem_filter: ProblemFilter, query_seq: Optional[int] = None) -> QueryResult:
        """Run ``problem_filter`` against the current state."""
        if query_seq is None:
            query_seq = self.next_query_seq()
        state = self._state

        allowed: Optional[FrozenSet[str]] = None
        if problem_filter.difficulties:
            allowed = frozenset().union(
                *(state.by_difficulty.get(d, frozenset()) for d in problem_filter.difficulties)
            )
        if problem_filter.statuses:
            by_status = frozenset().union(
                *(state.by_status.get(s, frozenset()) for s in problem_filter.statuses)
            )
            allowed = by_status if allowed is None else allowed & by_status

        text = problem_filter.text.strip().lower()
        exact: List[ProblemSummary] = []
        prefix: List[ProblemSummary] = []
        substring: List[ProblemSummary] = []
        for _, slug in state.order:
            if allowed is not None and slug not in allowed:
                continue
            problem = state.by_slug[slug]
            if not problem_filter.include_paid and problem.paid_only:
                continue
            if problem_filter.tags and not problem_filter.tags.issubset(problem.tags):
                continue
            if not text:
                substring.append(problem)
                continue
            title = state.titles[slug]
            if problem.frontend_id == text:
                exact.append(problem)
            elif title.startswith(text):
                prefix.append(problem)
            elif text in title or text in slug:
                substring.append(problem)

        matches = exact + prefix + substring
        total = len(matches)
        if problem_filter.limit is not None:
            matches = matches[: problem_filter.limit]
        return QueryResult(
            problems=tuple(matches),
            generation=state.generation,
            query_seq=query_seq,
            total=total,
        )


class LatestResultGate:
    """
    Keeps the UI showing results of the most recently issued query.

    A result is accepted only if it belongs to a query issued after the one
    whose result is currently shown, so a slow older query cannot overwrite
    a newer one.
    """

    def __init__(self, on_accept: Optional[Callable[[QueryResult], None]] = None):
        self._lock = threading.Lock()
        self._shown: Optional[QueryResult] = None
        self.on_accept = on_accept

    @property
    def current(self) -> Optional[QueryResult]:
        return self._shown

    def offer(self, result: QueryResult) -> bool:
        with self._lock:
            shown = self._shown
            if shown is not None and result.query_seq <= shown.query_seq:
                return False
            self._shown = result
        if self.on_accept is not None:
            self.on_accept(result)
        return True
