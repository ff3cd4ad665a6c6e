"""Cache and submission engine."""

from .cache_store import CacheEntry, CacheSnapshot, CacheStore, CacheWrite
from .coalescer import RequestCoalescer
from .engine import Engine
from .job_tracker import JobHandle, JobState, JobTracker, SubmissionJob
from .notifications import ChangeBus, ChangeEvent, ChangeKind
from .search_index import LatestResultGate, ProblemFilter, QueryResult, SearchIndex
from .sync_engine import ListMutation, RefreshTask, SyncEngine, SyncReport, TaskState

__all__ = [
    "CacheEntry",
    "CacheSnapshot",
    "CacheStore",
    "CacheWrite",
    "RequestCoalescer",
    "Engine",
    "JobHandle",
    "JobState",
    "JobTracker",
    "SubmissionJob",
    "ChangeBus",
    "ChangeEvent",
    "ChangeKind",
    "LatestResultGate",
    "ProblemFilter",
    "QueryResult",
    "SearchIndex",
    "ListMutation",
    "RefreshTask",
    "SyncEngine",
    "SyncReport",
    "TaskState",
]
