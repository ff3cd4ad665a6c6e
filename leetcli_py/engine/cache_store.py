"""Durable key-value cache for catalog, details, lists and sync metadata.

Committed state is an immutable mapping swapped in as a whole, so readers
always see a complete snapshot. Writers of one key are serialized by a
per-key lock; ``locked()`` lets a caller hold those locks across a
read-modify-write. ``flush()`` writes the committed mapping to a temp file
and renames it over the previous one; with ``autoflush`` a background
writer does so shortly after each burst of commits, and ``close()`` writes
whatever is left.
"""

import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from ..client.models import PersonalList, ProblemDetail, ProblemSummary

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

PROBLEM_PREFIX = "problem:"
DETAIL_PREFIX = "detail:"
LIST_PREFIX = "list:"
META_PREFIX = "meta:"

CATALOG_META = META_PREFIX + "catalog"
LISTS_META = META_PREFIX + "lists"
STATS_META = META_PREFIX + "stats"

_CODECS = {
    PROBLEM_PREFIX: ProblemSummary,
    DETAIL_PREFIX: ProblemDetail,
    LIST_PREFIX: PersonalList,
}


def problem_key(slug: str) -> str:
    return PROBLEM_PREFIX + slug


def detail_key(slug: str) -> str:
    return DETAIL_PREFIX + slug


def list_key(list_id: str) -> str:
    return LIST_PREFIX + list_id


def key_suffix(key: str) -> str:
    return key.split(":", 1)[1]


def _codec_for(key: str):
    for prefix, codec in _CODECS.items():
        if key.startswith(prefix):
            return codec
    return None


@dataclass(frozen=True)
class CacheEntry:
    """One cached value with its freshness and per-field write sequence numbers."""

    key: str
    value: Any
    fetched_at: float
    ttl: Optional[float] = None
    version: Optional[str] = None
    seqs: Dict[str, int] = field(default_factory=dict)

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.ttl is None:
            return False
        now = time.time() if now is None else now
        return now - self.fetched_at >= self.ttl

    def field_seq(self, name: str) -> int:
        return self.seqs.get(name, 0)

    @property
    def max_seq(self) -> int:
        return max(self.seqs.values(), default=0)

    def to_record(self) -> Dict[str, Any]:
        value = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
        return {
            "schema_version": SCHEMA_VERSION,
            "key": self.key,
            "payload": value,
            "fetched_at": self.fetched_at,
            "ttl": self.ttl,
            "version": self.version,
            "seqs": dict(self.seqs),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "CacheEntry":
        """Decode a persisted record; unknown fields are ignored."""
        key = record["key"]
        if not isinstance(key, str):
            raise TypeError(f"bad key {key!r}")
        codec = _codec_for(key)
        payload = record["payload"]
        value = codec.from_dict(payload) if codec is not None else payload
        ttl = record.get("ttl")
        return cls(
            key=key,
            value=value,
            fetched_at=float(record["fetched_at"]),
            ttl=None if ttl is None else float(ttl),
            version=record.get("version"),
            seqs={str(k): int(v) for k, v in (record.get("seqs") or {}).items()},
        )


@dataclass(frozen=True)
class CacheWrite:
    """A staged write for ``put_many``. ``value=None`` with ``delete=True`` removes the key."""

    key: str
    value: Any = None
    ttl: Optional[float] = None
    version: Optional[str] = None
    seqs: Optional[Dict[str, int]] = None
    fetched_at: Optional[float] = None
    delete: bool = False


@dataclass(frozen=True)
class CacheSnapshot:
    """Immutable view of one committed state."""

    version: int
    entries: Mapping[str, CacheEntry]

    def get(self, key: str) -> Optional[CacheEntry]:
        return self.entries.get(key)

    def with_prefix(self, prefix: str) -> List[CacheEntry]:
        return [e for k, e in self.entries.items() if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self.entries)


CommitListener = Callable[[Tuple[str, ...], int], None]


class CacheStore:
    """Crash-safe cache with snapshot reads and per-key serialized writes."""

    def __init__(
        self,
        path: Optional[Path] = None,
        autoflush: bool = True,
        clock: Callable[[], float] = time.time,
        flush_delay: float = 0.5,
    ):
        self.path = path
        self.autoflush = autoflush and path is not None
        self.flush_delay = flush_delay
        self.clock = clock
        self.recovered_from_corruption = False

        self._committed: Mapping[str, CacheEntry] = MappingProxyType({})
        self._version = 0
        self._flushed_version = 0
        self._publish_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._key_locks: Dict[str, threading.RLock] = {}
        self._key_locks_guard = threading.Lock()
        self._seq = 0
        self._seq_lock = threading.Lock()
        self._listeners: List[CommitListener] = []
        self._writer: Optional[threading.Thread] = None
        self._writer_guard = threading.Lock()
        self._dirty = threading.Event()
        self._closing = threading.Event()

        if path is not None:
            self._load()

    # Reads

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._committed.get(key)

    def snapshot(self) -> CacheSnapshot:
        with self._publish_lock:
            return CacheSnapshot(version=self._version, entries=self._committed)

    def keys(self, prefix: str = "") -> List[str]:
        return [k for k in self._committed if k.startswith(prefix)]

    @property
    def version(self) -> int:
        return self._version

    # Sequence numbers

    def next_seq(self) -> int:
        """Allocate the next local write sequence number."""
        with self._seq_lock:
            self._seq += 1
            return self._seq

    def current_seq(self) -> int:
        with self._seq_lock:
            return self._seq

    # Writes

    def _lock_for(self, key: str) -> threading.RLock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.RLock()
            return lock

    @contextmanager
    def locked(self, keys: Iterable[str]) -> Iterator[None]:
        """Hold the writer locks of ``keys`` (acquired in sorted order)."""
        locks = [self._lock_for(k) for k in sorted(set(keys))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def add_commit_listener(self, listener: CommitListener) -> None:
        self._listeners.append(listener)

    def put(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        version: Optional[str] = None,
        seqs: Optional[Dict[str, int]] = None,
    ) -> CacheEntry:
        """Overwrite the entry for ``key``."""
        self.put_many([CacheWrite(key, value, ttl=ttl, version=version, seqs=seqs)])
        return self._committed[key]

    def invalidate(self, key: str) -> bool:
        """Drop ``key``. Returns False if it was not cached."""
        if key not in self._committed:
            return False
        self.put_many([CacheWrite(key, delete=True)])
        return True

    def put_many(self, writes: Iterable[CacheWrite]) -> int:
        """Stage ``writes`` and commit them as one new snapshot.

        Returns the committed snapshot version.
        """
        writes = list(writes)
        if not writes:
            return self._version

        with self.locked(w.key for w in writes):
            now = self.clock()
            with self._publish_lock:
                staged = dict(self._committed)
                for w in writes:
                    if w.delete:
                        staged.pop(w.key, None)
                        continue
                    previous = staged.get(w.key)
                    seqs = w.seqs
                    if seqs is None:
                        seqs = dict(previous.seqs) if previous is not None else {}
                    staged[w.key] = CacheEntry(
                        key=w.key,
                        value=w.value,
                        fetched_at=now if w.fetched_at is None else w.fetched_at,
                        ttl=w.ttl,
                        version=w.version,
                        seqs=seqs,
                    )
                self._committed = MappingProxyType(staged)
                self._version += 1
                version = self._version

        changed = tuple(w.key for w in writes)
        if self.autoflush:
            self._mark_dirty()
        for listener in list(self._listeners):
            try:
                listener(changed, version)
            except Exception:
                logger.exception("Cache commit listener failed")
        return version

    def clear(self) -> None:
        self.put_many(CacheWrite(k, delete=True) for k in list(self._committed))

    # Persistence

    def _mark_dirty(self) -> None:
        with self._writer_guard:
            if self._closing.is_set():
                return
            if self._writer is None:
                self._writer = threading.Thread(target=self._write_loop, name="cache-writer", daemon=True)
                self._writer.start()
        self._dirty.set()

    def _write_loop(self) -> None:
        while not self._closing.is_set():
            self._dirty.wait()
            # Let a burst of commits settle into one write
            if self._closing.wait(self.flush_delay):
                return
            self._dirty.clear()
            try:
                self.flush()
            except OSError as e:
                logger.warning("Could not write cache to %s: %s", self.path, e)

    def close(self) -> None:
        """Stop the background writer and write any unflushed commits."""
        with self._writer_guard:
            self._closing.set()
            writer, self._writer = self._writer, None
        self._dirty.set()
        if writer is not None:
            writer.join(timeout=5)
        self.flush()

    def flush(self) -> bool:
        """Write the committed state to disk. Returns False if nothing changed."""
        if self.path is None:
            return False
        with self._flush_lock:
            snap = self.snapshot()
            if snap.version == self._flushed_version and self.path.exists():
                return False

            document = {
                "schema_version": SCHEMA_VERSION,
                "written_at": self.clock(),
                "records": [entry.to_record() for entry in snap.entries.values()],
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, ensure_ascii=False)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
                raise
            self._flushed_version = snap.version
            logger.debug("Flushed %d cache records (v%d) to %s", len(snap), snap.version, self.path)
            return True

    def _load(self) -> None:
        self._remove_stale_temp_files()
        if not self.path.exists():
            return

        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
            records = document["records"]
            if not isinstance(records, list):
                raise TypeError("records is not a list")
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Cache at %s is unreadable (%s); starting empty", self.path, e)
            self.recovered_from_corruption = True
            return

        entries: Dict[str, CacheEntry] = {}
        skipped = 0
        for record in records:
            try:
                entry = CacheEntry.from_record(record)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                skipped += 1
                logger.debug("Skipping cache record: %s", e)
                continue
            entries[entry.key] = entry

        if skipped:
            logger.warning("Skipped %d undecodable cache records", skipped)

        self._committed = MappingProxyType(entries)
        self._seq = max((e.max_seq for e in entries.values()), default=0)
        logger.info("Loaded %d cache records from %s", len(entries), self.path)

    def _remove_stale_temp_files(self) -> None:
        directory = self.path.parent
        if not directory.exists():
            return
        for tmp in directory.glob(f".{self.path.name}.*.tmp"):
            try:
                tmp.unlink()
            except OSError:
                logger.debug("Could not remove %s", tmp)
