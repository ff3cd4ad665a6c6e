"""Tunables for the cache and submission engine."""

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from ..utils.backoff import BackoffPolicy

HOUR = 3600.0
DAY = 24 * HOUR


def default_cache_dir() -> Path:
    return Path.home() / ".cache" / "leetcli_py"


@dataclass(frozen=True)
class EngineConfig:
    """
    TTLs, refresh intervals, backoff and timeouts.
    Every field has a default; ``from_dict`` ignores unknown keys.
    """

    cache_dir: Path = field(default_factory=default_cache_dir)

    catalog_ttl: float = 12 * HOUR
    detail_ttl: float = 7 * DAY
    lists_ttl: float = 10 * 60.0
    stats_ttl: float = HOUR

    catalog_refresh_interval: float = 6 * HOUR
    lists_refresh_interval: float = 5 * 60.0
    stats_refresh_interval: float = 30 * 60.0

    sync_backoff: BackoffPolicy = BackoffPolicy(initial=2.0, multiplier=2.0, maximum=300.0, jitter=0.2)
    poll_backoff: BackoffPolicy = BackoffPolicy(initial=0.5, multiplier=1.5, maximum=3.0, jitter=0.1)
    run_timeout: float = 30.0
    submit_timeout: float = 120.0
    max_poll_errors: int = 3

    index_debounce: float = 0.05
    flush_delay: float = 0.5
    sync_workers: int = 4
    remote_workers: int = 8

    @property
    def cache_path(self) -> Path:
        return self.cache_dir / "cache.json"

    @property
    def log_path(self) -> Path:
        return self.cache_dir / "leetcli_py.log"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineConfig":
        """Build a config from user overrides."""
        config = cls()
        if not data:
            return config
        known = {f.name for f in fields(cls)}
        overrides: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key in ("sync_backoff", "poll_backoff"):
                value = BackoffPolicy.from_dict(value)
            elif key == "cache_dir":
                value = Path(value).expanduser()
            elif key in ("max_poll_errors", "sync_workers", "remote_workers"):
                value = int(value)
            else:
                value = float(value)
            overrides[key] = value
        return replace(config, **overrides)
