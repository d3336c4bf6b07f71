import copy
import hashlib
import json
import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ..core.cross_cutting.error_handling import error_context
from ..core.cross_cutting.monitoring.metrics import ApplicationMetrics, metrics
from ..core.errors import CacheError
from ..core.models.cache import (
    CacheEntry,
    CacheKeyContext,
    CacheStatistics,
    HealingContext,
)
from ..core.models.failed_test import FailureType, utc_now
from ..utils.config_types import CacheSettings
from ..utils.configuration import build_settings

logger = logging.getLogger(__name__)

CACHE_EXPORT_VERSION = "1.0"
TEST_CODE_KEY_PREFIX = 500  # characters of test code that identify a repair
HIT_RATE_WEIGHT = 0.7
SAVINGS_WEIGHT = 0.3


def _hash(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]


def _estimate_size(value: Any) -> int:
    try:
        return len(json.dumps(value, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return len(str(value).encode("utf-8"))


def _entry_cost(value: Any) -> float:
    """Cost the cached repair originally took to produce, 1 when unknown."""
    if isinstance(value, dict):
        cost = value.get("estimated_cost")
        if isinstance(cost, (int, float)) and cost > 0:
            return float(cost)
    return 1.0


class CacheStore:
    """
    In-memory repair cache with TTL expiry and LRU eviction.

    Entries are kept in an ``OrderedDict`` ordered from least to most recently
    used. ``get`` and overwriting ``set`` move an entry to the end; inserting a
    new key at capacity evicts from the front. All state is guarded by one
    lock so the check-evict-insert sequence is a single critical section.
    """

    def __init__(
        self,
        config: Optional[CacheSettings] = None,
        metrics_client: Optional[ApplicationMetrics] = None,
        clock: Optional[Callable[[], datetime]] = None,
        **overrides: Any,
    ):
        self.config = build_settings(CacheSettings, config, overrides)
        self.metrics = metrics_client or metrics
        self._now = clock or utc_now
        self._lock = threading.RLock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

        if self.config.persist_to_disk and Path(self.config.disk_path).is_file():
            self.import_cache(self.config.disk_path)

    # --- Core operations ---

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds (default_ttl if None)."""
        item_ttl = self.config.default_ttl if ttl is None else ttl
        now = self._now()
        entry = CacheEntry(
            key=key,
            value=copy.deepcopy(value),
            created_at=now,
            last_accessed_at=now,
            expires_at=now + timedelta(seconds=item_ttl),
            ttl=item_ttl,
            size=_estimate_size(value),
        )
        with self._lock:
            if key in self._entries:
                self._entries[key] = entry
                self._entries.move_to_end(key)
            else:
                if len(self._entries) >= self.config.max_size:
                    self._purge_expired(now)
                while len(self._entries) >= self.config.max_size:
                    self._evict_lru()
                self._entries[key] = entry
            logger.debug(f"Cached {key} (ttl={item_ttl}s, size={entry.size}B)")
            self._persist()

    def get(self, key: str) -> Optional[CacheEntry]:
        """
        Return a copy of the entry for ``key`` or None.

        Counts a hit or a miss, and on a hit refreshes the entry's recency.
        """
        with self._lock:
            now = self._now()
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(now):
                del self._entries[key]
                logger.debug(f"Cache entry {key} expired")
                self._persist()
                entry = None

            if entry is None:
                self._misses += 1
                self.metrics.cache_lookups.labels(result="miss").inc()
                logger.debug(f"Cache miss: {key}")
                return None

            entry.last_accessed_at = now
            entry.access_count += 1
            self._entries.move_to_end(key)
            self._hits += 1
            self.metrics.cache_lookups.labels(result="hit").inc()
            logger.debug(f"Cache hit: {key} (access_count={entry.access_count})")
            return copy.deepcopy(entry)

    def has(self, key: str) -> bool:
        """
        Whether an unexpired entry exists for ``key``.

        Does not count as an access: hit/miss counters and LRU order are
        untouched. An expired entry discovered here is removed.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._now()):
                del self._entries[key]
                self._persist()
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            if removed:
                self._persist()
            return removed

    def clear(self) -> None:
        """Remove every entry and reset the hit, miss and eviction counters."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            self._persist()

    def cleanup(self) -> int:
        """Eagerly remove all expired entries; returns how many were removed."""
        with self._lock:
            removed = self._purge_expired(self._now())
            if removed:
                logger.info(f"Removed {removed} expired cache entries")
                self._persist()
            return removed

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_all(self) -> List[CacheEntry]:
        with self._lock:
            return [copy.deepcopy(entry) for entry in self._entries.values()]

    def _purge_expired(self, now: datetime) -> int:
        expired_keys = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired_keys:
            del self._entries[key]
        return len(expired_keys)

    def _evict_lru(self) -> None:
        key, _ = self._entries.popitem(last=False)
        self._evictions += 1
        self.metrics.cache_evictions.inc()
        logger.debug(f"Evicted least recently used cache entry {key}")

    # --- Keys ---

    @staticmethod
    def generate_cache_key(context: CacheKeyContext) -> str:
        """Deterministic key over failure type, spec diff hash, test code hash and extras."""
        failure_type = FailureType.coerce(context.failure_type).value
        data = json.dumps(
            {
                "failure_type": failure_type,
                "spec_diff_hash": context.spec_diff_hash,
                "test_code_hash": context.test_code_hash,
                "extra": context.extra or {},
            },
            sort_keys=True,
            default=str,
        )
        return _hash(data)

    @classmethod
    def generate_cache_key_from_context(cls, context: HealingContext) -> str:
        spec_diff_hash = _hash(json.dumps(context.spec_diff, sort_keys=True, default=str))
        test_code_hash = _hash(context.test_code[:TEST_CODE_KEY_PREFIX])
        return cls.generate_cache_key(
            CacheKeyContext(
                failure_type=context.failure_type,
                spec_diff_hash=spec_diff_hash,
                test_code_hash=test_code_hash,
                extra={"error_message": context.error_message or ""},
            )
        )

    # --- Statistics ---

    def calculate_hit_rate(self) -> float:
        with self._lock:
            total = self._hits + self._misses
            return self._hits / total if total else 0.0

    def get_cache_stats(self) -> CacheStatistics:
        with self._lock:
            now = self._now()
            entries = list(self._entries.values())
            total_size = sum(e.size for e in entries)
            oldest_age = (
                (now - min(e.created_at for e in entries)).total_seconds()
                if entries
                else 0.0
            )
            hit_rate = self.calculate_hit_rate()

            saved = sum(e.access_count * _entry_cost(e.value) for e in entries)
            produced = sum(_entry_cost(e.value) for e in entries)
            savings_ratio = saved / (saved + produced) if saved + produced else 0.0
            estimated_savings = sum(
                e.access_count * _entry_cost(e.value)
                for e in entries
                if isinstance(e.value, dict) and "estimated_cost" in e.value
            )

            return CacheStatistics(
                total_entries=len(entries),
                hits=self._hits,
                misses=self._misses,
                hit_rate=hit_rate,
                total_size=total_size,
                average_size=total_size / len(entries) if entries else 0.0,
                oldest_entry_age=oldest_age,
                evictions=self._evictions,
                expired=sum(1 for e in entries if e.is_expired(now)),
                effectiveness=100
                * (HIT_RATE_WEIGHT * hit_rate + SAVINGS_WEIGHT * savings_ratio),
                estimated_savings=estimated_savings,
            )

    # --- Persistence ---

    def _export_document(self) -> Dict[str, Any]:
        return {
            "version": CACHE_EXPORT_VERSION,
            "timestamp": self._now().isoformat(),
            "config": self.config.model_dump(mode="json"),
            "items": [entry.to_dict() for entry in self._entries.values()],
            "stats": {
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            },
        }

    def export_cache(self, path: Union[str, Path]) -> None:
        """
        Write the cache to a JSON document.

        Raises:
            CacheError: "Failed to export cache: ..." on any write failure.
        """
        with self._lock, error_context("Failed to export cache", logger, CacheError):
            document = self._export_document()
            with open(path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, default=str)

    def import_cache(self, path: Union[str, Path]) -> int:
        """
        Replace the cache contents with an exported document.

        Expired items are skipped; hit, miss and eviction counters are restored
        verbatim. Entries beyond ``max_size`` are evicted least recently used
        first. Returns the number of entries kept.

        Raises:
            CacheError: "Failed to import cache: ..." on read or parse failure.
        """
        with self._lock, error_context("Failed to import cache", logger, CacheError):
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)

            now = self._now()
            entries = [CacheEntry.from_dict(item) for item in data.get("items", [])]
            self._entries.clear()
            for entry in entries:
                if not entry.is_expired(now):
                    self._entries[entry.key] = entry

            stats = data.get("stats") or {}
            self._hits = int(stats.get("hits", 0))
            self._misses = int(stats.get("misses", 0))
            self._evictions = int(stats.get("evictions", 0))
            restored = len(self._entries)
            while len(self._entries) > self.config.max_size:
                self._evict_lru()

            logger.info(
                f"Imported {len(self._entries)} cache entries from {path} "
                f"({len(entries) - restored} expired skipped, "
                f"{restored - len(self._entries)} evicted over capacity)"
            )
            return len(self._entries)

    def _persist(self) -> None:
        if self.config.persist_to_disk and self.config.disk_path is not None:
            self.export_cache(self.config.disk_path)
