"""
Response cache for aigate.

Maps a canonical (operation, params) key to a previously computed model
response, so identical requests never pay for a second model call.

Features:
- Canonical keys: parameter key order never matters
- Byte-budgeted storage with LRU eviction (tie-break: fewest hits)
- Adaptive TTLs based on cost, popularity and operation type
- Tag invalidation, export/import, background warming
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Callable, Optional
import hashlib
import json
import logging
import statistics
import threading
import time

from aigate.models import CacheEntry

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

# Operations whose answers change slowly are kept longer.
OPERATION_TTL_MULTIPLIERS: dict[str, float] = {
    "insights": 3,
    "suggestions": 2,
    "embeddings": 10,
    "templates": 4,
    "chat": 0.5,
    "realtime": 0.1,
}


@dataclass
class WarmingQuery:
    """A request worth having in the cache before anyone asks for it."""
    operation: str
    params: Any = None
    priority: float = 1.0
    frequency: int = 1
    tags: tuple = ()
    ttl: Optional[float] = None


@dataclass
class CacheConfig:
    """Cache configuration."""
    max_entries: int = 5000
    max_memory_bytes: int = 512 * 1024 * 1024
    max_entry_bytes: int = 1024 * 1024
    default_ttl: Optional[float] = 3600.0  # seconds; None disables expiry
    cost_threshold_cents: float = 1.0
    popularity_threshold: int = 10
    enabled: bool = True
    warming_queries: list[WarmingQuery] = field(default_factory=list)
    max_warming_batch: int = 20
    max_learned_queries: int = 500


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def make_cache_key(operation: str, params: Any) -> str:
    """
    Derive the cache key for an operation and its parameters.

    Object keys are sorted at every depth, so ``{"a": 1, "b": 2}`` and
    ``{"b": 2, "a": 1}`` produce the same key. ``None`` params equal ``{}``.

    Raises:
        TypeError: If params are not JSON-serialisable
    """
    canonical = _dumps({"operation": operation, "params": {} if params is None else params})
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ResponseCache:
    """
    In-memory cache of model responses.

    Example:
        ```python
        cache = ResponseCache(CacheConfig(max_memory_bytes=64 * 1024 * 1024))

        cache.set("enhance", {"text": "hi"}, "Hi there!", tags=["enhance"])
        cache.get("enhance", {"text": "hi"})   # "Hi there!"
        cache.clear_by_tag("enhance")          # 1
        ```
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CacheConfig()
        self._clock = clock
        self._lock = threading.Lock()

        self._entries: dict[str, CacheEntry] = {}
        self._memory_bytes = 0

        self._learned_queries: dict[str, WarmingQuery] = {}
        self._warming_status = "idle"
        self._last_warming: Optional[dict] = None

        self._reset_counters()

    def _reset_counters(self) -> None:
        self._total_requests = 0
        self._total_hits = 0
        self._cost_savings_cents = 0.0
        self._operation_stats: dict[str, dict[str, int]] = defaultdict(
            lambda: {"count": 0, "hits": 0}
        )
        self._evictions: dict[str, int] = defaultdict(int)
        self._peak_memory_bytes = self._memory_bytes

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, operation: str, params: Any = None) -> Any:
        """Return the cached value, or None on a miss or an expired entry."""
        try:
            key = make_cache_key(operation, params)
        except (TypeError, ValueError):
            return None

        with self._lock:
            now = self._clock()
            self._total_requests += 1
            op_stats = self._operation_stats[operation]
            op_stats["count"] += 1

            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                self._remove(key, "expired")
                return None

            entry.hit_count += 1
            entry.last_accessed_at = now
            self._total_hits += 1
            op_stats["hits"] += 1
            self._cost_savings_cents += entry.cost_cents
            payload = entry.payload

        return json.loads(payload)

    def has(self, operation: str, params: Any = None) -> bool:
        """Check for a live entry without counting a request."""
        try:
            key = make_cache_key(operation, params)
        except (TypeError, ValueError):
            return False

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                self._remove(key, "expired")
                return False
            return True

    # =========================================================================
    # Writes
    # =========================================================================

    def set(
        self,
        operation: str,
        params: Any,
        value: Any,
        ttl: Optional[float] = None,
        tags: Optional[list[str]] = None,
        cost_cents: float = 0.0,
    ) -> bool:
        """
        Store a value.

        Args:
            operation: Operation name (e.g. "enhance").
            params: Operation parameters; part of the key.
            value: Any JSON-serialisable value.
            ttl: Seconds to live. Defaults to the adaptive TTL.
            tags: Tags for later invalidation with clear_by_tag.
            cost_cents: What producing the value cost; drives TTL and savings stats.

        Returns:
            False if the cache is disabled, the value is not serialisable,
            the ttl is not positive, or the entry is larger than allowed.
        """
        if not self.config.enabled:
            return False
        if ttl is not None and ttl <= 0:
            return False

        try:
            key = make_cache_key(operation, params)
            payload = _dumps(value)
        except (TypeError, ValueError) as e:
            logger.warning("Cache: refusing non-serialisable entry for %s: %s", operation, e)
            return False

        size = len(payload.encode("utf-8"))
        if size > self.config.max_entry_bytes or size > self.config.max_memory_bytes:
            logger.warning(
                "Cache: entry for %s is %d bytes (max entry %d bytes)",
                operation, size, self.config.max_entry_bytes,
            )
            return False

        with self._lock:
            now = self._clock()
            existing = self._entries.get(key)
            hit_count = existing.hit_count if existing else 0
            if ttl is None:
                ttl = self.calculate_ttl(operation, cost_cents, hit_count)

            self._make_room(size, key, now)
            if existing is not None:
                self._remove(key, None)

            self._insert(CacheEntry(
                key=key,
                operation=operation,
                payload=payload,
                created_at=now,
                last_accessed_at=now,
                size_bytes=size,
                ttl=ttl,
                tags=frozenset(tags or ()),
                hit_count=hit_count,
                cost_cents=cost_cents,
            ))
            self._learn_query(key, operation, params, cost_cents)

        return True

    def delete(self, operation: str, params: Any = None) -> bool:
        """Remove one entry. Returns True if it existed."""
        try:
            key = make_cache_key(operation, params)
        except (TypeError, ValueError):
            return False
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key, None)
            return True

    def clear_by_tag(self, tag: str) -> int:
        """Remove every entry carrying ``tag``. Returns the number removed."""
        with self._lock:
            keys = [k for k, e in self._entries.items() if tag in e.tags]
            cost_impact = sum(self._entries[k].cost_cents for k in keys)
            for key in keys:
                self._remove(key, "tag")

        logger.info(
            "Cache invalidation: cleared %d entries with tag '%s', cost impact: %.4f cents",
            len(keys), tag, cost_impact,
        )
        return len(keys)

    def clear(self) -> None:
        """Remove all entries and learned warming queries; reset hit counters."""
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._memory_bytes = 0
            self._learned_queries.clear()
            self._reset_counters()
        logger.info("Cache cleared: %d entries removed", removed)

    def reset(self) -> None:
        """Return to a freshly constructed state."""
        self.clear()
        with self._lock:
            self._warming_status = "idle"
            self._last_warming = None

    # =========================================================================
    # Housekeeping
    # =========================================================================

    def calculate_ttl(
        self,
        operation: str,
        cost_cents: float = 0.0,
        hit_count: int = 0,
    ) -> Optional[float]:
        """Adaptive TTL: expensive, popular and slow-changing answers live longer."""
        base = self.config.default_ttl
        if base is None:
            return None
        cost_multiplier = min(max(cost_cents / self.config.cost_threshold_cents, 1), 10)
        popularity_multiplier = 2 if hit_count > self.config.popularity_threshold else 1
        operation_multiplier = OPERATION_TTL_MULTIPLIERS.get(operation, 1)
        return base * cost_multiplier * popularity_multiplier * operation_multiplier

    def sweep_expired(self) -> int:
        """Eagerly drop expired entries. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._remove(key, "expired")
        if expired:
            logger.info("Cache cleanup: removed %d expired entries", len(expired))
        return len(expired)

    def optimize(self, high_water: float = 0.8, target: float = 0.7) -> dict:
        """
        Sweep expired entries and, above ``high_water`` memory usage,
        evict down to ``target``.
        """
        before = self._summary()
        expired = self.sweep_expired()
        evicted = 0
        with self._lock:
            limit = self.config.max_memory_bytes
            if self._memory_bytes > limit * high_water:
                excess = self._memory_bytes - int(limit * target)
                evicted = self._evict(excess, 0, exclude=None, now=self._clock())
        if evicted:
            logger.info("Cache optimization: evicted %d entries", evicted)
        return {
            "expired_removed": expired,
            "evicted": evicted,
            "before": before,
            "after": self._summary(),
        }

    def reconfigure(
        self,
        max_entries: Optional[int] = None,
        max_memory_bytes: Optional[int] = None,
        max_entry_bytes: Optional[int] = None,
        default_ttl: Optional[float] = None,
    ) -> CacheConfig:
        """Change limits on a live cache, evicting whatever no longer fits."""
        with self._lock:
            if max_entries is not None:
                self.config.max_entries = max_entries
            if max_memory_bytes is not None:
                self.config.max_memory_bytes = max_memory_bytes
            if max_entry_bytes is not None:
                self.config.max_entry_bytes = max_entry_bytes
            if default_ttl is not None:
                self.config.default_ttl = default_ttl
            excess_bytes = self._memory_bytes - self.config.max_memory_bytes
            excess_count = len(self._entries) - self.config.max_entries
            if excess_bytes > 0 or excess_count > 0:
                self._evict(excess_bytes, excess_count, exclude=None, now=self._clock())
            return self.config

    # =========================================================================
    # Eviction internals (caller holds the lock)
    # =========================================================================

    def _insert(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        self._memory_bytes += entry.size_bytes
        self._peak_memory_bytes = max(self._peak_memory_bytes, self._memory_bytes)

    def _remove(self, key: str, reason: Optional[str]) -> None:
        entry = self._entries.pop(key)
        self._memory_bytes -= entry.size_bytes
        if reason:
            self._evictions[reason] += 1

    def _make_room(self, size: int, key: str, now: float) -> None:
        existing = self._entries.get(key)
        replaced_bytes = existing.size_bytes if existing else 0
        count_after = len(self._entries) + (0 if existing else 1)

        excess_bytes = self._memory_bytes - replaced_bytes + size - self.config.max_memory_bytes
        excess_count = count_after - self.config.max_entries
        if excess_bytes > 0 or excess_count > 0:
            self._evict(excess_bytes, excess_count, exclude=key, now=now)

    def _evict(self, excess_bytes: int, excess_count: int, exclude: Optional[str], now: float) -> int:
        # Expired first, then least recently used, then fewest hits, then oldest.
        candidates = sorted(
            (e for k, e in self._entries.items() if k != exclude),
            key=lambda e: (not e.is_expired(now), e.last_accessed_at, e.hit_count, e.created_at),
        )
        evicted = 0
        for entry in candidates:
            if excess_bytes <= 0 and excess_count <= 0:
                break
            self._remove(entry.key, "expired" if entry.is_expired(now) else "lru")
            excess_bytes -= entry.size_bytes
            excess_count -= 1
            evicted += 1
        return evicted

    # =========================================================================
    # Warming
    # =========================================================================

    def _learn_query(self, key: str, operation: str, params: Any, cost_cents: float) -> None:
        query = self._learned_queries.get(key)
        if query is not None:
            query.frequency += 1
            return
        if len(self._learned_queries) >= self.config.max_learned_queries:
            coldest = min(self._learned_queries, key=lambda k: self._learned_queries[k].frequency)
            del self._learned_queries[coldest]
        self._learned_queries[key] = WarmingQuery(
            operation=operation,
            params=json.loads(_dumps(params)),
            priority=min(max(cost_cents / self.config.cost_threshold_cents, 1), 10),
        )

    def _select_warming_queries(self) -> list[WarmingQuery]:
        queries = list(self.config.warming_queries) + list(self._learned_queries.values())
        queries.sort(key=lambda q: q.priority * q.frequency, reverse=True)
        return queries[: self.config.max_warming_batch]

    def perform_cache_warming(
        self,
        loader: Optional[Callable[[str, Any], Any]] = None,
        background: bool = True,
    ) -> Optional[threading.Thread]:
        """
        Pre-populate the cache with high-value queries.

        Each query that is not already cached is passed to
        ``loader(operation, params)`` and its result stored. A failing query
        is logged and skipped; it never aborts the batch. Without a loader
        the pass only reports what it would warm.

        Args:
            loader: Produces the value for a query (usually a model call).
            background: Run on a daemon thread and return immediately.

        Returns:
            The warming thread in background mode, otherwise None. Also None
            if a warming pass is already running.
        """
        with self._lock:
            if self._warming_status == "warming":
                logger.info("Cache warming: already in progress")
                return None
            queries = self._select_warming_queries()
            self._warming_status = "warming"

        if not background:
            self._run_warming(queries, loader)
            return None

        thread = threading.Thread(
            target=self._run_warming,
            args=(queries, loader),
            name="aigate-cache-warming",
            daemon=True,
        )
        thread.start()
        return thread

    def _run_warming(self, queries: list[WarmingQuery], loader) -> None:
        warmed = skipped = failed = 0
        started = self._clock()
        logger.info("Cache warming: starting with %d candidate queries", len(queries))
        try:
            for query in queries:
                if self.has(query.operation, query.params):
                    skipped += 1
                    continue
                if loader is None:
                    logger.info("Cache warming: would warm %s", query.operation)
                    continue
                try:
                    value = loader(query.operation, query.params)
                except Exception as e:
                    failed += 1
                    logger.warning("Cache warming failed for %s: %s", query.operation, e)
                    continue
                if value is not None and self.set(
                    query.operation, query.params, value, ttl=query.ttl, tags=list(query.tags)
                ):
                    warmed += 1
        finally:
            with self._lock:
                self._warming_status = "complete"
                self._last_warming = {
                    "started_at": started,
                    "finished_at": self._clock(),
                    "candidates": len(queries),
                    "warmed": warmed,
                    "skipped": skipped,
                    "failed": failed,
                }
            logger.info(
                "Cache warming: completed, warmed=%d skipped=%d failed=%d",
                warmed, skipped, failed,
            )

    # =========================================================================
    # Stats, export, import
    # =========================================================================

    def _summary(self) -> dict:
        with self._lock:
            return {
                "size": len(self._entries),
                "memory_usage": self._memory_usage(),
                "hit_rate": self._hit_rate(),
            }

    def _hit_rate(self) -> float:
        return self._total_hits / self._total_requests if self._total_requests else 0.0

    def _memory_usage(self) -> float:
        limit = self.config.max_memory_bytes
        return self._memory_bytes / limit if limit else 0.0

    def memory_usage(self) -> float:
        """Fraction (0..1) of the byte budget in use."""
        with self._lock:
            return self._memory_usage()

    def get_advanced_stats(self) -> dict:
        """
        Get cache statistics.

        Returns:
            Dictionary with hit rate, size, memory usage (fraction of the
            byte budget), warming status and per-operation analytics.
        """
        with self._lock:
            now = self._clock()
            entries = list(self._entries.values())
            hit_rate = self._hit_rate()
            ttls = sorted(e.ttl for e in entries if e.ttl is not None)

            top_operations = sorted(
                (
                    {
                        "operation": op,
                        "count": s["count"],
                        "hit_rate": s["hits"] / s["count"] if s["count"] else 0.0,
                    }
                    for op, s in self._operation_stats.items()
                ),
                key=lambda o: o["count"],
                reverse=True,
            )[:10]

            return {
                "size": len(entries),
                "max_size": self.config.max_entries,
                "hit_rate": hit_rate,
                "miss_rate": 1 - hit_rate if self._total_requests else 0.0,
                "memory_usage": self._memory_usage(),
                "memory_bytes": self._memory_bytes,
                "max_memory_bytes": self.config.max_memory_bytes,
                "peak_memory_bytes": self._peak_memory_bytes,
                "warming_status": self._warming_status,
                "last_warming": dict(self._last_warming) if self._last_warming else None,
                "cost_savings_cents": self._cost_savings_cents,
                "expired_entries": sum(1 for e in entries if e.is_expired(now)),
                "popular_entries": [
                    {"key": e.key, "operation": e.operation, "hit_count": e.hit_count}
                    for e in sorted(entries, key=lambda e: e.hit_count, reverse=True)[:10]
                ],
                "analytics": {
                    "total_requests": self._total_requests,
                    "total_hits": self._total_hits,
                    "total_misses": self._total_requests - self._total_hits,
                    "top_operations": top_operations,
                    "eviction_stats": {
                        "total_evictions": sum(self._evictions.values()),
                        "eviction_reasons": dict(self._evictions),
                    },
                    "time_to_live": {
                        "average": statistics.mean(ttls) if ttls else 0,
                        "median": statistics.median(ttls) if ttls else 0,
                        "p95": ttls[int(len(ttls) * 0.95)] if ttls else 0,
                    },
                },
            }

    def export_cache(self) -> dict:
        """Serialise every live entry into a JSON-compatible snapshot."""
        with self._lock:
            entries = [
                {
                    "key": e.key,
                    "operation": e.operation,
                    "value": json.loads(e.payload),
                    "tags": sorted(e.tags),
                    "created_at": e.created_at,
                    "last_accessed_at": e.last_accessed_at,
                    "hit_count": e.hit_count,
                    "ttl": e.ttl,
                    "cost_cents": e.cost_cents,
                }
                for e in self._entries.values()
            ]
            config = {
                "max_entries": self.config.max_entries,
                "max_memory_bytes": self.config.max_memory_bytes,
                "max_entry_bytes": self.config.max_entry_bytes,
                "default_ttl": self.config.default_ttl,
            }
        return {
            "version": SNAPSHOT_VERSION,
            "exported_at": datetime.now(UTC).isoformat(),
            "config": config,
            "stats": self.get_advanced_stats(),
            "entries": entries,
        }

    def import_cache(self, snapshot: Any) -> bool:
        """
        Restore entries from an export_cache snapshot.

        Every entry is validated before anything is applied; one malformed
        entry rejects the whole snapshot. Expired and oversized entries are
        skipped.

        Returns:
            True if the snapshot was well-formed and applied.
        """
        if not isinstance(snapshot, dict) or not isinstance(snapshot.get("entries"), list):
            logger.warning("Cache import: snapshot has no entries list")
            return False

        try:
            parsed = [self._entry_from_dict(item) for item in snapshot["entries"]]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Cache import failed: malformed entry: %s", e)
            return False

        imported = skipped = 0
        with self._lock:
            now = self._clock()
            for entry in parsed:
                if (
                    entry.is_expired(now)
                    or entry.size_bytes > self.config.max_entry_bytes
                    or entry.size_bytes > self.config.max_memory_bytes
                ):
                    skipped += 1
                    continue
                self._make_room(entry.size_bytes, entry.key, now)
                if entry.key in self._entries:
                    self._remove(entry.key, None)
                self._insert(entry)
                imported += 1

        logger.info("Cache import: restored %d entries, skipped %d", imported, skipped)
        return True

    @staticmethod
    def _entry_from_dict(item: Any) -> CacheEntry:
        if not isinstance(item, dict):
            raise TypeError("entry must be an object")

        key = item["key"]
        if not isinstance(key, str) or len(key) != 64 or any(c not in "0123456789abcdef" for c in key):
            raise ValueError("key must be a sha256 hex digest")
        operation = item["operation"]
        if not isinstance(operation, str) or not operation:
            raise ValueError("operation must be a non-empty string")

        def number(name, default=None, minimum=0):
            value = item.get(name, default)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
                raise ValueError(f"{name} must be a number >= {minimum}")
            return value

        created_at = number("created_at")
        last_accessed_at = number("last_accessed_at", created_at)
        hit_count = number("hit_count", 0)
        if not isinstance(hit_count, int):
            raise ValueError("hit_count must be an integer")
        cost_cents = number("cost_cents", 0)

        ttl = item.get("ttl")
        if ttl is not None:
            ttl = number("ttl")
            if ttl == 0:
                raise ValueError("ttl must be positive")

        tags = item.get("tags", [])
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise ValueError("tags must be a list of strings")

        payload = _dumps(item["value"])
        return CacheEntry(
            key=key,
            operation=operation,
            payload=payload,
            created_at=created_at,
            last_accessed_at=last_accessed_at,
            size_bytes=len(payload.encode("utf-8")),
            ttl=ttl,
            tags=frozenset(tags),
            hit_count=hit_count,
            cost_cents=cost_cents,
        )
