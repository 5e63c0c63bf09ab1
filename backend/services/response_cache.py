"""
Response Cache

In-memory LRU cache for provider responses with per-entry TTL.

Cache Strategy:
- Key = SHA-256 over (task type, normalized prompt, options)
- LRU eviction when full; reads promote the key
- TTL checked lazily on read and swept in the background
- Cost and token savings tracked for observability
- Circuit breaker: repeated failures turn every operation into a no-op
  (always-miss) for a cooldown window. Nothing here raises to the caller.

The map and its LRU order live in one OrderedDict guarded by a lock, so
the cache is safe to share between request handlers and the sweep task.
"""

import asyncio
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

import settings
from exceptions import CacheDegraded

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    data: Any
    task_type: str
    timestamp: float
    cost: float = 0.0
    token_usage: int = 0
    hits: int = 0


@dataclass
class CachedResponse:
    """Returned on a hit."""
    data: Any
    cost: float
    token_usage: int
    age_seconds: float
    hits: int


class CircuitBreaker:
    """
    Failure counter with closed / open / half-open states.

    Opens when consecutive failures reach the threshold. After the cooldown
    one trial operation is let through (half-open); success closes the
    breaker, failure re-opens it for another cooldown.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, threshold: int = 5, cooldown_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.threshold = max(1, threshold)
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self.state = self.CLOSED
        self.failures = 0
        self.opened_at: Optional[float] = None

    def check(self):
        """Raise CacheDegraded while the breaker is open."""
        if self.state == self.OPEN:
            if self._clock() - self.opened_at >= self.cooldown_seconds:
                self.state = self.HALF_OPEN
                logger.info("Cache circuit breaker half-open, allowing trial operation")
            else:
                raise CacheDegraded()

    def record_success(self):
        if self.state != self.CLOSED:
            logger.info("Cache circuit breaker closed")
        self.state = self.CLOSED
        self.failures = 0
        self.opened_at = None

    def record_failure(self):
        self.failures += 1
        if self.state == self.HALF_OPEN or self.failures >= self.threshold:
            if self.state != self.OPEN:
                logger.warning(
                    f"Cache circuit breaker OPEN after {self.failures} failures "
                    f"(cooldown {self.cooldown_seconds}s)"
                )
            self.state = self.OPEN
            self.opened_at = self._clock()

    @property
    def is_open(self) -> bool:
        return self.state == self.OPEN


class ResponseCache:
    """
    Bounded LRU + TTL cache for AI responses.

    Defaults: 1 hour TTL, 1000 entries, sweep every 10 minutes.
    """

    def __init__(
        self,
        enabled: bool = True,
        ttl_seconds: float = 3600.0,
        max_size: int = 1000,
        sweep_interval_seconds: float = 600.0,
        breaker_threshold: int = 5,
        breaker_cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self.enabled = enabled
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._breaker = CircuitBreaker(breaker_threshold, breaker_cooldown_seconds, clock)
        self._reset_counters()

        self._running = False
        self._task: Optional[asyncio.Task] = None

        if self.enabled:
            logger.info(f"AI cache initialized: TTL={ttl_seconds}s, MaxSize={max_size}")
        else:
            logger.info("AI cache disabled")

    @classmethod
    def from_settings(cls) -> "ResponseCache":
        return cls(
            enabled=settings.AI_CACHE_ENABLED,
            ttl_seconds=settings.AI_CACHE_TTL_SECONDS,
            max_size=settings.AI_CACHE_MAX_SIZE,
            sweep_interval_seconds=settings.AI_CACHE_SWEEP_INTERVAL_SECONDS,
            breaker_threshold=settings.AI_CACHE_BREAKER_THRESHOLD,
            breaker_cooldown_seconds=settings.AI_CACHE_BREAKER_COOLDOWN_SECONDS,
        )

    def _reset_counters(self):
        self._hits = 0
        self._misses = 0
        self._cost_saved = 0.0
        self._tokens_saved = 0
        self._evictions = 0
        self._failures = 0
        self._degraded_skips = 0

    # =========================================================================
    # Public operations (never raise)
    # =========================================================================

    def get(self, task_type: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> Optional[CachedResponse]:
        """Cached response, or None on miss, expiry, or degradation."""
        result = self._guarded("get", lambda: self._get(task_type, prompt, options), None)
        if result is None:
            with self._lock:
                self._misses += 1
        return result

    def set(
        self,
        task_type: str,
        prompt: str,
        data: Any,
        cost: float = 0.0,
        token_usage: int = 0,
        options: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Store a response. Returns False when the write was skipped."""
        return self._guarded(
            "set", lambda: self._set(task_type, prompt, data, cost, token_usage, options), False
        )

    def invalidate(self, task_type: Optional[str] = None) -> int:
        """Drop every entry, or only those of one task type. Returns the number removed."""
        return self._guarded("invalidate", lambda: self._invalidate(task_type), 0)

    def cleanup_expired(self) -> int:
        return self._guarded("cleanup", self._cleanup_expired, 0)

    def warm_up(self, entries: Iterable[Dict[str, Any]]) -> int:
        """
        Pre-populate with known responses.

        Each item: {"task_type", "prompt", "data", "cost"?, "token_usage"?, "options"?}
        """
        stored = 0
        for item in entries:
            if self.set(
                item["task_type"],
                item["prompt"],
                item["data"],
                cost=item.get("cost", 0.0),
                token_usage=item.get("token_usage", 0),
                options=item.get("options"),
            ):
                stored += 1
        logger.info(f"Cache warmed up with {stored} entries")
        return stored

    def statistics(self) -> Dict[str, Any]:
        with self._lock:
            total_requests = self._hits + self._misses
            hit_rate = (self._hits / total_requests) * 100 if total_requests > 0 else 0.0
            return {
                "enabled": self.enabled,
                "total_entries": len(self._entries),
                "max_size": self.max_size,
                "total_hits": self._hits,
                "total_misses": self._misses,
                "hit_rate": round(hit_rate, 2),
                "cost_saved": round(self._cost_saved, 4),
                "tokens_saved": self._tokens_saved,
                "evictions": self._evictions,
                "failures": self._failures,
                "degraded_skips": self._degraded_skips,
                "breaker_state": self._breaker.state,
                "memory_usage": self._estimate_memory(),
            }

    def reset_statistics(self):
        with self._lock:
            self._reset_counters()
        logger.info("Cache statistics reset")

    def is_healthy(self) -> bool:
        """
        Unhealthy when the breaker is open, the hit rate stays under 10%
        after 100+ lookups, or estimated memory passes 50MB.
        """
        stats = self.statistics()
        if stats["breaker_state"] == CircuitBreaker.OPEN:
            logger.warning("Cache circuit breaker is open")
            return False
        if stats["total_hits"] + stats["total_misses"] > 100 and stats["hit_rate"] < 10:
            logger.warning("Low cache hit rate detected")
            return False
        if stats["memory_usage"] > 50_000_000:
            logger.warning("High cache memory usage detected")
            return False
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # =========================================================================
    # Background sweep
    # =========================================================================

    async def start(self):
        """Start the periodic TTL sweep."""
        if not self.enabled:
            return
        if self._running:
            logger.warning("ResponseCache sweep is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"ResponseCache sweep started (every {self.sweep_interval_seconds}s)")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ResponseCache sweep stopped")

    def is_running(self) -> bool:
        return self._running

    async def _sweep_loop(self):
        while self._running:
            await asyncio.sleep(self.sweep_interval_seconds)
            removed = self.cleanup_expired()
            if removed:
                logger.debug(f"Cleaned up {removed} expired cache entries")

    # =========================================================================
    # Internals (run under the breaker)
    # =========================================================================

    def _guarded(self, operation: str, fn: Callable[[], Any], default: Any) -> Any:
        if not self.enabled:
            return default

        try:
            with self._lock:
                self._breaker.check()
        except CacheDegraded:
            with self._lock:
                self._degraded_skips += 1
            return default

        try:
            result = fn()
        except Exception as e:
            with self._lock:
                self._failures += 1
                self._breaker.record_failure()
            logger.warning(f"Cache {operation} failed ({type(e).__name__}), failing open")
            return default

        with self._lock:
            self._breaker.record_success()
        return result

    @staticmethod
    def make_key(task_type: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        payload = {
            "taskType": task_type,
            "prompt": (prompt or "").strip().lower(),
            "options": options or {},
        }
        return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.ttl_seconds

    def _get(self, task_type, prompt, options) -> Optional[CachedResponse]:
        key = self.make_key(task_type, prompt, options)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            if self._is_expired(entry, now):
                del self._entries[key]
                return None

            self._entries.move_to_end(key)
            entry.hits += 1
            self._hits += 1
            self._cost_saved += entry.cost
            self._tokens_saved += entry.token_usage

            logger.debug(
                f"Cache HIT for {task_type}: saved ${entry.cost:.4f}, {entry.token_usage} tokens"
            )
            return CachedResponse(
                data=entry.data,
                cost=entry.cost,
                token_usage=entry.token_usage,
                age_seconds=now - entry.timestamp,
                hits=entry.hits,
            )

    def _set(self, task_type, prompt, data, cost, token_usage, options) -> bool:
        key = self.make_key(task_type, prompt, options)
        entry = CacheEntry(
            data=data,
            task_type=task_type,
            timestamp=self._clock(),
            cost=cost or 0.0,
            token_usage=token_usage or 0,
        )
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            else:
                while len(self._entries) >= self.max_size:
                    evicted_key, evicted = self._entries.popitem(last=False)
                    self._evictions += 1
                    logger.debug(f"Evicting LRU entry ({evicted.task_type}, {evicted.hits} hits)")
            self._entries[key] = entry

        logger.debug(f"Cache SET for {task_type}: cost=${entry.cost:.4f}, tokens={entry.token_usage}")
        return True

    def _invalidate(self, task_type: Optional[str]) -> int:
        with self._lock:
            if task_type is None:
                removed = len(self._entries)
                self._entries.clear()
            else:
                keys = [k for k, e in self._entries.items() if e.task_type == task_type]
                for k in keys:
                    del self._entries[k]
                removed = len(keys)

        logger.info(f"Cache invalidated ({task_type or 'all'}): {removed} entries removed")
        return removed

    def _cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if self._is_expired(e, now)]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def _estimate_memory(self) -> int:
        # Rough: serialized size of cached payloads. Caller holds the lock.
        total = 0
        for entry in self._entries.values():
            total += len(json.dumps(entry.data, default=str))
        return total
