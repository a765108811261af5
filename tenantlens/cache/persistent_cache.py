"""
Persistent Cache

Stale-while-revalidate cache for directory API reads, stored in the
config_cache table.

- Hits are served straight from storage, with no network call
- Hits older than half their TTL queue a background refresh
- Misses fetch synchronously and store the result
- A single FIFO worker drains the refresh queue with a small pause
  between tasks, so the upstream API never sees a burst of refreshes
- A periodic sweep removes expired rows

Storage errors never reach callers: a failed read is a miss, a failed
write is logged and the fetched value is still returned.
"""

import asyncio
import dataclasses
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional, Set, Tuple, Union

from sqlalchemy import func

from tenantlens.database import CacheEntry, Database, upsert, utcnow
from tenantlens.cache.config import CacheConfig, CacheTTL


logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Any]]
Clock = Callable[[], datetime]
TTL = Union[timedelta, float, int]


@dataclasses.dataclass
class FetchTask:
    """A queued background refresh. Lives in memory only."""
    key: str
    cache_type: str
    fetch_fn: FetchFn
    ttl: Optional[TTL] = None

    @property
    def ident(self) -> Tuple[str, str]:
        return (self.cache_type, self.key)


@dataclasses.dataclass
class CacheStats:
    """Cache operation statistics."""
    hits: int = 0
    misses: int = 0
    writes: int = 0
    errors: int = 0
    refreshes_queued: int = 0
    refreshes_completed: int = 0
    refreshes_failed: int = 0
    refreshes_dropped: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class _Row(NamedTuple):
    value: Any
    updated_at: datetime
    expires_at: datetime


def _json_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _to_timedelta(ttl: TTL) -> timedelta:
    return ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)


class PersistentCache:
    """
    Key/type-addressed persistent cache with per-entry TTL.

    Usage:
        cache = PersistentCache(database)
        await cache.open()

        users = await cache.get_or_fetch("users-{}", "users", fetch_users)

        await cache.invalidate(cache_type="users")
        await cache.close()
    """

    def __init__(
        self,
        db: Database,
        config: Optional[CacheConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.config = config or CacheConfig()
        self._clock = clock or utcnow
        self._stats = CacheStats()

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.refresh_queue_size)
        self._pending: Set[Tuple[str, str]] = set()
        self._inflight: Dict[Tuple[str, str], asyncio.Future] = {}
        self._worker_task: Optional[asyncio.Task] = None
        self._sweeper_task: Optional[asyncio.Task] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def open(self):
        """Create tables, log what is cached, start background tasks."""
        if self._worker_task is not None:
            return

        await asyncio.to_thread(self.db.open)
        await self._log_cache_status()

        self._worker_task = asyncio.create_task(self._refresh_worker())
        self._sweeper_task = asyncio.create_task(self._sweeper())
        logger.info("Persistent cache opened, background refresh worker started")

    async def close(self):
        """Stop background tasks. Queued refreshes are discarded."""
        for task in (self._worker_task, self._sweeper_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._worker_task = None
        self._sweeper_task = None
        self._pending.clear()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        logger.info("Persistent cache closed")

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None

    # =========================================================================
    # READ / WRITE
    # =========================================================================

    async def get(self, key: str, cache_type: str, default: Any = None) -> Any:
        """
        Get a cached value.

        A stored JSON null comes back as None, so callers that cache None
        pass a sentinel as default to tell it apart from a miss.
        get_or_fetch does not have this ambiguity.

        Returns:
            The stored value, or default when absent, expired or unreadable
        """
        row = await self._read(key, cache_type)
        if row is None:
            self._stats.misses += 1
            logger.debug(f"Cache miss for {cache_type}:{key}")
            return default

        self._stats.hits += 1
        logger.debug(f"Cache hit for {cache_type}:{key} (expires {row.expires_at.isoformat()})")
        return row.value

    async def set(
        self,
        key: str,
        cache_type: str,
        value: Any,
        ttl: Optional[TTL] = None,
    ) -> bool:
        """
        Store a value, replacing any existing entry for (key, cache_type).

        Args:
            key: Cache key
            cache_type: Logical namespace (selects the default TTL)
            value: JSON-serializable value
            ttl: Override of the type's default TTL

        Returns:
            True if stored, False if the write failed (logged, not raised)
        """
        ttl_delta = _to_timedelta(ttl) if ttl is not None else CacheTTL.for_type(cache_type)
        if ttl_delta <= timedelta(0):
            raise ValueError(f"TTL must be positive, got {ttl_delta}")

        try:
            payload = json.dumps(value, default=_json_default)
        except (TypeError, ValueError) as e:
            self._stats.errors += 1
            logger.error(f"Cache set error for {cache_type}:{key}: value not serializable: {e}")
            return False

        now = self._clock()
        expires_at = now + ttl_delta

        try:
            await asyncio.to_thread(self._write_sync, key, cache_type, payload, now, expires_at)
        except Exception as e:
            self._stats.errors += 1
            logger.error(f"Cache set error for {cache_type}:{key}: {e}")
            return False

        self._stats.writes += 1
        logger.debug(f"Cached {cache_type}:{key} (expires: {expires_at.isoformat()})")
        return True

    async def invalidate(
        self,
        key: Optional[str] = None,
        cache_type: Optional[str] = None,
    ) -> int:
        """
        Delete cache entries.

        - key and cache_type: that single entry
        - cache_type only: every entry of the type
        - key only: that key under every type
        - neither: everything

        Returns:
            Number of entries removed (0 on storage error)
        """
        try:
            count = await asyncio.to_thread(self._delete_sync, key, cache_type)
        except Exception as e:
            self._stats.errors += 1
            logger.error(f"Cache invalidation error: {e}")
            return 0

        scope = ":".join(part for part in (cache_type, key) if part) or "all"
        logger.info(f"Invalidated {count} cache entries ({scope})")
        return count

    async def get_or_fetch(
        self,
        key: str,
        cache_type: str,
        fetch_fn: FetchFn,
        ttl: Optional[TTL] = None,
    ) -> Any:
        """
        Primary read path: stale-while-revalidate.

        On hit the stored value is returned immediately; if the entry is
        older than stale_fraction of its TTL a background refresh is queued.
        On miss fetch_fn is awaited, its result stored and returned. Errors
        raised by fetch_fn on a miss propagate.

        Concurrent misses on the same entry share one fetch: later callers
        await the fetch already in flight (and see its result or error).
        """
        row = await self._read(key, cache_type)

        if row is not None:
            self._stats.hits += 1
            if self._is_stale(row):
                logger.debug(f"Cache stale for {cache_type}:{key}, refreshing in background")
                self._schedule_refresh(FetchTask(key, cache_type, fetch_fn, ttl))
            else:
                logger.debug(f"Cache hit for {cache_type}:{key}")
            return row.value

        self._stats.misses += 1
        ident = (cache_type, key)
        inflight = self._inflight.get(ident)
        if inflight is None:
            logger.info(f"Cache miss for {cache_type}:{key}, fetching fresh data")
            inflight = asyncio.ensure_future(self._fetch_and_store(key, cache_type, fetch_fn, ttl))
            self._inflight[ident] = inflight
            inflight.add_done_callback(lambda done: self._forget_inflight(ident, done))
        else:
            logger.debug(f"Cache miss for {cache_type}:{key}, joining fetch in flight")

        # A cancelled caller must not cancel the fetch other callers share
        return await asyncio.shield(inflight)

    async def _fetch_and_store(
        self,
        key: str,
        cache_type: str,
        fetch_fn: FetchFn,
        ttl: Optional[TTL],
    ) -> Any:
        fresh = await fetch_fn()
        await self.set(key, cache_type, fresh, ttl)
        return fresh

    def _forget_inflight(self, ident: Tuple[str, str], done: asyncio.Future):
        if self._inflight.get(ident) is done:
            del self._inflight[ident]

    # =========================================================================
    # BACKGROUND REFRESH
    # =========================================================================

    def _is_stale(self, row: _Row) -> bool:
        ttl = row.expires_at - row.updated_at
        age = self._clock() - row.updated_at
        return age > ttl * self.config.stale_fraction

    def _schedule_refresh(self, task: FetchTask) -> bool:
        """Queue a refresh unless one is already pending for the entry."""
        if task.ident in self._pending:
            logger.debug(f"Refresh already pending for {task.cache_type}:{task.key}")
            return False

        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            self._stats.refreshes_dropped += 1
            logger.warning(
                f"Refresh queue full ({self._queue.maxsize}), dropping refresh of "
                f"{task.cache_type}:{task.key}"
            )
            return False

        self._pending.add(task.ident)
        self._stats.refreshes_queued += 1
        return True

    async def _refresh_worker(self):
        """Drain the refresh queue one task at a time, in order."""
        while True:
            task = await self._queue.get()
            try:
                await self._run_refresh(task)
            finally:
                self._pending.discard(task.ident)
                self._queue.task_done()
            await asyncio.sleep(self.config.refresh_delay)

    async def _run_refresh(self, task: FetchTask):
        try:
            logger.debug(f"Background refresh: {task.cache_type}:{task.key}")
            fresh = await task.fetch_fn()
            await self.set(task.key, task.cache_type, fresh, task.ttl)
            self._stats.refreshes_completed += 1
            logger.debug(f"Background refresh complete: {task.cache_type}:{task.key}")
        except Exception as e:
            # The stale value stays in place until it expires
            self._stats.refreshes_failed += 1
            logger.error(f"Background refresh failed: {task.cache_type}:{task.key}: {e}")

    async def drain(self):
        """Wait until every queued refresh has been processed."""
        await self._queue.join()

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    # =========================================================================
    # EXPIRY SWEEP
    # =========================================================================

    async def purge_expired(self) -> int:
        """Delete every entry whose expires_at is in the past."""
        try:
            count = await asyncio.to_thread(self._purge_sync, self._clock())
        except Exception as e:
            self._stats.errors += 1
            logger.error(f"Error cleaning expired cache: {e}")
            return 0

        logger.debug(f"Cleaned {count} expired cache entries")
        return count

    async def _sweeper(self):
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            await self.purge_expired()

    # =========================================================================
    # STATS / HEALTH
    # =========================================================================

    async def stats(self) -> Dict[str, Any]:
        """Get cache statistics (storage counts plus in-process counters)."""
        try:
            counts = await asyncio.to_thread(self._counts_sync, self._clock())
        except Exception as e:
            self._stats.errors += 1
            logger.error(f"Error getting cache stats: {e}")
            counts = {"total_entries": 0, "expired_entries": 0, "by_type": {}}

        return {
            **counts,
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "writes": self._stats.writes,
            "errors": self._stats.errors,
            "hit_rate_percent": round(self._stats.hit_rate * 100, 2),
            "refreshes_queued": self._stats.refreshes_queued,
            "refreshes_completed": self._stats.refreshes_completed,
            "refreshes_failed": self._stats.refreshes_failed,
            "refreshes_dropped": self._stats.refreshes_dropped,
            "queue_depth": self.queue_depth,
        }

    async def health_check(self) -> Dict[str, Any]:
        """
        Simple health check.

        Just verifies we can query the table.
        """
        try:
            counts = await asyncio.to_thread(self._counts_sync, self._clock())
            return {
                "healthy": True,
                "status": "connected",
                "cached_entries": counts["total_entries"],
                "worker_running": self.is_running,
            }
        except Exception as e:
            return {
                "healthy": False,
                "status": "error",
                "error": str(e),
                "worker_running": self.is_running,
            }

    async def _log_cache_status(self):
        try:
            counts = await asyncio.to_thread(self._counts_sync, self._clock())
        except Exception as e:
            logger.error(f"Error logging cache status: {e}")
            return

        valid = counts["total_entries"] - counts["expired_entries"]
        logger.info(
            f"Cache status on startup: {valid} valid, {counts['expired_entries']} expired, "
            f"by type: {counts['by_type']}"
        )

    # =========================================================================
    # STORAGE (runs in worker threads)
    # =========================================================================

    async def _read(self, key: str, cache_type: str) -> Optional[_Row]:
        try:
            return await asyncio.to_thread(self._read_sync, key, cache_type, self._clock())
        except Exception as e:
            self._stats.errors += 1
            logger.error(f"Cache get error for {cache_type}:{key}: {e}")
            return None

    def _read_sync(self, key: str, cache_type: str, now: datetime) -> Optional[_Row]:
        with self.db.session() as session:
            entry = session.get(CacheEntry, (key, cache_type))
            if entry is None or entry.expires_at <= now:
                return None
            return _Row(json.loads(entry.data), entry.updated_at, entry.expires_at)

    def _write_sync(
        self,
        key: str,
        cache_type: str,
        payload: str,
        now: datetime,
        expires_at: datetime,
    ):
        with self.db.session() as session:
            upsert(
                session,
                CacheEntry,
                {
                    "cache_key": key,
                    "cache_type": cache_type,
                    "data": payload,
                    "created_at": now,
                    "updated_at": now,
                    "expires_at": expires_at,
                    "version": 1,
                },
                update_columns=("data", "updated_at", "expires_at"),
                update_extra={"version": CacheEntry.version + 1},
            )

    def _delete_sync(self, key: Optional[str], cache_type: Optional[str]) -> int:
        with self.db.session() as session:
            query = session.query(CacheEntry)
            if key is not None:
                query = query.filter(CacheEntry.cache_key == key)
            if cache_type is not None:
                query = query.filter(CacheEntry.cache_type == cache_type)
            return query.delete(synchronize_session=False)

    def _purge_sync(self, now: datetime) -> int:
        with self.db.session() as session:
            return session.query(CacheEntry).filter(
                CacheEntry.expires_at < now
            ).delete(synchronize_session=False)

    def _counts_sync(self, now: datetime) -> Dict[str, Any]:
        with self.db.session() as session:
            total = session.query(func.count()).select_from(CacheEntry).scalar() or 0
            expired = session.query(func.count()).select_from(CacheEntry).filter(
                CacheEntry.expires_at <= now
            ).scalar() or 0
            by_type = dict(
                session.query(CacheEntry.cache_type, func.count())
                .group_by(CacheEntry.cache_type)
                .all()
            )
        return {
            "total_entries": total,
            "expired_entries": expired,
            "by_type": by_type,
        }
