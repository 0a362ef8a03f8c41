"""
Background revalidation of stale entries (stale-while-revalidate).

The scheduler owns an explicit ``asyncio.Task`` per key being refreshed, so
shutdown and tests can ``flush()`` or ``cancel_all()`` deterministically.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional

import structlog

from error_handling.fetcher import DEFAULT_ENDPOINT, ResilientFetcher
from monitoring.cache_metrics import MetricsCollector
from .core import CacheStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class RevalidationQueueEntry:
    key: str
    due_since: float


@dataclass
class _Refresh:
    task: "asyncio.Task[Any]"
    tags: FrozenSet[str] = field(default_factory=frozenset)
    version: Optional[str] = None
    superseded: bool = False


class RevalidationScheduler:
    """
    Tracks stale keys and refreshes them in the background.

    - a key is queued at most once
    - at most one refresh per key is in flight
    - a failed refresh leaves both the queue entry and the stale data in place;
      the next stale read tries again. A refreshed value the store refuses
      (too large, sensitive, rate limited) counts as a failed refresh
    - a refresh superseded by an invalidation never writes its result
    """

    def __init__(
        self,
        store: CacheStore,
        fetcher: ResilientFetcher,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
        reject_sensitive: bool = False,
    ):
        self.store = store
        self.fetcher = fetcher
        self.metrics = metrics or store.metrics
        self.reject_sensitive = reject_sensitive
        self._clock = clock
        self._queue: Dict[str, RevalidationQueueEntry] = {}
        self._refreshes: Dict[str, _Refresh] = {}

    def mark_stale(self, key: str) -> None:
        """Queue ``key`` for refresh unless it is already queued."""
        if key not in self._queue:
            self._queue[key] = RevalidationQueueEntry(key=key, due_since=self._clock())

    def get_revalidation_queue(self) -> List[RevalidationQueueEntry]:
        return list(self._queue.values())

    def clear_queue(self) -> None:
        self._queue.clear()

    def is_refreshing(self, key: str) -> bool:
        return key in self._refreshes

    def refreshing_keys(self) -> List[str]:
        return list(self._refreshes)

    @property
    def pending_count(self) -> int:
        return len(self._refreshes)

    def schedule(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        version: Optional[str] = None,
        endpoint: str = DEFAULT_ENDPOINT,
    ) -> Optional["asyncio.Task[Any]"]:
        """
        Start a background refresh of ``key`` unless one is already running.

        Must be called from inside a running event loop.

        Returns:
            The new task, or None if a refresh for ``key`` was already in flight
        """
        self.mark_stale(key)
        if key in self._refreshes:
            logger.debug("revalidation_already_pending", key=key)
            return None

        tag_set = frozenset(tags or ())
        task = asyncio.get_running_loop().create_task(
            self._refresh(key, fetch_fn, ttl, tag_set, version, endpoint)
        )
        refresh = _Refresh(task=task, tags=tag_set, version=version)
        self._refreshes[key] = refresh
        task.add_done_callback(lambda _t, k=key, r=refresh: self._forget(k, r))
        logger.debug("revalidation_scheduled", key=key)
        return task

    async def _refresh(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        ttl: Optional[float],
        tags: FrozenSet[str],
        version: Optional[str],
        endpoint: str,
    ) -> None:
        try:
            data = await self.fetcher.execute(fetch_fn, endpoint)

            refresh = self._refreshes.get(key)
            if refresh is not None and refresh.superseded:
                logger.debug("revalidation_superseded", key=key)
                return

            if self.reject_sensitive:
                self.store.validator.enforce(key, data)
            self.store.set(key, data, ttl=ttl, tags=tags, version=version)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The stale entry stays; the key stays queued for the next stale read.
            logger.warning("revalidation_failed", key=key,
                           error_type=type(e).__name__, error=str(e))
            self.metrics.record_revalidation(key, success=False)
            return

        self._queue.pop(key, None)
        self.metrics.record_revalidation(key, success=True)
        logger.debug("revalidation_complete", key=key)

    def supersede(self, keys: Iterable[str] = (), tags: Iterable[str] = ()) -> int:
        """
        Stop in-flight refreshes for ``keys`` or carrying any of ``tags`` from writing.

        The refreshes keep running; their results are dropped. Returns how many were marked.
        """
        key_set = set(keys)
        tag_set = set(tags)
        marked = 0
        for key, refresh in self._refreshes.items():
            if key in key_set or refresh.tags & tag_set:
                refresh.superseded = True
                self._queue.pop(key, None)
                marked += 1
        return marked

    def supersede_versions(self, current_version: str) -> int:
        """Stop in-flight refreshes that would write a version other than ``current_version``."""
        marked = 0
        for key, refresh in self._refreshes.items():
            if refresh.version is not None and refresh.version != current_version:
                refresh.superseded = True
                self._queue.pop(key, None)
                marked += 1
        return marked

    def supersede_all(self) -> None:
        for refresh in self._refreshes.values():
            refresh.superseded = True
        self._queue.clear()

    async def flush(self) -> None:
        """Wait for every outstanding refresh, including ones started meanwhile."""
        while True:
            tasks = [r.task for r in self._refreshes.values() if not r.task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cancel_all(self) -> None:
        """Cancel every outstanding refresh and wait for them to finish."""
        tasks = [r.task for r in self._refreshes.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _forget(self, key: str, refresh: _Refresh) -> None:
        if self._refreshes.get(key) is refresh:
            del self._refreshes[key]
