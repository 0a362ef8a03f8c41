#!/usr/bin/env python
"""
Example script demonstrating the ledger cache.

It simulates a slow, occasionally failing ledger RPC and shows request
coalescing, stale-while-revalidate and invalidation after a write.
"""
import asyncio
import random
import time

import structlog

from cache import CacheKeys, CacheTags, GROUP_STATUS_TTL, build_coordinator
from config.logging import configure_logging
from config.settings import CacheSettings

logger = structlog.get_logger()


class FakeLedger:
    """Stands in for the contract RPC: slow, and failing now and then."""

    def __init__(self, failure_rate: float = 0.2):
        self.failure_rate = failure_rate
        self.calls = 0
        self.cycle = 1

    async def get_group_status(self, group_id: str):
        self.calls += 1
        await asyncio.sleep(0.2)
        if random.random() < self.failure_rate:
            raise ConnectionError("connection reset by peer")
        return {"group_id": group_id, "cycle": self.cycle, "status": "active"}

    async def contribute(self, group_id: str):
        await asyncio.sleep(0.1)
        self.cycle += 1


async def run():
    """Run the cache example."""
    settings = CacheSettings.for_environment("development", default_ttl=GROUP_STATUS_TTL)
    configure_logging(settings.log_level, settings.json_logs)
    coordinator = build_coordinator(settings)
    ledger = FakeLedger()

    key = CacheKeys.group_status("42")
    tags = [CacheTags.group("42")]

    def fetch():
        return ledger.get_group_status("42")

    logger.info("demonstrating_request_coalescing")
    start_time = time.time()
    results = await asyncio.gather(
        *(coordinator.get_or_fetch(key, fetch, tags=tags, endpoint="getGroupStatus") for _ in range(5)),
        return_exceptions=True,
    )
    logger.info("coalesced_reads", callers=len(results), upstream_calls=ledger.calls,
                elapsed=round(time.time() - start_time, 3))

    logger.info("demonstrating_cache_hit")
    start_time = time.time()
    status = await coordinator.get_or_fetch(key, fetch, tags=tags, endpoint="getGroupStatus")
    logger.info("cached_read", status=status, elapsed=round(time.time() - start_time, 3))

    logger.info("demonstrating_invalidation_after_write")
    await ledger.contribute("42")
    removed = coordinator.invalidate_after_mutation(tags + [CacheTags.groups])
    try:
        status = await coordinator.get_or_fetch(key, fetch, tags=tags, endpoint="getGroupStatus")
        logger.info("fresh_read_after_write", status=status, removed=removed)
    except Exception as e:
        logger.warning("fresh_read_failed", error=str(e))

    await coordinator.aclose()
    logger.info("cache_metrics", **coordinator.get_metrics())
    logger.info("cache_health", **coordinator.check_health().to_dict())


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
