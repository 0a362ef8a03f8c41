"""
Ledger Cache Module

This module provides the caching layer between the savings-group frontend
and the ledger RPC, focusing on:
- Fast repeated reads of group, member and transaction data
- Serving stale data while a background refresh runs
- One upstream call per key no matter how many callers wait on it
- Precise invalidation after confirmed writes
"""

from .core import CacheEntry, CacheLookup, CacheStore
from .invalidation import InvalidationEngine
from .revalidation import RevalidationQueueEntry, RevalidationScheduler
from .coordinator import QueryCoordinator, build_coordinator
from .ledger_keys import (
    CacheKeys,
    CacheTags,
    GROUP_LIST_TTL,
    GROUP_MEMBERS_TTL,
    GROUP_STATUS_TTL,
    TRANSACTIONS_TTL,
)

__all__ = [
    'CacheEntry',
    'CacheLookup',
    'CacheStore',
    'InvalidationEngine',
    'RevalidationQueueEntry',
    'RevalidationScheduler',
    'QueryCoordinator',
    'build_coordinator',
    'CacheKeys',
    'CacheTags',
    'GROUP_LIST_TTL',
    'GROUP_MEMBERS_TTL',
    'GROUP_STATUS_TTL',
    'TRANSACTIONS_TTL',
]
