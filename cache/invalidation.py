"""
Bulk invalidation over a ``CacheStore``.

Every sweep is synchronous: the matching keys are collected and removed
without yielding to the event loop, so no reader can see a half-finished
invalidation.
"""
import re
from typing import Dict, Iterable, List, Optional, Pattern, Union

import structlog

from .core import CacheStore
from .ledger_keys import CacheTags

logger = structlog.get_logger()


class InvalidationEngine:
    def __init__(self, store: CacheStore):
        self.store = store
        # Entity type -> tags a write to that entity makes stale; "{id}" is the entity id
        self.invalidation_rules: Dict[str, List[str]] = {
            'group': [CacheTags.group("{id}"), CacheTags.groups],
            'user': [CacheTags.user("{id}")],
            'transaction': [CacheTags.transactions, CacheTags.group("{id}")],
            'groups': [CacheTags.groups],
        }

    def invalidate_by_tag(self, tag: str) -> int:
        """Remove every entry carrying ``tag``. Returns the number removed."""
        count = self.store.remove_many(self.store.keys_for_tag(tag), reason="tag")
        if count:
            logger.info("cache_invalidated", type="tag", tag=tag, count=count)
        return count

    def invalidate_by_pattern(self, pattern: Union[str, Pattern[str]]) -> int:
        """
        Remove every entry whose key matches ``pattern``.

        Args:
            pattern: Regular expression, matched with ``search`` against sanitized keys
        """
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        matched = [key for key in self.store.keys() if regex.search(key)]
        count = self.store.remove_many(matched, reason="pattern")
        if count:
            logger.info("cache_invalidated", type="pattern", pattern=regex.pattern, count=count)
        return count

    def invalidate_by_version(self, version: str) -> int:
        """
        Remove entries stored under a different data-shape version.

        Entries stored without a version are left alone.
        """
        stale = [
            key for key, entry in self.store.entries()
            if entry.version is not None and entry.version != version
        ]
        count = self.store.remove_many(stale, reason="version")
        if count:
            logger.info("cache_invalidated", type="version", version=version, count=count)
        return count

    def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Invalidate several tags; an entry carrying more than one is counted once."""
        keys = set()
        tag_list = list(tags)
        for tag in tag_list:
            keys |= self.store.keys_for_tag(tag)
        count = self.store.remove_many(keys, reason="tag")
        logger.info("cache_invalidated", type="tags", tags=tag_list, count=count)
        return count

    def tags_for_entity(self, entity_type: str, entity_id: Optional[str] = None) -> List[str]:
        """
        Expand a written entity into the tags it makes stale.

        Raises:
            KeyError: For an unknown entity type
        """
        tags = []
        for template in self.invalidation_rules[entity_type]:
            if "{id}" in template:
                if entity_id is None:
                    continue
                template = template.replace("{id}", str(entity_id))
            tags.append(template)
        return tags

    def invalidate_entity(self, entity_type: str, entity_id: Optional[str] = None) -> int:
        """Invalidate everything a write to ``entity_type``/``entity_id`` affects."""
        return self.invalidate_tags(self.tags_for_entity(entity_type, entity_id))
