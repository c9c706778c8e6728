"""
Cache invalidation after a committed sync.

Modified and removed identifiers lose their point-lookup entries. Up to
10,000 keys are removed one by one in concurrent batches of 100; above that
each touched category is cleared by prefix (first sync, mass migration).
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List

from services.gib_cache import CacheService
from services.gib_diff_engine import CategoryDiff
from utils.cache_key import build_identifier_cache_keys, identifier_prefix

logger = logging.getLogger(__name__)


MAX_TARGETED_INVALIDATION_KEYS = 10_000
BATCH_SIZE = 100


class CacheInvalidator:

    def __init__(
        self,
        cache: CacheService,
        max_targeted_keys: int = MAX_TARGETED_INVALIDATION_KEYS,
        batch_size: int = BATCH_SIZE,
    ):
        self.cache = cache
        self.max_targeted_keys = max_targeted_keys
        self.batch_size = batch_size

    def invalidate(self, diffs: List[CategoryDiff]) -> int:
        """
        Remove stale entries for the given diffs.

        Returns:
            Number of keys targeted (0 when falling back to prefix removal)
        """
        total_keys = sum(d.invalidation_count for d in diffs)
        if total_keys == 0:
            logger.debug("No cache entries to invalidate: no modified or removed identifiers.")
            return 0

        if total_keys > self.max_targeted_keys:
            logger.warning(
                f"Cache invalidation of {total_keys} keys exceeds threshold ({self.max_targeted_keys}). "
                f"Falling back to prefix invalidation."
            )
            prefixes = sorted({identifier_prefix(d.category) for d in diffs if d.invalidation_count})
            for prefix in prefixes:
                self.cache.remove_by_prefix(prefix)
            return 0

        start_time = time.time()
        keys = []
        for diff in diffs:
            keys.extend(build_identifier_cache_keys(diff.category, diff.invalidated_identifiers))

        with ThreadPoolExecutor(max_workers=8, thread_name_prefix='gib-cache') as pool:
            for i in range(0, len(keys), self.batch_size):
                batch = keys[i:i + self.batch_size]
                list(pool.map(self.cache.remove, batch))

        elapsed_ms = (time.time() - start_time) * 1000
        logger.info(f"Cache invalidation completed: {len(keys)} keys removed in {elapsed_ms:.0f}ms")
        return len(keys)
