"""
Tests for the point-lookup cache providers and post-sync invalidation.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import redis

from constants import Category
from services.gib_cache import (
    MemoryCacheService,
    RedisCacheService,
    build_cache_service,
)
from services.gib_cache_invalidator import CacheInvalidator
from services.gib_diff_engine import CategoryDiff
from services.gib_removal_guard import GuardDecision


# =============================================================================
# Memory provider
# =============================================================================

class TestMemoryCacheService:

    def test_set_and_get(self):
        cache = MemoryCacheService()
        cache.set('einvoice:id:1234567890', {'identifier': '1234567890'})
        assert cache.get('einvoice:id:1234567890') == {'identifier': '1234567890'}

    def test_entry_expires(self):
        cache = MemoryCacheService(default_ttl_seconds=60)
        with patch('services.gib_cache.time.time', return_value=1000.0):
            cache.set('k', 'v')
        with patch('services.gib_cache.time.time', return_value=1059.0):
            assert cache.get('k') == 'v'
        with patch('services.gib_cache.time.time', return_value=1061.0):
            assert cache.get('k') is None
        assert cache.stats()['size'] == 0

    def test_evicts_entry_closest_to_expiry(self):
        cache = MemoryCacheService(maxsize=2)
        cache.set('short', 1, ttl_seconds=10)
        cache.set('long', 2, ttl_seconds=1000)
        cache.set('new', 3)

        assert cache.get('short') is None
        assert cache.get('long') == 2
        assert cache.get('new') == 3

    def test_remove_by_prefix(self):
        cache = MemoryCacheService(key_prefix='gibuserlist:')
        cache.set('einvoice:id:1111111111', 1)
        cache.set('einvoice:id:2222222222', 2)
        cache.set('edespatch:id:1111111111', 3)

        assert cache.remove_by_prefix('einvoice:id:') == 2
        assert cache.get('edespatch:id:1111111111') == 3


# =============================================================================
# Redis provider
# =============================================================================

class TestRedisCacheService:

    def _cache(self, client):
        return RedisCacheService(key_prefix='gibuserlist:', default_ttl_seconds=600, client=client)

    def test_set_serializes_json_with_prefix(self):
        client = MagicMock()
        self._cache(client).set('einvoice:id:1234567890', {'title': 'ÇAĞRI A.Ş.'})

        args, kwargs = client.set.call_args
        assert args[0] == 'gibuserlist:einvoice:id:1234567890'
        assert json.loads(args[1]) == {'title': 'ÇAĞRI A.Ş.'}
        assert kwargs['ex'] == 600

    def test_get_decodes_json(self):
        client = MagicMock()
        client.get.return_value = b'{"identifier": "1234567890"}'
        assert self._cache(client).get('k') == {'identifier': '1234567890'}

    def test_errors_are_a_miss(self):
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError("down")
        client.set.side_effect = redis.ConnectionError("down")

        cache = self._cache(client)
        assert cache.get('k') is None
        cache.set('k', 1)

    def test_remove_by_prefix_scans_and_deletes(self):
        client = MagicMock()
        client.scan_iter.return_value = iter([b'gibuserlist:einvoice:id:1', b'gibuserlist:einvoice:id:2'])
        client.delete.return_value = 2

        removed = self._cache(client).remove_by_prefix('einvoice:id:')

        assert removed == 2
        assert client.scan_iter.call_args.kwargs['match'] == 'gibuserlist:einvoice:id:*'
        client.delete.assert_called_once_with(b'gibuserlist:einvoice:id:1', b'gibuserlist:einvoice:id:2')

    def test_remove_by_prefix_error_is_logged(self, caplog):
        client = MagicMock()
        client.scan_iter.side_effect = redis.ConnectionError("down")
        assert self._cache(client).remove_by_prefix('einvoice:id:') == 0
        assert 'prefix removal failed' in caplog.text


class TestBuildCacheService:

    def test_memory_by_default(self, monkeypatch):
        monkeypatch.delenv('GIB_CACHE_PROVIDER', raising=False)
        assert isinstance(build_cache_service(), MemoryCacheService)

    def test_redis(self, monkeypatch):
        monkeypatch.setenv('GIB_CACHE_PROVIDER', 'redis')
        monkeypatch.setenv('REDIS_URL', 'redis://localhost:6379/0')
        assert isinstance(build_cache_service(), RedisCacheService)


# =============================================================================
# Invalidation
# =============================================================================

def _vetoed():
    return GuardDecision(removed_count=5, current_count=10, max_percent=10.0, vetoed=True)


class TestCacheInvalidator:

    def test_nothing_to_invalidate(self):
        cache = MagicMock()
        diff = CategoryDiff(category=Category.EINVOICE, added=['1234567890'])

        assert CacheInvalidator(cache).invalidate([diff]) == 0
        cache.remove.assert_not_called()
        cache.remove_by_prefix.assert_not_called()

    def test_targeted_removal_of_modified_and_removed(self):
        cache = MemoryCacheService()
        for identifier in ('1111111111', '2222222222', '3333333333'):
            cache.set(f'einvoice:id:{identifier}', identifier)
        diff = CategoryDiff(
            category=Category.EINVOICE,
            added=['3333333333'],
            modified=['1111111111'],
            removed=['2222222222'],
        )

        assert CacheInvalidator(cache).invalidate([diff]) == 2
        assert cache.get('einvoice:id:1111111111') is None
        assert cache.get('einvoice:id:2222222222') is None
        assert cache.get('einvoice:id:3333333333') == '3333333333'

    def test_vetoed_removals_keep_their_entries(self):
        cache = MagicMock()
        diff = CategoryDiff(category=Category.EDESPATCH, removed=['2222222222'], guard=_vetoed())

        assert CacheInvalidator(cache).invalidate([diff]) == 0
        cache.remove.assert_not_called()

    def test_falls_back_to_prefix_above_threshold(self):
        cache = MagicMock()
        diffs = [
            CategoryDiff(category=Category.EINVOICE, modified=['1111111111', '2222222222']),
            CategoryDiff(category=Category.EDESPATCH, modified=['3333333333']),
        ]

        assert CacheInvalidator(cache, max_targeted_keys=2).invalidate(diffs) == 0
        cache.remove.assert_not_called()
        assert sorted(c.args[0] for c in cache.remove_by_prefix.call_args_list) == [
            'edespatch:id:',
            'einvoice:id:',
        ]

    def test_threshold_itself_is_still_targeted(self):
        cache = MagicMock()
        diffs = [
            CategoryDiff(category=Category.EINVOICE, modified=['1111111111', '2222222222']),
            CategoryDiff(category=Category.EDESPATCH, modified=['3333333333']),
        ]

        assert CacheInvalidator(cache, max_targeted_keys=3).invalidate(diffs) == 3
        cache.remove_by_prefix.assert_not_called()
