"""
Tests for GIB Sync Configuration

Tests kill switch, numeric settings with fallbacks and config validation.
"""

import pytest

from services.gib_sync_config import (
    DEFAULT_PK_LIST_URL,
    get_archive_retention_days,
    get_batch_size,
    get_cache_provider,
    get_change_retention_days,
    get_max_removal_percent,
    get_pk_list_url,
    get_webhook_notify_on,
    is_gauge_refresher_enabled,
    is_sync_enabled,
    validate_sync_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        'GIB_SYNC_ENABLED', 'GIB_PK_LIST_URL', 'GIB_GB_LIST_URL', 'GIB_BATCH_SIZE',
        'GIB_CHANGE_RETENTION_DAYS', 'GIB_MAX_REMOVAL_PERCENT', 'GIB_ARCHIVE_RETENTION_DAYS',
        'GIB_CACHE_PROVIDER', 'REDIS_URL', 'GIB_WEBHOOK_ENABLED', 'GIB_WEBHOOK_URL',
        'GIB_SLACK_WEBHOOK_URL', 'GIB_WEBHOOK_NOTIFY_ON', 'GIB_GAUGE_REFRESHER_ENABLED',
    ):
        monkeypatch.delenv(name, raising=False)


# =============================================================================
# Kill Switch Tests
# =============================================================================

class TestKillSwitch:
    """Tests for the GIB_SYNC_ENABLED kill switch."""

    def test_enabled_by_default(self):
        assert is_sync_enabled() is True

    @pytest.mark.parametrize('value', ['false', '0', 'no', 'off', 'disabled', 'FALSE'])
    def test_disabled_values(self, monkeypatch, value):
        monkeypatch.setenv('GIB_SYNC_ENABLED', value)
        assert is_sync_enabled() is False

    def test_enabled_when_true(self, monkeypatch):
        monkeypatch.setenv('GIB_SYNC_ENABLED', 'true')
        assert is_sync_enabled() is True


# =============================================================================
# Settings
# =============================================================================

class TestSettings:

    def test_defaults(self):
        assert get_pk_list_url() == DEFAULT_PK_LIST_URL
        assert get_batch_size() == 25_000
        assert get_change_retention_days() == 30
        assert get_max_removal_percent() == 10.0
        assert get_archive_retention_days() == 7
        assert get_cache_provider() == 'memory'
        assert is_gauge_refresher_enabled() is True

    def test_invalid_int_falls_back(self, monkeypatch):
        monkeypatch.setenv('GIB_BATCH_SIZE', 'lots')
        assert get_batch_size() == 25_000

    def test_int_below_minimum_falls_back(self, monkeypatch):
        monkeypatch.setenv('GIB_CHANGE_RETENTION_DAYS', '0')
        assert get_change_retention_days() == 30

    def test_percent_out_of_range_falls_back(self, monkeypatch):
        monkeypatch.setenv('GIB_MAX_REMOVAL_PERCENT', '150')
        assert get_max_removal_percent() == 10.0

    def test_percent_override(self, monkeypatch):
        monkeypatch.setenv('GIB_MAX_REMOVAL_PERCENT', '2.5')
        assert get_max_removal_percent() == 2.5

    def test_unknown_cache_provider_falls_back(self, monkeypatch):
        monkeypatch.setenv('GIB_CACHE_PROVIDER', 'memcached')
        assert get_cache_provider() == 'memory'

    def test_comma_list(self, monkeypatch):
        monkeypatch.setenv('GIB_WEBHOOK_NOTIFY_ON', 'SyncFailed, SyncPartial ,')
        assert get_webhook_notify_on() == ['SyncFailed', 'SyncPartial']


# =============================================================================
# Validation
# =============================================================================

class TestValidateSyncConfig:

    def test_valid_defaults(self):
        assert validate_sync_config() == (True, None)

    def test_disabled(self, monkeypatch):
        monkeypatch.setenv('GIB_SYNC_ENABLED', 'false')
        is_valid, error = validate_sync_config()
        assert not is_valid
        assert 'disabled' in error

    def test_non_http_url(self, monkeypatch):
        monkeypatch.setenv('GIB_GB_LIST_URL', 'ftp://example.com/list.zip')
        is_valid, error = validate_sync_config()
        assert not is_valid
        assert 'GIB_GB_LIST_URL' in error

    def test_redis_requires_url(self, monkeypatch):
        monkeypatch.setenv('GIB_CACHE_PROVIDER', 'redis')
        is_valid, error = validate_sync_config()
        assert not is_valid
        assert 'REDIS_URL' in error

    def test_webhooks_require_a_target(self, monkeypatch):
        monkeypatch.setenv('GIB_WEBHOOK_ENABLED', 'true')
        assert validate_sync_config()[0] is False

        monkeypatch.setenv('GIB_SLACK_WEBHOOK_URL', 'https://hooks.slack.com/services/x')
        assert validate_sync_config() == (True, None)
