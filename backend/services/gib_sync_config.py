"""
GIB Sync Configuration - Environment-based settings and kill switch

Environment Variables:
    GIB_SYNC_ENABLED: 'true' or 'false' (default: 'true')
        Kill switch to disable sync. Set to 'false' to exit early.

    GIB_PK_LIST_URL / GIB_GB_LIST_URL: origin list ZIP URLs

    GIB_DOWNLOAD_TIMEOUT_SECONDS: int (default: 600)

    GIB_BATCH_SIZE: int (default: 25000)
        Rows per COPY batch into the staging tables

    GIB_CHANGE_RETENTION_DAYS: int (default: 30)
        Change-log rows older than this are pruned on every run

    GIB_MAX_REMOVAL_PERCENT: float (default: 10)
        Removal guard ceiling. A category whose removals exceed this share
        of its current rows keeps its rows for this run.

    GIB_ARCHIVE_BASE_PATH: str (default: '/data/gib-archives')
    GIB_ARCHIVE_RETENTION_DAYS: int (default: 7)

    GIB_CACHE_PROVIDER: 'memory' | 'redis' (default: 'memory')
    REDIS_URL, GIB_CACHE_TTL_MINUTES (60), GIB_CACHE_KEY_PREFIX ('gibuserlist:')

    GIB_WEBHOOK_ENABLED, GIB_WEBHOOK_URL, GIB_WEBHOOK_SECRET,
    GIB_WEBHOOK_TIMEOUT_SECONDS (10), GIB_WEBHOOK_NOTIFY_ON (comma list),
    GIB_SLACK_WEBHOOK_URL, GIB_SLACK_NOTIFY_ON,
    GIB_SERVICE_NAME ('gib-registry-sync'), GIB_ENVIRONMENT ('development')

    GIB_SYNC_TIME_TTL_SECONDS: int (default: 300)
        How long the API caches last_sync_at for the X-Last-Sync-At header

    GIB_GAUGE_REFRESHER_ENABLED: bool (default: true)
    GIB_GAUGE_REFRESH_SECONDS: int (default: 60)
        Background refresh of the user-count and last-sync gauges in the API process
"""

import os
import logging
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


DEFAULT_PK_LIST_URL = "https://merkeztest.gib.gov.tr/EFaturaMerkez/newUserPkListxml.zip"
DEFAULT_GB_LIST_URL = "https://merkeztest.gib.gov.tr/EFaturaMerkez/newUserGbListxml.zip"

_FALSE_VALUES = ('false', '0', 'no', 'off', 'disabled')


def _get_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {name} '{raw}', defaulting to {default}")
        return default
    if value < minimum:
        logger.warning(f"{name}={value} below minimum {minimum}, defaulting to {default}")
        return default
    return value


def _get_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name} '{raw}', defaulting to {default}")
        return default
    if not 0 <= value <= 100:
        logger.warning(f"{name}={value} outside 0-100, defaulting to {default}")
        return default
    return value


def _get_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() not in _FALSE_VALUES


def _get_list(name: str) -> List[str]:
    raw = os.environ.get(name, '')
    return [item.strip() for item in raw.split(',') if item.strip()]


# =============================================================================
# Kill Switch
# =============================================================================

def is_sync_enabled() -> bool:
    """
    Check if GIB sync is enabled.

    Environment:
        GIB_SYNC_ENABLED: 'true' (default) or 'false'
    """
    enabled = os.environ.get('GIB_SYNC_ENABLED', 'true').lower()
    if enabled in _FALSE_VALUES:
        logger.warning("GIB sync is DISABLED via GIB_SYNC_ENABLED=false")
        return False
    return True


# =============================================================================
# Source Feed
# =============================================================================

def get_pk_list_url() -> str:
    return os.environ.get('GIB_PK_LIST_URL') or DEFAULT_PK_LIST_URL


def get_gb_list_url() -> str:
    return os.environ.get('GIB_GB_LIST_URL') or DEFAULT_GB_LIST_URL


def get_download_timeout_seconds() -> int:
    return _get_int('GIB_DOWNLOAD_TIMEOUT_SECONDS', 600)


# =============================================================================
# Pipeline
# =============================================================================

def get_batch_size() -> int:
    """COPY batch size for the staging tables (default: 25000)."""
    return _get_int('GIB_BATCH_SIZE', 25_000)


def get_change_retention_days() -> int:
    """Days of change-log history kept (default: 30)."""
    return _get_int('GIB_CHANGE_RETENTION_DAYS', 30)


def get_max_removal_percent() -> float:
    """Removal guard ceiling in percent (default: 10)."""
    return _get_float('GIB_MAX_REMOVAL_PERCENT', 10.0)


# =============================================================================
# Archives
# =============================================================================

def get_archive_base_path() -> str:
    return os.environ.get('GIB_ARCHIVE_BASE_PATH') or '/data/gib-archives'


def get_archive_retention_days() -> int:
    return _get_int('GIB_ARCHIVE_RETENTION_DAYS', 7)


# =============================================================================
# Cache
# =============================================================================

def get_cache_provider() -> str:
    """
    Get the cache provider.

    Returns:
        'memory' or 'redis'
    """
    provider = os.environ.get('GIB_CACHE_PROVIDER', 'memory').lower()
    if provider not in ('memory', 'redis'):
        logger.warning(f"Invalid GIB_CACHE_PROVIDER '{provider}', defaulting to 'memory'")
        provider = 'memory'
    return provider


def get_redis_url() -> Optional[str]:
    return os.environ.get('REDIS_URL') or None


def get_cache_ttl_minutes() -> int:
    return _get_int('GIB_CACHE_TTL_MINUTES', 60)


def get_cache_key_prefix() -> str:
    return os.environ.get('GIB_CACHE_KEY_PREFIX', 'gibuserlist:')


# =============================================================================
# Webhooks
# =============================================================================

def is_webhook_enabled() -> bool:
    return _get_bool('GIB_WEBHOOK_ENABLED', False)


def get_webhook_url() -> Optional[str]:
    return os.environ.get('GIB_WEBHOOK_URL') or None


def get_webhook_secret() -> Optional[str]:
    return os.environ.get('GIB_WEBHOOK_SECRET') or None


def get_webhook_timeout_seconds() -> int:
    return _get_int('GIB_WEBHOOK_TIMEOUT_SECONDS', 10)


def get_webhook_notify_on() -> List[str]:
    return _get_list('GIB_WEBHOOK_NOTIFY_ON')


def get_slack_webhook_url() -> Optional[str]:
    return os.environ.get('GIB_SLACK_WEBHOOK_URL') or None


def get_slack_notify_on() -> List[str]:
    return _get_list('GIB_SLACK_NOTIFY_ON')


def get_service_name() -> str:
    return os.environ.get('GIB_SERVICE_NAME', 'gib-registry-sync')


def get_environment() -> str:
    return os.environ.get('GIB_ENVIRONMENT', 'development')


# =============================================================================
# Read API
# =============================================================================

def get_sync_time_ttl_seconds() -> int:
    return _get_int('GIB_SYNC_TIME_TTL_SECONDS', 300)


def is_gauge_refresher_enabled() -> bool:
    return _get_bool('GIB_GAUGE_REFRESHER_ENABLED', True)


def get_gauge_refresh_seconds() -> int:
    return _get_int('GIB_GAUGE_REFRESH_SECONDS', 60)


# =============================================================================
# Validation
# =============================================================================

def validate_sync_config() -> Tuple[bool, Optional[str]]:
    """
    Validate sync configuration before starting.

    Returns:
        (is_valid, error_message)
    """
    if not is_sync_enabled():
        return False, "Sync disabled via GIB_SYNC_ENABLED"

    for name, url in (('GIB_PK_LIST_URL', get_pk_list_url()), ('GIB_GB_LIST_URL', get_gb_list_url())):
        if not url.startswith(('http://', 'https://')):
            return False, f"{name} must be an http(s) URL"

    if get_cache_provider() == 'redis' and not get_redis_url():
        return False, "GIB_CACHE_PROVIDER=redis requires REDIS_URL"

    if is_webhook_enabled() and not (get_webhook_url() or get_slack_webhook_url()):
        return False, "GIB_WEBHOOK_ENABLED=true requires GIB_WEBHOOK_URL or GIB_SLACK_WEBHOOK_URL"

    return True, None


def log_sync_config():
    """Log current sync configuration."""
    logger.info("=" * 60)
    logger.info("GIB Sync Configuration")
    logger.info("=" * 60)
    logger.info(f"  Enabled:           {is_sync_enabled()}")
    logger.info(f"  PK list:           {get_pk_list_url()}")
    logger.info(f"  GB list:           {get_gb_list_url()}")
    logger.info(f"  Batch size:        {get_batch_size()}")
    logger.info(f"  Change retention:  {get_change_retention_days()} days")
    logger.info(f"  Removal ceiling:   {get_max_removal_percent()}%")
    logger.info(f"  Archive path:      {get_archive_base_path()}")
    logger.info(f"  Archive retention: {get_archive_retention_days()} days")
    logger.info(f"  Cache provider:    {get_cache_provider()}")
    logger.info(f"  Webhooks:          {is_webhook_enabled()}")
    logger.info("=" * 60)
