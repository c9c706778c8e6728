"""
Derived view refresher - rebuilds the read views after the data commit

REFRESH MATERIALIZED VIEW CONCURRENTLY for every category view, up to 3
attempts with a fixed 5 second pause. Exhausting the attempts logs CRITICAL,
sends MvRefreshFailed and raises ViewRefreshError. The data transaction is
already committed at that point; readers keep the previous view contents
until a later refresh succeeds.
"""

import logging
import time
from typing import Callable, Optional

from sqlalchemy import text

from services.gib_errors import ViewRefreshError
from services.gib_metrics import MetricsPort, NullMetrics
from services.gib_sync_sql import build_refresh_views_sql
from services.gib_webhooks import (
    NullWebhookNotifier,
    WebhookEvent,
    WebhookEventType,
    WebhookSeverity,
)

logger = logging.getLogger(__name__)


MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 5.0


class ViewRefresher:

    def __init__(
        self,
        metrics: Optional[MetricsPort] = None,
        notifier=None,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay_seconds: float = RETRY_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.metrics = metrics or NullMetrics()
        self.notifier = notifier or NullWebhookNotifier()
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    def refresh(self, session):
        """
        Refresh every derived view in its own short transaction.

        Raises:
            ViewRefreshError: all attempts failed
        """
        start_time = time.time()

        for attempt in range(1, self.max_attempts + 1):
            try:
                logger.info(f"Refreshing materialized views (attempt {attempt}/{self.max_attempts})...")
                for statement in build_refresh_views_sql():
                    session.execute(text(statement))
                session.commit()

                duration = time.time() - start_time
                self.metrics.record_mv_refresh_duration(duration)
                logger.info(f"Materialized views refreshed in {duration:.1f}s")
                return

            except Exception as e:
                session.rollback()
                self.metrics.record_mv_refresh_error()

                if attempt < self.max_attempts:
                    logger.warning(
                        f"Materialized view refresh attempt {attempt}/{self.max_attempts} failed: {e}. "
                        f"Retrying in {self.retry_delay_seconds:.0f}s..."
                    )
                    self._sleep(self.retry_delay_seconds)
                    continue

                duration = time.time() - start_time
                logger.critical(
                    f"Materialized view refresh failed after {attempt} attempts: {e}. "
                    f"Data is committed but the API will serve stale results until the next successful refresh."
                )
                self.notifier.notify(WebhookEvent(
                    event_type=WebhookEventType.MV_REFRESH_FAILED,
                    severity=WebhookSeverity.CRITICAL,
                    summary=(
                        f"Materialized view refresh FAILED after {attempt} attempts. "
                        f"API will serve stale data."
                    ),
                    payload={
                        'Attempts': attempt,
                        'MaxRetries': self.max_attempts,
                        'Error': str(e),
                        'Duration': f"{duration:.1f}s",
                    },
                ))
                raise ViewRefreshError(
                    "Materialized view refresh failed after all retries. "
                    "Committed data is not yet visible to readers."
                ) from e
