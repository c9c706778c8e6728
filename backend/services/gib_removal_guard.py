"""
Removal guard - vetoes mass deletion when a source export looks truncated.

ratio = removed / current. With current == 0 nothing can be removed, so the
guard never vetoes. A ratio strictly above max_percent / 100 vetoes the
delete step for that category and this run only.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from constants import Category
from services.gib_metrics import MetricsPort, NullMetrics
from services.gib_sync_config import get_max_removal_percent
from services.gib_webhooks import (
    WebhookEvent,
    WebhookEventType,
    WebhookSeverity,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardDecision:
    removed_count: int
    current_count: int
    max_percent: float
    vetoed: bool

    @property
    def ratio(self) -> float:
        if self.current_count <= 0:
            return 0.0
        return self.removed_count / self.current_count

    def to_dict(self) -> dict:
        return {
            'removed_count': self.removed_count,
            'current_count': self.current_count,
            'max_percent': self.max_percent,
            'ratio': round(self.ratio, 4),
            'vetoed': self.vetoed,
        }


def evaluate(removed_count: int, current_count: int, max_percent: float) -> GuardDecision:
    """Pure guard decision."""
    vetoed = (
        removed_count > 0
        and current_count > 0
        and removed_count / current_count > max_percent / 100.0
    )
    return GuardDecision(
        removed_count=removed_count,
        current_count=current_count,
        max_percent=max_percent,
        vetoed=vetoed,
    )


def guard_triggered_event(category: Category, decision: GuardDecision) -> WebhookEvent:
    """RemovalGuardTriggered event for a vetoed decision. Sent by the engine once the run has committed."""
    return WebhookEvent(
        event_type=WebhookEventType.REMOVAL_GUARD_TRIGGERED,
        severity=WebhookSeverity.WARNING,
        summary=(
            f"Removal guard triggered for {category.table_name}: "
            f"{decision.removed_count}/{decision.current_count} ({decision.ratio:.1%}) "
            f"exceeds {decision.max_percent}% threshold. Deletion SKIPPED."
        ),
        payload={
            'Table': category.table_name,
            'DocumentType': category.document_tag,
            'RemovalCount': decision.removed_count,
            'TotalCount': decision.current_count,
            'RemovalRatio': f"{decision.ratio:.1%}",
            'Threshold': f"{decision.max_percent}%",
        },
    )


class RemovalGuard:
    """evaluate() plus the in-transaction side effects of a veto (warning log, metric)."""

    def __init__(
        self,
        max_percent: Optional[float] = None,
        metrics: Optional[MetricsPort] = None,
    ):
        self.max_percent = get_max_removal_percent() if max_percent is None else max_percent
        self.metrics = metrics or NullMetrics()

    def check(self, category: Category, removed_count: int, current_count: int) -> GuardDecision:
        decision = evaluate(removed_count, current_count, self.max_percent)
        if not decision.vetoed:
            return decision

        logger.warning(
            f"Removal guard triggered for {category.table_name}: "
            f"{removed_count}/{current_count} ({decision.ratio:.1%}) > {self.max_percent}%. "
            f"Deletion SKIPPED."
        )
        self.metrics.record_removal_skipped()
        return decision
