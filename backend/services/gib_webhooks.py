"""
GIB Webhooks - Run notifications to HTTP and Slack endpoints

Events:
    SyncCompleted (Info), SyncPartial (Warning), SyncFailed (Critical),
    RemovalGuardTriggered (Warning), MvRefreshFailed (Critical)

Delivery is best effort: a sender that fails is logged and skipped, and the
pipeline outcome never depends on a notification.

HTTP sender:
    JSON POST with X-Webhook-Event / -Timestamp / -ServiceName / -Environment
    headers and, when GIB_WEBHOOK_SECRET is set,
    X-Webhook-Signature: sha256=<hex HMAC-SHA256 of the raw body>

Usage:
    notifier = build_notifier()
    notifier.notify(WebhookEvent(
        event_type=WebhookEventType.SYNC_FAILED,
        severity=WebhookSeverity.CRITICAL,
        summary="GIB sync failed",
        payload={"Error": "..."},
    ))
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from services.gib_sync_config import (
    get_environment,
    get_service_name,
    get_slack_notify_on,
    get_slack_webhook_url,
    get_webhook_notify_on,
    get_webhook_secret,
    get_webhook_timeout_seconds,
    get_webhook_url,
    is_webhook_enabled,
)

logger = logging.getLogger(__name__)


class WebhookEventType(Enum):
    SYNC_COMPLETED = 'SyncCompleted'
    SYNC_FAILED = 'SyncFailed'
    SYNC_PARTIAL = 'SyncPartial'
    REMOVAL_GUARD_TRIGGERED = 'RemovalGuardTriggered'
    MV_REFRESH_FAILED = 'MvRefreshFailed'


class WebhookSeverity(Enum):
    INFO = 'Info'
    WARNING = 'Warning'
    CRITICAL = 'Critical'


SEVERITY_COLORS = {
    WebhookSeverity.CRITICAL: '#dc3545',
    WebhookSeverity.WARNING: '#fd7e14',
    WebhookSeverity.INFO: '#2EB67D',
}

EVENT_TITLES = {
    WebhookEventType.SYNC_COMPLETED: 'GIB Sync Report',
    WebhookEventType.SYNC_FAILED: 'GIB Sync Failed',
    WebhookEventType.SYNC_PARTIAL: 'GIB Sync Partial',
    WebhookEventType.REMOVAL_GUARD_TRIGGERED: 'Removal Guard Triggered',
    WebhookEventType.MV_REFRESH_FAILED: 'Materialized View Refresh Failed',
}


@dataclass
class WebhookEvent:
    event_type: WebhookEventType
    severity: WebhookSeverity
    summary: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def event_name(self) -> str:
        return self.event_type.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            'eventType': self.event_type.value,
            'severity': self.severity.value,
            'summary': self.summary,
            'timestamp': self.timestamp.isoformat(),
            'payload': self.payload,
            'eventName': self.event_name,
        }


def _wants(notify_on: List[str], event: WebhookEvent) -> bool:
    """Empty filter means every event."""
    if not notify_on:
        return True
    return event.event_name.lower() in {name.lower() for name in notify_on}


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


# =============================================================================
# Senders
# =============================================================================

class HttpWebhookSender:
    """Generic JSON webhook with optional HMAC signature."""

    name = 'HTTP'

    def __init__(
        self,
        url: Optional[str],
        secret: Optional[str] = None,
        timeout_seconds: int = 10,
        notify_on: Optional[List[str]] = None,
        service_name: str = '',
        environment: str = '',
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.secret = secret
        self.timeout_seconds = timeout_seconds
        self.notify_on = notify_on or []
        self.service_name = service_name
        self.environment = environment
        self._session = session or requests.Session()

    @property
    def is_enabled(self) -> bool:
        return bool(self.url)

    def should_notify(self, event: WebhookEvent) -> bool:
        return self.is_enabled and _wants(self.notify_on, event)

    def build_request(self, event: WebhookEvent):
        """(body bytes, headers) for one event."""
        body = json.dumps(event.to_dict(), ensure_ascii=False, default=str).encode('utf-8')
        headers = {
            'Content-Type': 'application/json',
            'X-Webhook-Event': event.event_name,
            'X-Webhook-Timestamp': event.timestamp.isoformat(),
            'X-Webhook-ServiceName': self.service_name,
            'X-Webhook-Environment': self.environment,
        }
        if self.secret:
            headers['X-Webhook-Signature'] = f"sha256={compute_signature(body, self.secret)}"
        return body, headers

    def send(self, event: WebhookEvent):
        body, headers = self.build_request(event)
        response = self._session.post(self.url, data=body, headers=headers, timeout=self.timeout_seconds)
        if response.status_code >= 400:
            logger.warning(f"HTTP webhook returned {response.status_code}: {response.text[:500]}")


class SlackWebhookSender:
    """Slack incoming webhook with a compact Block Kit message."""

    name = 'Slack'

    def __init__(
        self,
        webhook_url: Optional[str],
        notify_on: Optional[List[str]] = None,
        service_name: str = '',
        environment: str = '',
        timeout_seconds: int = 10,
        username: str = 'GIB Sync Bot',
        session: Optional[requests.Session] = None,
    ):
        self.webhook_url = webhook_url
        self.notify_on = notify_on or []
        self.service_name = service_name
        self.environment = environment
        self.timeout_seconds = timeout_seconds
        self.username = username
        self._session = session or requests.Session()

    @property
    def is_enabled(self) -> bool:
        return bool(self.webhook_url)

    def should_notify(self, event: WebhookEvent) -> bool:
        return self.is_enabled and _wants(self.notify_on, event)

    def build_payload(self, event: WebhookEvent) -> Dict[str, Any]:
        title = EVENT_TITLES.get(event.event_type, event.event_name)
        duration = event.payload.get('Duration', '-')

        blocks: List[Dict[str, Any]] = [
            {'type': 'header', 'text': {'type': 'plain_text', 'text': title, 'emoji': True}},
            {
                'type': 'context',
                'elements': [{
                    'type': 'mrkdwn',
                    'text': (
                        f"*{event.timestamp:%d.%m.%Y %H:%M}* | *{self.environment}* | "
                        f"*{duration}* | *Service:* `{self.service_name}`"
                    ),
                }],
            },
            {'type': 'divider'},
            {'type': 'section', 'text': {'type': 'mrkdwn', 'text': event.summary}},
        ]

        for key, label in (('EInvoice', 'e-Invoice users'), ('EDespatch', 'e-Despatch users')):
            counts = event.payload.get(key)
            if not isinstance(counts, dict):
                continue
            blocks.append({
                'type': 'section',
                'text': {
                    'type': 'mrkdwn',
                    'text': (
                        f"*{label}*\nTotal: `{counts.get('TotalCount', 0):,}`  |  "
                        f"Added: {counts.get('Added', 0)}  |  "
                        f"Removed: _{counts.get('Removed', 0)}_  |  "
                        f"Modified: _{counts.get('Modified', 0)}_"
                    ),
                },
            })

        if event.payload.get('Warnings'):
            blocks.append({
                'type': 'section',
                'text': {'type': 'mrkdwn', 'text': f"*Warnings:*\n{event.payload['Warnings']}"},
            })

        if event.payload.get('Error'):
            blocks.append({
                'type': 'section',
                'text': {'type': 'mrkdwn', 'text': f"*Error:*\n```{event.payload['Error']}```"},
            })

        return {
            'username': self.username,
            'attachments': [{
                'color': SEVERITY_COLORS.get(event.severity, SEVERITY_COLORS[WebhookSeverity.INFO]),
                'blocks': blocks,
            }],
        }

    def send(self, event: WebhookEvent):
        response = self._session.post(
            self.webhook_url,
            json=self.build_payload(event),
            timeout=self.timeout_seconds,
        )
        if response.status_code >= 400:
            logger.warning(f"Slack webhook returned {response.status_code}: {response.text[:500]}")


# =============================================================================
# Notifier
# =============================================================================

class WebhookNotifier:
    """Fans an event out to every sender that wants it."""

    def __init__(self, senders: List, service_name: str = '', environment: str = ''):
        self.senders = senders
        self.service_name = service_name
        self.environment = environment

    def enrich(self, event: WebhookEvent) -> WebhookEvent:
        payload = dict(event.payload)
        payload['serviceName'] = self.service_name
        payload['environment'] = self.environment
        return replace(event, payload=payload)

    def notify(self, event: WebhookEvent):
        enriched = self.enrich(event)
        for sender in self.senders:
            if not sender.should_notify(enriched):
                continue
            try:
                sender.send(enriched)
            except Exception as e:
                logger.warning(f"Webhook notification failed for {sender.name} channel: {e}")


class NullWebhookNotifier:
    """Used when webhooks are disabled."""

    def notify(self, event: WebhookEvent):
        pass


def build_notifier():
    """Notifier from GIB_WEBHOOK_* settings (NullWebhookNotifier when disabled)."""
    if not is_webhook_enabled():
        return NullWebhookNotifier()

    service_name = get_service_name()
    environment = get_environment()
    timeout = get_webhook_timeout_seconds()

    senders = []
    if get_webhook_url():
        senders.append(HttpWebhookSender(
            url=get_webhook_url(),
            secret=get_webhook_secret(),
            timeout_seconds=timeout,
            notify_on=get_webhook_notify_on(),
            service_name=service_name,
            environment=environment,
        ))
    if get_slack_webhook_url():
        senders.append(SlackWebhookSender(
            webhook_url=get_slack_webhook_url(),
            notify_on=get_slack_notify_on(),
            service_name=service_name,
            environment=environment,
            timeout_seconds=timeout,
        ))

    logger.info(f"Webhook notifier enabled with {len(senders)} sender(s)")
    return WebhookNotifier(senders, service_name=service_name, environment=environment)
