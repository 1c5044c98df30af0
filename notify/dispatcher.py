"""Notification fan-out for accepted alerts."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from normalize.alert import Alert
from notify.subscriptions import Subscription, SubscriptionRegistry
from notify.transport import DeliveryError, PushTransport
from store.alerts import AlertStore

logger = structlog.get_logger(__name__)


@dataclass
class DeliveryFailure:
    recipient_id: str
    endpoint: str
    reason: str

    def to_dict(self) -> dict:
        return {
            "recipientId": self.recipient_id,
            "endpoint": self.endpoint,
            "reason": self.reason,
        }


@dataclass
class DeliveryReport:
    alert_id: str
    trigger: str
    recipients: int = 0
    succeeded: int = 0
    failures: list[DeliveryFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def to_dict(self) -> dict:
        return {
            "alertId": self.alert_id,
            "trigger": self.trigger,
            "recipients": self.recipients,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failures": [f.to_dict() for f in self.failures],
        }


def build_payload(alert: Alert) -> dict:
    return {
        "title": f"🚨 {alert.severity.upper()} ALERT: {alert.type.upper()}",
        "body": alert.title,
        "icon": "/icons/alert-icon.png",
        "badge": "/icons/badge-icon.png",
        "data": {
            "alertId": alert.alert_id,
            "type": alert.type,
            "severity": alert.severity,
            "url": f"/alerts/{alert.alert_id}",
        },
        "actions": [
            {"action": "view", "title": "View Details"},
            {"action": "dismiss", "title": "Dismiss"},
        ],
        "requireInteraction": alert.severity == "critical",
    }


class NotificationDispatcher:
    """Resolves subscribers for an alert and pushes to each of them once.

    A failing recipient is recorded in the report and never stops the rest of
    the batch. ``notifications_sent`` is bumped once per call, by the number
    of successful deliveries.
    """

    def __init__(
        self,
        *,
        registry: SubscriptionRegistry,
        transport: PushTransport,
        store: AlertStore,
        concurrency: int = 8,
    ) -> None:
        self._registry = registry
        self._transport = transport
        self._store = store
        self._concurrency = max(1, concurrency)

    def recipients_for(self, alert: Alert) -> list[Subscription]:
        seen: set[tuple[str, str]] = set()
        recipients: list[Subscription] = []
        for area in alert.affected_areas:
            for sub in self._registry.subscriptions_for_area(area.city, area.state):
                key = (sub.recipient_id, sub.endpoint)
                if key in seen:
                    continue
                seen.add(key)
                recipients.append(sub)
        return recipients

    async def notify(self, alert: Alert, trigger: str) -> DeliveryReport:
        report = DeliveryReport(alert_id=alert.alert_id, trigger=trigger)
        recipients = self.recipients_for(alert)
        report.recipients = len(recipients)
        if not recipients:
            logger.info("notify_no_recipients", alert_id=alert.alert_id, trigger=trigger)
            return report

        payload = build_payload(alert)
        sem = asyncio.Semaphore(self._concurrency)

        async def _deliver(sub: Subscription) -> DeliveryFailure | None:
            async with sem:
                try:
                    await self._transport.send(sub.endpoint, payload)
                except DeliveryError as exc:
                    reason = exc.reason
                except Exception as exc:
                    logger.exception(
                        "push_transport_error",
                        alert_id=alert.alert_id,
                        recipient_id=sub.recipient_id,
                    )
                    reason = f"error:{exc.__class__.__name__}"
                else:
                    return None
            logger.warning(
                "push_delivery_failed",
                alert_id=alert.alert_id,
                recipient_id=sub.recipient_id,
                reason=reason,
            )
            return DeliveryFailure(sub.recipient_id, sub.endpoint, reason)

        outcomes = await asyncio.gather(*(_deliver(sub) for sub in recipients))
        report.failures = [o for o in outcomes if o is not None]
        report.succeeded = len(recipients) - report.failed

        self._store.increment_notifications(alert.alert_id, report.succeeded)
        logger.info(
            "notify_completed",
            alert_id=alert.alert_id,
            trigger=trigger,
            recipients=report.recipients,
            succeeded=report.succeeded,
            failed=report.failed,
        )
        return report
