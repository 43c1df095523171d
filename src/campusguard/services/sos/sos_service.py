"""
SOS Alert Service

Manual SOS alerts and the staff workflow shared with escalated sessions:
active -> acknowledged -> resolved. Transitions only move forward and are
committed with a status compare-and-set, so two staff members cannot both
acknowledge the same alert.
"""

import logging
from typing import Any, Dict, Optional

from ...core.clock import Clock, to_timestamp
from ...models.alert import AlertSeverity, AlertStatus, AlertTrigger, SOSAlert
from ...models.notification import NotificationPayload, NotificationPriority, NotificationType
from ...models.safety import LocationPoint
from ..accounts import AccountDirectory
from ..realtime.publisher import RealtimePublisher, SECURITY_TOPIC
from ..safety.escalation import EscalationCoordinator
from ..safety.exceptions import AlertNotFound, InvalidTransition
from .alert_store import AlertStore


# Allowed source statuses for each target status
TRANSITIONS = {
    AlertStatus.ACKNOWLEDGED: (AlertStatus.ACTIVE,),
    AlertStatus.RESOLVED: (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED),
}

SEVERITY_PRIORITY = {
    AlertSeverity.LOW: NotificationPriority.HIGH,
    AlertSeverity.MEDIUM: NotificationPriority.URGENT,
    AlertSeverity.HIGH: NotificationPriority.URGENT,
}


class SOSAlertService:
    """Creates SOS alerts and moves them through the staff workflow"""

    def __init__(self, store: AlertStore, coordinator: EscalationCoordinator, accounts: AccountDirectory,
                 publisher: RealtimePublisher, clock: Clock):
        self.logger = logging.getLogger(__name__)
        self.store = store
        self.coordinator = coordinator
        self.accounts = accounts
        self.publisher = publisher
        self.clock = clock

    async def create_alert(
        self,
        owner_id: str,
        location: Optional[LocationPoint] = None,
        message: Optional[str] = None,
        severity: AlertSeverity = AlertSeverity.HIGH,
        triggered_by: AlertTrigger = AlertTrigger.MANUAL,
        session_id: Optional[str] = None
    ) -> SOSAlert:
        """Raise an alert, notify all staff and publish it on the security topic"""
        alert = SOSAlert(
            owner_id=owner_id,
            created_at=self.clock.now(),
            location=location,
            severity=severity,
            triggered_by=triggered_by,
            session_id=session_id
        )
        if message:
            alert.message = message

        self.store.insert(alert)
        self.logger.critical(f"SOS alert {alert.id} raised by {owner_id} ({severity.value})")

        owner_name = self.accounts.display_name(owner_id)
        body = f"{owner_name}: {alert.message}"
        if location:
            body += f" Location: {location.latitude:.6f}, {location.longitude:.6f}"
            if location.address:
                body += f" ({location.address})"

        payload = NotificationPayload(
            title=f"SOS alert from {owner_name}",
            message=body,
            type=NotificationType.SOS_ALERT,
            priority=SEVERITY_PRIORITY[severity],
            data={'alert_id': alert.id, 'owner_id': owner_id, 'severity': severity.value}
        )
        self.coordinator.notify_staff(payload, alert_id=alert.id, event_key=f"sos:{alert.id}")

        await self._publish(alert, 'sos_alert')
        return alert

    async def acknowledge(self, alert_id: str, staff_id: str) -> SOSAlert:
        """
        Staff claims an alert.

        Raises:
            AlertNotFound: unknown alert
            InvalidTransition: the alert is not active
        """
        now = self.clock.now()

        def change(alert: SOSAlert):
            alert.acknowledged_by = staff_id
            alert.acknowledged_at = now

        alert = self._transition(alert_id, AlertStatus.ACKNOWLEDGED, change)

        staff_name = self.accounts.display_name(staff_id)
        self.logger.info(f"SOS alert {alert_id} acknowledged by {staff_id}")
        self.coordinator.notify_owner(
            alert.owner_id,
            NotificationPayload(
                title="Help is on the way",
                message=f"Your SOS alert was acknowledged by {staff_name}.",
                type=NotificationType.SOS_ACKNOWLEDGED,
                priority=NotificationPriority.HIGH,
                data={'alert_id': alert.id, 'acknowledged_by': staff_id}
            ),
            session_id=alert.session_id,
            alert_id=alert.id,
            event_key=f"sos:{alert.id}:acknowledged"
        )

        await self._publish(alert, 'sos_acknowledged')
        return alert

    async def resolve(self, alert_id: str, staff_id: str, resolution: Optional[str] = None) -> SOSAlert:
        """
        Staff closes an alert, from either active or acknowledged.

        Raises:
            AlertNotFound: unknown alert
            InvalidTransition: the alert is already resolved
        """
        now = self.clock.now()

        def change(alert: SOSAlert):
            alert.resolved_by = staff_id
            alert.resolved_at = now
            alert.resolution = resolution or "Resolved"

        alert = self._transition(alert_id, AlertStatus.RESOLVED, change)

        self.logger.info(f"SOS alert {alert_id} resolved by {staff_id}")
        self.coordinator.notify_owner(
            alert.owner_id,
            NotificationPayload(
                title="SOS alert resolved",
                message=f"Your SOS alert was resolved: {alert.resolution}",
                type=NotificationType.SOS_RESOLVED,
                priority=NotificationPriority.NORMAL,
                data={'alert_id': alert.id, 'resolved_by': staff_id}
            ),
            session_id=alert.session_id,
            alert_id=alert.id,
            event_key=f"sos:{alert.id}:resolved"
        )

        await self._publish(alert, 'sos_resolved')
        return alert

    def get_alert(self, alert_id: str) -> SOSAlert:
        alert = self.store.get(alert_id)
        if alert is None:
            raise AlertNotFound(f"Alert {alert_id} not found")
        return alert

    def list_alerts(self, status: Optional[AlertStatus] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """Alerts newest first, one page at a time"""
        page = max(page, 1)
        limit = max(1, min(limit, 100))
        alerts, total = self.store.list_alerts(status, limit, (page - 1) * limit)
        return {
            'alerts': alerts,
            'page': page,
            'limit': limit,
            'total': total,
            'pages': (total + limit - 1) // limit
        }

    def _transition(self, alert_id: str, target: AlertStatus, change) -> SOSAlert:
        alert = self.get_alert(alert_id)
        allowed = TRANSITIONS[target]
        if alert.status not in allowed:
            raise InvalidTransition(alert.id, alert.status.value, target.value)

        change(alert)
        alert.status = target
        if not self.store.compare_and_set(alert, allowed):
            current = self.get_alert(alert_id)
            raise InvalidTransition(alert.id, current.status.value, target.value)
        return alert

    async def _publish(self, alert: SOSAlert, event_type: str):
        try:
            await self.publisher.publish(SECURITY_TOPIC, {
                'type': event_type,
                'alert': alert.to_dict(),
                'timestamp': to_timestamp(self.clock.now())
            })
        except Exception as e:
            self.logger.error(f"Failed to publish {event_type} for alert {alert.id}: {e}")

