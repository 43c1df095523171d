"""
Escalation Coordinator

Decides who hears about a session transition and hands the resulting
notification jobs to the dispatcher. Entering emergency fans out to every
recipient holding a valid sharing grant plus every staff account, opens an
SOS alert so staff work from a single queue, and puts the session's last
known location on the security topic.

Each transition is fanned out at most once: a (session_id, transition_id)
row in processed_events is claimed before any job is created, and released
again if the fan-out fails so a later sweep can retry it.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from ...core.clock import Clock, to_timestamp
from ...core.logging import get_structured_logger
from ...models.alert import AlertSeverity, AlertTrigger, SOSAlert
from ...models.notification import (
    NotificationChannel, NotificationJob, NotificationPayload, NotificationPriority, NotificationType
)
from ...models.safety import CheckIn, SafetySession
from ..accounts import AccountDirectory
from ..notifications.dispatcher import NotificationDispatcher
from ..realtime.broadcaster import LiveLocationBroadcaster
from ..realtime.publisher import RealtimePublisher, SECURITY_TOPIC
from ..sos.alert_store import AlertStore
from .session_store import SessionStore


EMERGENCY_TRANSITION = "emergency"

UPDATE_CHANNELS = [NotificationChannel.PUSH, NotificationChannel.IN_APP]


class EscalationReason(Enum):
    MISSED_CHECK_IN = "missed_check_in"
    UNSAFE_RESPONSE = "unsafe_response"


class SessionEvent(Enum):
    """Lifecycle events announced to grant recipients"""
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass
class EscalationResult:
    """What an escalation produced"""
    session_id: str
    transition_id: str
    duplicate: bool = False
    deferred: bool = False
    alert_id: Optional[str] = None
    jobs: List[NotificationJob] = field(default_factory=list)

    @property
    def recipients(self) -> List[str]:
        return [job.recipient_id for job in self.jobs]


class EscalationCoordinator:
    """Builds and enqueues notification fan-outs for session transitions"""

    def __init__(self, store: SessionStore, accounts: AccountDirectory, dispatcher: NotificationDispatcher,
                 alerts: AlertStore, broadcaster: LiveLocationBroadcaster, publisher: RealtimePublisher,
                 clock: Clock):
        self.logger = logging.getLogger(__name__)
        self.events = get_structured_logger("safety.escalation")
        self.store = store
        self.accounts = accounts
        self.dispatcher = dispatcher
        self.alerts = alerts
        self.broadcaster = broadcaster
        self.publisher = publisher
        self.clock = clock

    async def escalate(self, session: SafetySession, reason: EscalationReason) -> EscalationResult:
        """
        Fan out an emergency for a session that has just entered the
        emergency state. Returns once jobs are enqueued; delivery results are
        recorded on the jobs asynchronously.

        If the fan-out fails the claim and any opened alert are removed and
        the error is raised, so the scheduler's recovery sweep retries it.
        """
        now = self.clock.now()
        result = EscalationResult(session.id, EMERGENCY_TRANSITION)

        if not self.store.claim_transition(session.id, EMERGENCY_TRANSITION, now):
            self.logger.info(f"Escalation for session {session.id} already processed")
            result.duplicate = True
            return result

        try:
            await self._fan_out(session, reason, result, now)
        except Exception as e:
            self.logger.error(f"Escalation for session {session.id} failed, releasing claim: {e}")
            if result.alert_id:
                self.alerts.delete(result.alert_id)
            self.store.release_transition(session.id, EMERGENCY_TRANSITION)
            raise

        self.logger.warning(
            f"Escalation for session {session.id} enqueued {len(result.jobs)} notification job(s)"
        )
        self.events.warning(
            "session_escalated",
            session_id=session.id,
            owner_id=session.owner_id,
            reason=reason.value,
            alert_id=result.alert_id,
            recipients=result.recipients
        )
        return result

    async def _fan_out(self, session: SafetySession, reason: EscalationReason,
                       result: EscalationResult, now):
        owner_name = self.accounts.display_name(session.owner_id)
        self.logger.critical(f"EMERGENCY: session {session.id} of {owner_name} escalated ({reason.value})")

        targets = []
        for recipient_id in self.emergency_recipients(session):
            account = self.accounts.get_account(recipient_id)
            channels = [NotificationChannel.PUSH, NotificationChannel.EMAIL]
            if account and account.phone:
                channels.append(NotificationChannel.SMS)
            targets.append((recipient_id, channels))

        result.alert_id = self._open_alert(session, reason, now)

        payload = NotificationPayload(
            title=f"Emergency: {owner_name} may need help",
            message=self._emergency_message(session, owner_name, reason),
            type=NotificationType.EMERGENCY_ALERT,
            priority=NotificationPriority.URGENT,
            data={
                'session_id': session.id,
                'owner_id': session.owner_id,
                'alert_id': result.alert_id,
                'reason': reason.value,
                'location': session.current_location.to_dict() if session.current_location else None
            }
        )

        for recipient_id, channels in targets:
            job = NotificationJob(
                recipient_id=recipient_id,
                payload=payload,
                channels=channels,
                created_at=now,
                session_id=session.id,
                alert_id=result.alert_id,
                event_key=EMERGENCY_TRANSITION
            )
            result.jobs.append(self.dispatcher.enqueue(job))

        await self._publish_emergency(session, result, reason)

    def emergency_recipients(self, session: SafetySession) -> List[str]:
        """Valid grant recipients followed by staff, without duplicates or the owner"""
        now = self.clock.now()
        recipients: List[str] = []
        for grant in session.valid_grants(now):
            if grant.recipient_id not in recipients:
                recipients.append(grant.recipient_id)

        for staff in self.accounts.get_staff():
            if staff.id not in recipients:
                recipients.append(staff.id)

        return [recipient for recipient in recipients if recipient != session.owner_id]

    def _open_alert(self, session: SafetySession, reason: EscalationReason, now) -> Optional[str]:
        alert = SOSAlert(
            owner_id=session.owner_id,
            created_at=now,
            session_id=session.id,
            location=session.current_location,
            message=f"Safety session escalated: {reason.value.replace('_', ' ')}",
            severity=AlertSeverity.HIGH,
            triggered_by=AlertTrigger.GUARDIAN
        )
        try:
            self.alerts.insert(alert)
            return alert.id
        except Exception as e:
            self.logger.error(f"Failed to open SOS alert for session {session.id}: {e}")
            return None

    async def _publish_emergency(self, session: SafetySession, result: EscalationResult,
                                 reason: EscalationReason):
        try:
            await self.publisher.publish(SECURITY_TOPIC, {
                'type': 'emergency',
                'session_id': session.id,
                'owner_id': session.owner_id,
                'alert_id': result.alert_id,
                'reason': reason.value,
                'location': session.current_location.to_dict() if session.current_location else None,
                'timestamp': to_timestamp(self.clock.now())
            })
        except Exception as e:
            self.logger.error(f"Failed to publish emergency for session {session.id}: {e}")

        self.broadcaster.publish_location(session)

    def _emergency_message(self, session: SafetySession, owner_name: str, reason: EscalationReason) -> str:
        if reason == EscalationReason.UNSAFE_RESPONSE:
            message = f"{owner_name} reported feeling unsafe."
        else:
            message = f"{owner_name} missed a safety check-in."

        if session.destination:
            message += f" Destination: {session.destination}."

        location = session.current_location
        if location:
            message += f" Last known location: {location.latitude:.6f}, {location.longitude:.6f}"
            if location.address:
                message += f" ({location.address})"
            message += "."

        return message

    async def prompt_check_in(self, session: SafetySession, check_in: CheckIn) -> Optional[NotificationJob]:
        """Ask the owner whether they are safe"""
        transition_id = f"check_in:{check_in.id}"
        if not self.store.claim_transition(session.id, transition_id, self.clock.now()):
            return None

        payload = NotificationPayload(
            title="Safety check-in",
            message="Are you safe? Please respond to your check-in.",
            type=NotificationType.CHECK_IN_PROMPT,
            priority=NotificationPriority.HIGH,
            data={'session_id': session.id, 'check_in_id': check_in.id}
        )
        return self.notify_owner(session.owner_id, payload, session_id=session.id, event_key=transition_id)

    async def notify_session_update(self, session: SafetySession, event: SessionEvent) -> List[NotificationJob]:
        """Tell valid grant recipients that a session started or ended"""
        if not self.store.claim_transition(session.id, event.value, self.clock.now()):
            return []

        owner_name = self.accounts.display_name(session.owner_id)
        titles = {
            SessionEvent.STARTED: f"{owner_name} is sharing their journey with you",
            SessionEvent.COMPLETED: f"{owner_name} arrived safely",
            SessionEvent.CANCELLED: f"{owner_name} stopped sharing",
            SessionEvent.EXPIRED: f"{owner_name}'s shared session ended",
        }
        message = titles[event]
        if event == SessionEvent.STARTED and session.destination:
            message += f" to {session.destination}"

        payload = NotificationPayload(
            title=titles[event],
            message=message,
            type=NotificationType.SESSION_UPDATE,
            priority=NotificationPriority.NORMAL,
            data={'session_id': session.id, 'event': event.value, 'status': session.status.value}
        )

        now = self.clock.now()
        jobs = []
        for grant in session.valid_grants(now):
            if any(job.recipient_id == grant.recipient_id for job in jobs):
                continue
            jobs.append(self.dispatcher.enqueue(NotificationJob(
                recipient_id=grant.recipient_id,
                payload=payload,
                channels=list(UPDATE_CHANNELS),
                created_at=now,
                session_id=session.id,
                event_key=event.value
            )))

        self.logger.info(f"Session {session.id} {event.value}: notified {len(jobs)} recipient(s)")
        return jobs

    def notify_staff(self, payload: NotificationPayload, alert_id: Optional[str] = None,
                     event_key: Optional[str] = None) -> List[NotificationJob]:
        """Enqueue one job per active staff account"""
        now = self.clock.now()
        jobs = []
        for staff in self.accounts.get_staff():
            channels = [NotificationChannel.PUSH, NotificationChannel.EMAIL, NotificationChannel.IN_APP]
            if payload.priority == NotificationPriority.URGENT and staff.phone:
                channels.append(NotificationChannel.SMS)

            jobs.append(self.dispatcher.enqueue(NotificationJob(
                recipient_id=staff.id,
                payload=payload,
                channels=channels,
                created_at=now,
                alert_id=alert_id,
                event_key=event_key
            )))
        return jobs

    def notify_owner(self, owner_id: str, payload: NotificationPayload, session_id: Optional[str] = None,
                     alert_id: Optional[str] = None, event_key: Optional[str] = None) -> NotificationJob:
        """Enqueue a single job back to the owner"""
        return self.dispatcher.enqueue(NotificationJob(
            recipient_id=owner_id,
            payload=payload,
            channels=list(UPDATE_CHANNELS),
            created_at=self.clock.now(),
            session_id=session_id,
            alert_id=alert_id,
            event_key=event_key
        ))

    def get_status(self) -> Dict[str, int]:
        return self.dispatcher.get_statistics()
