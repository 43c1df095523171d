"""
Service wiring

Builds the CampusGuard services from configuration, sharing one database,
clock and real-time publisher between them.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..core.clock import Clock
from ..core.config import ConfigurationManager
from ..core.database import DatabaseManager
from .accounts import AccountDirectory
from .notifications.dispatcher import NotificationDispatcher
from .notifications.job_store import NotificationJobStore
from .notifications.transports import (
    ChannelTransport, EmailTransport, InAppTransport, PushTransport, SMSTransport
)
from .realtime.broadcaster import LiveLocationBroadcaster
from .realtime.publisher import RealtimePublisher
from .safety.escalation import EscalationCoordinator
from .safety.scheduler import CheckInScheduler
from .safety.session_service import SessionService
from .safety.session_store import SessionStore
from .sos.alert_store import AlertStore
from .sos.sos_service import SOSAlertService


logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """All services of a running CampusGuard instance"""
    config: ConfigurationManager
    db: DatabaseManager
    clock: Clock
    publisher: RealtimePublisher
    accounts: AccountDirectory
    session_store: SessionStore
    alert_store: AlertStore
    job_store: NotificationJobStore
    dispatcher: NotificationDispatcher
    broadcaster: LiveLocationBroadcaster
    coordinator: EscalationCoordinator
    sessions: SessionService
    scheduler: CheckInScheduler
    sos: SOSAlertService

    async def shutdown(self):
        await self.scheduler.stop()
        await self.broadcaster.close()
        await self.dispatcher.close()


def configured_transports(config: ConfigurationManager) -> List[ChannelTransport]:
    """Transports enabled in the notifications section"""
    transports: List[ChannelTransport] = []

    if config.is_transport_enabled('push'):
        push = config.get_section('notifications').get('push', {})
        transports.append(PushTransport(
            endpoint=push.get('endpoint'),
            timeout_seconds=push.get('timeout', 10),
            access_token=push.get('access_token')
        ))

    if config.is_transport_enabled('email'):
        transports.append(EmailTransport(config.get_section('notifications').get('email', {})))

    if config.is_transport_enabled('sms'):
        sms = config.get_section('notifications').get('sms', {})
        transports.append(SMSTransport(
            account_sid=sms.get('account_sid'),
            auth_token=sms.get('auth_token'),
            from_number=sms.get('from_number'),
            timeout_seconds=sms.get('timeout', 10)
        ))

    return transports


def build_services(config: ConfigurationManager, db: DatabaseManager, clock: Clock,
                   publisher: RealtimePublisher,
                   transports: Optional[Iterable[ChannelTransport]] = None) -> ServiceContainer:
    """
    Wire every service together.

    Args:
        transports: push/email/sms transports to register; read from
            configuration when omitted. The in-app transport is always
            registered.
    """
    accounts = AccountDirectory(db, config.get_staff_roles())
    session_store = SessionStore(db)
    alert_store = AlertStore(db)
    job_store = NotificationJobStore(db)

    dispatcher = NotificationDispatcher(
        accounts, job_store, clock,
        max_attempts=config.get('notifications.max_attempts', 3),
        retry_delay_seconds=config.get('notifications.retry_delay_seconds', 2)
    )
    if transports is None:
        transports = configured_transports(config)
    for transport in transports:
        dispatcher.register_transport(transport)
    dispatcher.register_transport(InAppTransport(db, publisher, clock))

    broadcaster = LiveLocationBroadcaster(
        publisher, clock, queue_size=config.get('realtime.subscriber_queue_size', 10)
    )
    coordinator = EscalationCoordinator(
        session_store, accounts, dispatcher, alert_store, broadcaster, publisher, clock
    )

    sessions_config = config.get_section('sessions')
    scheduler_config = dict(config.get_section('scheduler'))
    scheduler_config.setdefault('grace_seconds', sessions_config.get('grace_seconds', 120))

    container = ServiceContainer(
        config=config,
        db=db,
        clock=clock,
        publisher=publisher,
        accounts=accounts,
        session_store=session_store,
        alert_store=alert_store,
        job_store=job_store,
        dispatcher=dispatcher,
        broadcaster=broadcaster,
        coordinator=coordinator,
        sessions=SessionService(session_store, coordinator, broadcaster, clock, sessions_config),
        scheduler=CheckInScheduler(session_store, coordinator, clock, scheduler_config),
        sos=SOSAlertService(alert_store, coordinator, accounts, publisher, clock)
    )

    logger.info(f"Services built with channels: {', '.join(c.value for c in dispatcher.transports)}")
    return container
