"""
Safety Session Service

Owner-facing operations on monitored sessions: start, complete, cancel,
check-in responses, location updates, sharing grants and settings.

Every mutation reloads the session, applies the change and commits it with a
version compare-and-set. A version conflict is retried from a fresh read; a
session found in a terminal status rejects the change with SessionClosed.
Entering emergency runs the escalation fan-out before the call returns.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ...core.clock import Clock
from ...models.safety import (
    CheckIn, CheckInResponse, LocationPoint, SafetySession, SessionMode, SessionStatus, SharingGrant
)
from ..realtime.broadcaster import LiveLocationBroadcaster
from .escalation import (
    EMERGENCY_TRANSITION, EscalationCoordinator, EscalationReason, EscalationResult, SessionEvent
)
from .exceptions import GrantExpired, GrantNotFound, NoPendingCheckIn, SessionClosed, SessionNotFound, StaleVersion
from .session_store import SessionStore


@dataclass
class PendingWrite:
    """Check-in writes committed together with a session change"""
    resolve_check_in: Optional[CheckIn] = None
    insert_check_in: Optional[CheckIn] = None
    value: Any = None


@dataclass
class CheckInResult:
    """Outcome of an owner's check-in response"""
    session: SafetySession
    check_in: CheckIn
    escalation: Optional[EscalationResult] = None

    @property
    def escalated(self) -> bool:
        return self.escalation is not None


class SessionService:
    """Owner operations on safety sessions"""

    def __init__(self, store: SessionStore, coordinator: EscalationCoordinator,
                 broadcaster: LiveLocationBroadcaster, clock: Clock, config: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(__name__)
        self.store = store
        self.coordinator = coordinator
        self.broadcaster = broadcaster
        self.clock = clock

        config = config or {}
        self.default_interval = config.get('default_check_in_interval_seconds', 300)
        self.default_duration = config.get('default_duration_seconds', 3600)
        self.default_grant_seconds = config.get('default_grant_seconds', 3600)
        self.max_history_points = config.get('max_history_points', 100)
        self.max_write_attempts = config.get('max_write_attempts', 3)

    # Lifecycle

    async def start_session(
        self,
        owner_id: str,
        mode: SessionMode = SessionMode.JOURNEY,
        destination: Optional[str] = None,
        duration_seconds: Optional[int] = None,
        check_in_interval_seconds: Optional[int] = None,
        recipients: Iterable[str] = (),
        grant_seconds: Optional[int] = None,
        location: Optional[LocationPoint] = None,
        max_history_points: Optional[int] = None
    ) -> SafetySession:
        """
        Start a monitored session for an owner.

        Journeys are checked in on every interval (the configured default if
        none is given). Live shares only get check-ins when an interval is
        given explicitly.

        Raises:
            SessionConflict: the owner already has an open session
        """
        if mode == SessionMode.JOURNEY and check_in_interval_seconds is None:
            check_in_interval_seconds = self.default_interval
        if check_in_interval_seconds is not None and check_in_interval_seconds <= 0:
            raise ValueError("Check-in interval must be positive")

        if duration_seconds is None:
            duration_seconds = self.default_duration
        if duration_seconds <= 0:
            raise ValueError("Duration must be positive")
        if grant_seconds is not None and grant_seconds <= 0:
            raise ValueError("Grant duration must be positive")
        if max_history_points is not None and max_history_points < 1:
            raise ValueError("History size must be at least 1")

        now = self.clock.now()
        session = SafetySession(
            owner_id=owner_id,
            started_at=now,
            expires_at=now + timedelta(seconds=duration_seconds),
            max_history_points=self.max_history_points if max_history_points is None else max_history_points,
            mode=mode,
            destination=destination,
            check_in_interval_seconds=check_in_interval_seconds
        )
        if session.has_check_ins:
            session.next_check_in_at = now + timedelta(seconds=check_in_interval_seconds)

        for recipient_id in dict.fromkeys(recipients):
            if recipient_id != owner_id:
                session.sharing_grants.append(self._new_grant(recipient_id, grant_seconds, now))

        if location:
            session.record_location(location)

        self.store.insert_session(session)
        self.logger.info(
            f"Session {session.id} started by {owner_id} ({mode.value}, "
            f"interval={check_in_interval_seconds}, grants={len(session.sharing_grants)})"
        )

        await self.coordinator.notify_session_update(session, SessionEvent.STARTED)
        self.broadcaster.publish_location(session)
        return session

    async def complete_session(self, session_id: str, owner_id: Optional[str] = None) -> SafetySession:
        """Owner confirms arrival"""
        session = self._apply(session_id, owner_id, lambda s, now: s.close(SessionStatus.COMPLETED, now))
        self.logger.info(f"Session {session_id} completed")
        await self.coordinator.notify_session_update(session, SessionEvent.COMPLETED)
        return session

    async def cancel_session(self, session_id: str, owner_id: Optional[str] = None) -> SafetySession:
        """Owner aborts the session"""
        session = self._apply(session_id, owner_id, lambda s, now: s.close(SessionStatus.CANCELLED, now))
        self.logger.info(f"Session {session_id} cancelled")
        await self.coordinator.notify_session_update(session, SessionEvent.CANCELLED)
        return session

    # Check-ins

    async def respond_to_check_in(
        self,
        session_id: str,
        response: CheckInResponse,
        check_in_id: Optional[str] = None,
        location: Optional[LocationPoint] = None,
        owner_id: Optional[str] = None
    ) -> CheckInResult:
        """
        Record the owner's answer to a check-in.

        While a prompt is pending the answer resolves it; `safe` returns the
        session to active and schedules the next prompt from now, `unsafe`
        escalates. While the session is active with no prompt pending, `safe`
        is recorded as an early check-in and `unsafe` escalates.

        Raises:
            NoPendingCheckIn: the addressed prompt is no longer pending, or
                there is nothing to answer
            SessionClosed: the session already reached a terminal status
        """
        if response not in (CheckInResponse.SAFE, CheckInResponse.UNSAFE):
            raise ValueError(f"Invalid check-in response: {response.value}")

        def change(session: SafetySession, now: datetime) -> PendingWrite:
            if location:
                session.record_location(location)

            write = PendingWrite()
            if session.status == SessionStatus.CHECK_IN_DUE:
                check_in = self.store.get_pending_check_in(session.id)
                if check_in is None or (check_in_id and check_in.id != check_in_id):
                    raise NoPendingCheckIn(f"No pending check-in {check_in_id or ''} for session {session.id}")
                write.resolve_check_in = check_in
            else:
                if check_in_id:
                    raise NoPendingCheckIn(f"Check-in {check_in_id} is not pending")
                if response == CheckInResponse.SAFE and not session.has_check_ins:
                    raise NoPendingCheckIn(f"Session {session.id} has no check-in schedule")
                check_in = CheckIn(session_id=session.id, scheduled_at=now)
                write.insert_check_in = check_in

            check_in.response = response
            check_in.responded_at = now
            check_in.location = location

            if response == CheckInResponse.SAFE:
                session.reschedule(now)
            else:
                session.close(SessionStatus.EMERGENCY, now)

            write.value = check_in
            return write

        session, check_in = self._apply_write(session_id, owner_id, change)
        result = CheckInResult(session=session, check_in=check_in)

        if session.status == SessionStatus.EMERGENCY:
            self.logger.warning(f"Owner of session {session.id} reported unsafe")
            try:
                result.escalation = await self.coordinator.escalate(session, EscalationReason.UNSAFE_RESPONSE)
            except Exception as e:
                self.logger.error(f"Escalation of session {session.id} deferred to the scheduler: {e}")
                result.escalation = EscalationResult(session.id, EMERGENCY_TRANSITION, deferred=True)
        else:
            self.logger.info(f"Session {session.id} checked in safe, next at {session.next_check_in_at}")
            if location:
                self.broadcaster.publish_location(session)

        return result

    # Location

    async def update_location(
        self,
        session_id: str,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
        address: Optional[str] = None,
        owner_id: Optional[str] = None
    ) -> SafetySession:
        """
        Record a new position and broadcast it to current viewers.

        A session past its expiry that never issued a check-in is expired
        instead, and the update is rejected with SessionClosed.
        """
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            raise ValueError(f"Invalid coordinates: {latitude}, {longitude}")

        expired = False

        def change(session: SafetySession, now: datetime) -> PendingWrite:
            nonlocal expired
            if now >= session.expires_at and not self.store.list_check_ins(session.id):
                session.close(SessionStatus.EXPIRED, now)
                expired = True
            else:
                session.record_location(LocationPoint(
                    latitude=latitude,
                    longitude=longitude,
                    timestamp=now,
                    accuracy=accuracy,
                    address=address
                ))
            return PendingWrite()

        session, _ = self._apply_write(session_id, owner_id, change)

        if expired:
            self.logger.info(f"Session {session.id} expired on location update")
            await self.coordinator.notify_session_update(session, SessionEvent.EXPIRED)
            raise SessionClosed(session.id, session.status.value)

        self.broadcaster.publish_location(session)
        return session

    # Sharing grants

    async def add_grant(self, session_id: str, recipient_id: str, grant_seconds: Optional[int] = None,
                        owner_id: Optional[str] = None) -> SharingGrant:
        """Give a recipient a fresh token to follow the session"""
        if grant_seconds is not None and grant_seconds <= 0:
            raise ValueError("Grant duration must be positive")

        def change(session: SafetySession, now: datetime) -> PendingWrite:
            if recipient_id == session.owner_id:
                raise ValueError("Cannot share a session with its owner")
            grant = self._new_grant(recipient_id, grant_seconds, now)
            session.sharing_grants.append(grant)
            return PendingWrite(value=grant)

        session, grant = self._apply_write(session_id, owner_id, change)
        self.logger.info(f"Session {session.id} shared with {recipient_id} until {grant.expires_at}")
        self.broadcaster.publish_location(session)
        return grant

    async def revoke_grant(self, session_id: str, token: str, owner_id: Optional[str] = None) -> SharingGrant:
        """Expire a grant now; the tombstone stays on the session"""

        def change(session: SafetySession, now: datetime) -> PendingWrite:
            grant = session.find_grant(token)
            if grant is None:
                raise GrantNotFound(f"No grant {token} on session {session.id}")
            if grant.expires_at > now:
                grant.expires_at = now
            return PendingWrite(value=grant)

        session, grant = self._apply_write(session_id, owner_id, change)
        self.logger.info(f"Revoked grant for {grant.recipient_id} on session {session.id}")
        return grant

    def view_shared_location(self, token: str, viewer_id: Optional[str] = None) -> SafetySession:
        """
        Resolve a share token to its session.

        Raises:
            GrantNotFound: no session carries this token (or it belongs to
                another viewer)
            GrantExpired: the token has expired or was revoked
        """
        session = self.store.find_session_by_grant_token(token)
        grant = session.find_grant(token) if session else None
        if grant is None or (viewer_id and grant.recipient_id != viewer_id):
            raise GrantNotFound("Share link not found")
        if not grant.is_valid(self.clock.now()):
            raise GrantExpired("Share link has expired")
        return session

    # Settings

    async def update_settings(self, session_id: str, check_in_interval_seconds: Optional[int] = None,
                              max_history_points: Optional[int] = None,
                              owner_id: Optional[str] = None) -> SafetySession:
        """Change the check-in interval or the history bound of an open session"""
        if check_in_interval_seconds is not None and check_in_interval_seconds <= 0:
            raise ValueError("Check-in interval must be positive")
        if max_history_points is not None and max_history_points < 1:
            raise ValueError("History size must be at least 1")

        def change(session: SafetySession, now: datetime) -> None:
            if check_in_interval_seconds is not None:
                session.check_in_interval_seconds = check_in_interval_seconds
                if session.status == SessionStatus.ACTIVE:
                    session.next_check_in_at = now + timedelta(seconds=check_in_interval_seconds)
            if max_history_points is not None:
                session.set_max_history_points(max_history_points)

        session = self._apply(session_id, owner_id, change)
        self.logger.info(f"Updated settings of session {session.id}")
        return session

    # Queries

    def get_session(self, session_id: str) -> SafetySession:
        return self.store.require_session(session_id)

    def get_active_session(self, owner_id: str) -> Optional[SafetySession]:
        return self.store.get_open_session(owner_id)

    def get_history(self, owner_id: str, limit: int = 10, offset: int = 0) -> List[SafetySession]:
        return self.store.list_sessions_by_owner(owner_id, limit, offset)

    def get_shared_with(self, viewer_id: str) -> List[SafetySession]:
        """Open sessions the viewer currently holds a valid grant for"""
        now = self.clock.now()
        return [
            session for session in self.store.list_open_sessions()
            if any(grant.recipient_id == viewer_id for grant in session.valid_grants(now))
        ]

    def list_check_ins(self, session_id: str) -> List[CheckIn]:
        self.store.require_session(session_id)
        return self.store.list_check_ins(session_id)

    # Internals

    def _new_grant(self, recipient_id: str, grant_seconds: Optional[int], now: datetime) -> SharingGrant:
        seconds = self.default_grant_seconds if grant_seconds is None else grant_seconds
        return SharingGrant(
            recipient_id=recipient_id,
            token=secrets.token_urlsafe(16),
            expires_at=now + timedelta(seconds=seconds),
            created_at=now
        )

    def _apply(self, session_id: str, owner_id: Optional[str],
               change: Callable[[SafetySession, datetime], None]) -> SafetySession:
        def write(session: SafetySession, now: datetime) -> PendingWrite:
            change(session, now)
            return PendingWrite()

        session, _ = self._apply_write(session_id, owner_id, write)
        return session

    def _apply_write(self, session_id: str, owner_id: Optional[str],
                     change: Callable[[SafetySession, datetime], PendingWrite]):
        """Load, change and commit a session, retrying on version conflicts"""
        for attempt in range(1, self.max_write_attempts + 1):
            session = self.store.require_session(session_id)
            if owner_id and session.owner_id != owner_id:
                raise SessionNotFound(f"Session {session_id} not found")
            if session.is_terminal:
                raise SessionClosed(session.id, session.status.value)

            now = self.clock.now()
            write = change(session, now)
            try:
                self.store.commit(
                    session, now,
                    resolve_check_in=write.resolve_check_in,
                    insert_check_in=write.insert_check_in
                )
                return session, write.value
            except NoPendingCheckIn:
                current = self.store.require_session(session_id)
                if current.is_terminal:
                    raise SessionClosed(current.id, current.status.value)
                raise
            except StaleVersion as e:
                if attempt == self.max_write_attempts:
                    raise
                self.logger.debug(f"Retrying write to session {session_id}: {e}")
