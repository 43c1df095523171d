"""
Check-in Scheduler

A single background sweep drives every time-based session transition:
1. active sessions whose next check-in has arrived get a pending CheckIn,
   move to check_in_due and the owner is prompted
2. check_in_due sessions still pending past next_check_in_at + grace have
   their CheckIn timed out and escalate to emergency
3. open sessions past expires_at that never issued a CheckIn expire
4. emergency sessions whose fan-out was never claimed (a crash between
   commit and escalation) are escalated again

A failure on one session is logged and does not stop the sweep.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ...core.clock import Clock
from ...core.logging import LogContext, get_structured_logger
from ...models.safety import CheckIn, CheckInResponse, SafetySession, SessionStatus
from .escalation import EMERGENCY_TRANSITION, EscalationCoordinator, EscalationReason, SessionEvent
from .exceptions import NoPendingCheckIn, SafetyError
from .session_store import SessionStore


@dataclass
class TickReport:
    """Session ids touched by one sweep"""
    prompted: List[str] = field(default_factory=list)
    timed_out: List[str] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)
    recovered: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.prompted or self.timed_out or self.expired or self.recovered)


class CheckInScheduler:
    """Fixed-interval sweep over due, overdue and expired sessions"""

    def __init__(self, store: SessionStore, coordinator: EscalationCoordinator, clock: Clock,
                 config: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(__name__)
        self.events = get_structured_logger("safety.scheduler")
        self.store = store
        self.coordinator = coordinator
        self.clock = clock

        config = config or {}
        self.tick_seconds = config.get('tick_seconds', 5)
        self.grace_seconds = config.get('grace_seconds', 120)
        self.error_backoff_seconds = config.get('error_backoff_seconds', 30)

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

        self.ticks = 0
        self.last_tick_duration = 0.0

    async def start(self):
        """Start the background sweep"""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        self.logger.info(f"Check-in scheduler started (tick={self.tick_seconds}s, grace={self.grace_seconds}s)")

    async def stop(self):
        """Stop the background sweep"""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self.logger.info("Check-in scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _scheduler_loop(self):
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self.tick_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in check-in scheduler loop: {e}")
                await asyncio.sleep(self.error_backoff_seconds)

    async def tick(self) -> TickReport:
        """Run one sweep; overlapping calls run one after another"""
        async with self._tick_lock:
            started = self.clock.monotonic()
            report = TickReport()

            for session in self.store.find_due_for_check_in(self.clock.now()):
                await self._isolated(report, session, report.prompted, self._issue_check_in)

            for session in self.store.find_overdue_check_ins(self.clock.now(), self.grace_seconds):
                await self._isolated(report, session, report.timed_out, self._time_out)

            for session in self.store.find_expired_without_check_ins(self.clock.now()):
                await self._isolated(report, session, report.expired, self._expire)

            for session in self.store.find_unescalated_emergencies(EMERGENCY_TRANSITION):
                await self._isolated(report, session, report.recovered, self._recover_escalation)

            self.ticks += 1
            self.last_tick_duration = self.clock.monotonic() - started
            if report.changed or report.errors:
                self.logger.info(
                    f"Scheduler tick: prompted={len(report.prompted)} timed_out={len(report.timed_out)} "
                    f"expired={len(report.expired)} recovered={len(report.recovered)} errors={len(report.errors)}"
                )
            return report

    async def _isolated(self, report: TickReport, session: SafetySession, bucket: List[str], step):
        try:
            if await step(session):
                bucket.append(session.id)
        except SafetyError as e:
            self.logger.info(f"Skipped session {session.id} this tick: {e}")
        except Exception as e:
            self.logger.error(f"Scheduler failed on session {session.id}: {e}", exc_info=True)
            report.errors[session.id] = str(e)
            with LogContext(self.events, session_id=session.id, step=step.__name__) as log:
                log.error("scheduler_session_failed", error=str(e))

    async def _issue_check_in(self, session: SafetySession) -> bool:
        now = self.clock.now()
        check_in = CheckIn(session_id=session.id, scheduled_at=session.next_check_in_at or now)
        session.status = SessionStatus.CHECK_IN_DUE

        self.store.commit(session, now, insert_check_in=check_in)
        self.logger.info(f"Check-in {check_in.id} due for session {session.id}")

        await self.coordinator.prompt_check_in(session, check_in)
        return True

    async def _time_out(self, session: SafetySession) -> bool:
        check_in = self.store.get_pending_check_in(session.id)
        if check_in is None:
            return False

        now = self.clock.now()
        check_in.response = CheckInResponse.TIMED_OUT
        session.close(SessionStatus.EMERGENCY, now)

        try:
            self.store.commit(session, now, resolve_check_in=check_in)
        except NoPendingCheckIn:
            self.logger.info(f"Check-in {check_in.id} was answered before timing out")
            return False

        self.logger.warning(f"Check-in {check_in.id} timed out, session {session.id} escalated")
        await self.coordinator.escalate(session, EscalationReason.MISSED_CHECK_IN)
        return True

    async def _expire(self, session: SafetySession) -> bool:
        now = self.clock.now()
        session.close(SessionStatus.EXPIRED, now)
        self.store.commit(session, now)

        self.logger.info(f"Session {session.id} expired")
        await self.coordinator.notify_session_update(session, SessionEvent.EXPIRED)
        return True

    async def _recover_escalation(self, session: SafetySession) -> bool:
        check_ins = self.store.list_check_ins(session.id)
        reason = EscalationReason.MISSED_CHECK_IN
        if check_ins and check_ins[-1].response == CheckInResponse.UNSAFE:
            reason = EscalationReason.UNSAFE_RESPONSE

        result = await self.coordinator.escalate(session, reason)
        return not result.duplicate

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'tick_seconds': self.tick_seconds,
            'grace_seconds': self.grace_seconds,
            'ticks': self.ticks,
            'last_tick_duration': self.last_tick_duration
        }
