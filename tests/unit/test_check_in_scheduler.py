"""
Unit tests for the check-in scheduler
"""

import asyncio

import pytest

from campusguard.models.notification import NotificationType
from campusguard.models.safety import CheckInResponse, SessionMode, SessionStatus
from campusguard.services.safety.escalation import EscalationCoordinator


class TestCheckInRoundTrip:
    """Prompt, grace period and timeout"""

    @pytest.mark.asyncio
    async def test_missed_check_in_escalates_once(self, services, clock, settle):
        session = await services.sessions.start_session(
            "alice", check_in_interval_seconds=300, recipients=["bob"]
        )

        clock.advance(300)
        report = await services.scheduler.tick()
        assert report.prompted == [session.id]
        assert services.sessions.get_session(session.id).status == SessionStatus.CHECK_IN_DUE

        clock.advance(119)
        report = await services.scheduler.tick()
        assert not report.changed

        clock.advance(1)
        report = await services.scheduler.tick()
        assert report.timed_out == [session.id]
        await settle(services)

        stored = services.sessions.get_session(session.id)
        assert stored.status == SessionStatus.EMERGENCY
        check_ins = services.sessions.list_check_ins(session.id)
        assert [c.response for c in check_ins] == [CheckInResponse.TIMED_OUT]

        emergency_jobs = [
            job for job in services.job_store.list_for_session(session.id)
            if job.payload.type == NotificationType.EMERGENCY_ALERT
        ]
        assert sorted(job.recipient_id for job in emergency_jobs) == ["bob", "sam", "sara"]

    @pytest.mark.asyncio
    async def test_prompt_goes_to_owner(self, services, clock, settle):
        session = await services.sessions.start_session("alice")
        clock.advance(300)
        await services.scheduler.tick()
        await settle(services)

        prompts = [
            job for job in services.job_store.list_for_session(session.id)
            if job.payload.type == NotificationType.CHECK_IN_PROMPT
        ]
        assert len(prompts) == 1
        assert prompts[0].recipient_id == "alice"
        assert prompts[0].payload.data['check_in_id'] == services.session_store.get_pending_check_in(session.id).id

    @pytest.mark.asyncio
    async def test_tick_is_idempotent(self, services, clock, settle):
        session = await services.sessions.start_session("alice")
        clock.advance(420)
        first = await services.scheduler.tick()
        await settle(services)
        jobs_after_first = len(services.job_store.list_for_session(session.id))

        second = await services.scheduler.tick()
        third = await services.scheduler.tick()
        await settle(services)

        assert first.prompted == [session.id]
        assert first.timed_out == [session.id]
        assert not second.changed
        assert not third.changed
        assert len(services.sessions.list_check_ins(session.id)) == 1
        assert len(services.job_store.list_for_session(session.id)) == jobs_after_first

    @pytest.mark.asyncio
    async def test_concurrent_ticks(self, services, clock):
        session = await services.sessions.start_session("alice")
        clock.advance(420)

        reports = await asyncio.gather(*(services.scheduler.tick() for _ in range(3)))

        assert sum(len(report.timed_out) for report in reports) == 1
        assert len(services.sessions.list_check_ins(session.id)) == 1

    @pytest.mark.asyncio
    async def test_answer_before_timeout(self, services, clock):
        session = await services.sessions.start_session("alice")
        clock.advance(300)
        await services.scheduler.tick()

        clock.advance(50)
        await services.sessions.respond_to_check_in(session.id, CheckInResponse.SAFE)

        clock.advance(100)
        report = await services.scheduler.tick()
        assert report.timed_out == []
        assert services.sessions.get_session(session.id).status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_early_check_in_delays_prompt(self, services, clock):
        session = await services.sessions.start_session("alice")
        clock.advance(290)
        await services.sessions.respond_to_check_in(session.id, CheckInResponse.SAFE)

        clock.advance(10)
        assert (await services.scheduler.tick()).prompted == []
        clock.advance(290)
        assert (await services.scheduler.tick()).prompted == [session.id]

    @pytest.mark.asyncio
    async def test_completed_session_is_not_prompted(self, services, clock):
        session = await services.sessions.start_session("alice")
        await services.sessions.complete_session(session.id)

        clock.advance(1000)
        report = await services.scheduler.tick()
        assert not report.changed


class TestZeroGrace:
    """A zero grace period times out on the same sweep"""

    @pytest.fixture
    def config_overrides(self):
        return {"sessions": {"grace_seconds": 0}}

    @pytest.mark.asyncio
    async def test_single_tick_prompts_and_times_out(self, services, clock):
        session = await services.sessions.start_session("alice")
        clock.advance(300)

        report = await services.scheduler.tick()

        assert report.prompted == [session.id]
        assert report.timed_out == [session.id]
        assert services.sessions.get_session(session.id).status == SessionStatus.EMERGENCY


class TestExpiry:
    """Sessions that run out without check-ins"""

    @pytest.mark.asyncio
    async def test_live_share_expires(self, services, clock, settle):
        session = await services.sessions.start_session(
            "alice", mode=SessionMode.LIVE_SHARE, duration_seconds=900, recipients=["bob"]
        )
        clock.advance(899)
        assert (await services.scheduler.tick()).expired == []

        clock.advance(1)
        report = await services.scheduler.tick()
        await settle(services)

        assert report.expired == [session.id]
        stored = services.sessions.get_session(session.id)
        assert stored.status == SessionStatus.EXPIRED
        assert stored.ended_at == clock.now()
        events = [job.event_key for job in services.job_store.list_for_session(session.id)]
        assert events.count("expired") == 1

    @pytest.mark.asyncio
    async def test_session_with_check_ins_does_not_expire(self, services, clock):
        session = await services.sessions.start_session("alice", duration_seconds=600, check_in_interval_seconds=300)
        clock.advance(290)
        await services.sessions.respond_to_check_in(session.id, CheckInResponse.SAFE)

        clock.advance(400)
        report = await services.scheduler.tick()
        assert report.expired == []


class TestIsolationAndRecovery:
    """Failures and crash recovery"""

    @pytest.mark.asyncio
    async def test_failure_on_one_session_does_not_stop_sweep(self, services, clock, monkeypatch):
        alice = await services.sessions.start_session("alice")
        bob = await services.sessions.start_session("bob")
        original = EscalationCoordinator.prompt_check_in

        async def flaky_prompt(self, session, check_in):
            if session.owner_id == "alice":
                raise RuntimeError("push gateway exploded")
            return await original(self, session, check_in)

        monkeypatch.setattr(EscalationCoordinator, "prompt_check_in", flaky_prompt)
        clock.advance(300)

        report = await services.scheduler.tick()

        assert report.prompted == [bob.id]
        assert "push gateway exploded" in report.errors[alice.id]
        assert services.sessions.get_session(bob.id).status == SessionStatus.CHECK_IN_DUE

    @pytest.mark.asyncio
    async def test_unclaimed_emergency_is_escalated(self, services, clock, settle):
        session = await services.sessions.start_session("alice", recipients=["carol"])
        stored = services.session_store.require_session(session.id)
        stored.close(SessionStatus.EMERGENCY, clock.now())
        services.session_store.commit(stored, clock.now())

        report = await services.scheduler.tick()
        await settle(services)
        assert report.recovered == [session.id]

        again = await services.scheduler.tick()
        assert again.recovered == []

        emergency_jobs = [
            job for job in services.job_store.list_for_session(session.id)
            if job.event_key == "emergency"
        ]
        assert sorted(job.recipient_id for job in emergency_jobs) == ["carol", "sam", "sara"]


class TestLifecycle:
    """Background loop control"""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, services):
        scheduler = services.scheduler
        await scheduler.start()
        assert scheduler.is_running
        await asyncio.sleep(0)

        await scheduler.stop()
        assert not scheduler.is_running
        assert scheduler.get_status()['grace_seconds'] == 120
