"""
Unit tests for the notification dispatcher and transports
"""

import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from campusguard.models.notification import (
    ChannelOutcome, NotificationChannel, NotificationJob, NotificationPayload,
    NotificationPriority, NotificationType
)
from campusguard.services.notifications.transports import PushTransport, SMSTransport


def make_job(clock, recipient_id="bob", channels=(NotificationChannel.PUSH, NotificationChannel.EMAIL)):
    return NotificationJob(
        recipient_id=recipient_id,
        payload=NotificationPayload(
            title="Emergency",
            message="Alice missed a check-in",
            type=NotificationType.EMERGENCY_ALERT,
            priority=NotificationPriority.URGENT
        ),
        channels=list(channels),
        created_at=clock.now()
    )


class TestDispatch:
    """Per-channel delivery outcomes"""

    @pytest.mark.asyncio
    async def test_all_channels_sent(self, services, clock, transports):
        job = make_job(clock)
        services.job_store.save(job)

        results = await services.dispatcher.dispatch(job)

        assert job.outcomes() == {'push': 'sent', 'email': 'sent'}
        assert results[NotificationChannel.PUSH].attempts == 1
        assert transports[NotificationChannel.EMAIL].addresses() == ["bob@campus.edu"]
        assert services.dispatcher.partial_failure(job) is None

    @pytest.mark.asyncio
    async def test_push_fails_email_still_sent(self, services, clock, transports):
        transports[NotificationChannel.PUSH].fail = True
        job = make_job(clock)
        services.job_store.save(job)

        await services.dispatcher.dispatch(job)

        assert job.outcomes() == {'push': 'failed', 'email': 'sent'}
        assert transports[NotificationChannel.PUSH].attempts == 3
        assert job.channel_results[NotificationChannel.PUSH].attempts == 3

        failure = services.dispatcher.partial_failure(job)
        assert failure.failed_channels == ['push']
        assert failure.recipient_id == "bob"

        stored = services.job_store.get(job.id)
        assert stored.outcomes() == {'push': 'failed', 'email': 'sent'}
        assert stored.completed_at == clock.now()
        assert [f.job_id for f in services.dispatcher.failed_deliveries()] == [job.id]

    @pytest.mark.asyncio
    async def test_transport_error_recorded(self, services, clock, transports):
        transports[NotificationChannel.EMAIL].error = "SMTP connection refused"
        job = make_job(clock)
        services.job_store.save(job)

        await services.dispatcher.dispatch(job)

        assert job.outcome_for(NotificationChannel.PUSH) == ChannelOutcome.SENT
        email = job.channel_results[NotificationChannel.EMAIL]
        assert email.outcome == ChannelOutcome.FAILED
        assert "SMTP connection refused" in email.error

    @pytest.mark.asyncio
    async def test_unreachable_recipient_skipped(self, services, clock):
        job = make_job(clock, recipient_id="carol")
        services.job_store.save(job)

        await services.dispatcher.dispatch(job)

        assert job.outcomes() == {'push': 'sent', 'email': 'skipped'}
        assert job.channel_results[NotificationChannel.EMAIL].error == "recipient unreachable"

    @pytest.mark.asyncio
    async def test_inactive_account_skipped(self, services, clock, transports):
        job = make_job(clock, recipient_id="ivan", channels=[NotificationChannel.EMAIL])
        services.job_store.save(job)

        await services.dispatcher.dispatch(job)

        assert job.outcomes() == {'email': 'skipped'}
        assert transports[NotificationChannel.EMAIL].attempts == 0

    @pytest.mark.asyncio
    async def test_unregistered_channel_skipped(self, services, clock):
        del services.dispatcher.transports[NotificationChannel.SMS]
        job = make_job(clock, recipient_id="alice", channels=[NotificationChannel.SMS])
        services.job_store.save(job)

        await services.dispatcher.dispatch(job)

        result = job.channel_results[NotificationChannel.SMS]
        assert result.outcome == ChannelOutcome.SKIPPED
        assert result.error == "no transport configured"

    @pytest.mark.asyncio
    async def test_enqueue_persists_and_delivers(self, services, clock):
        job = services.dispatcher.enqueue(make_job(clock))
        assert services.job_store.get(job.id).channel_results == {}

        await services.dispatcher.drain()

        assert services.job_store.get(job.id).outcomes() == {'push': 'sent', 'email': 'sent'}
        assert services.dispatcher.get_statistics()['jobs_dispatched'] == 1
        assert services.dispatcher.get_statistics()['pending_jobs'] == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded_as_failure(self, services, clock, monkeypatch, caplog):
        def offline(account_id):
            raise RuntimeError("directory offline")

        monkeypatch.setattr(services.accounts, "get_account", offline)
        job = services.dispatcher.enqueue(make_job(clock))

        with caplog.at_level(logging.ERROR):
            await services.dispatcher.drain()

        stored = services.job_store.get(job.id)
        assert stored.outcomes() == {'push': 'failed', 'email': 'failed'}
        assert stored.channel_results[NotificationChannel.PUSH].error == "directory offline"
        assert [f.job_id for f in services.dispatcher.failed_deliveries()] == [job.id]
        assert services.dispatcher.get_statistics()['dispatch_errors'] == 1
        assert "directory offline" in caplog.text

    @pytest.mark.asyncio
    async def test_in_app_delivery(self, services, clock, publisher, db):
        job = make_job(clock, recipient_id="dave", channels=[NotificationChannel.IN_APP])
        services.job_store.save(job)

        await services.dispatcher.dispatch(job)

        assert job.outcomes() == {'in_app': 'sent'}
        rows = db.execute_query("SELECT * FROM in_app_notifications WHERE recipient_id = ?", ("dave",))
        assert len(rows) == 1
        assert json.loads(rows[0]['data']) == {}
        published = publisher.for_topic("user_dave", "notification")
        assert published[0]['notification']['title'] == "Emergency"


class TestHttpTransports:
    """Provider response handling with a stubbed HTTP session"""

    def stub_session(self, status, body=None, text=""):
        response = MagicMock()
        response.status = status
        response.json = AsyncMock(return_value=body or {})
        response.text = AsyncMock(return_value=text)

        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=response)
        context.__aexit__ = AsyncMock(return_value=False)

        session = MagicMock()
        session.closed = False
        session.post = MagicMock(return_value=context)
        session.close = AsyncMock()
        return session

    def payload(self):
        return NotificationPayload(
            title="Safety check-in", message="Are you safe?",
            type=NotificationType.CHECK_IN_PROMPT, priority=NotificationPriority.HIGH
        )

    @pytest.mark.asyncio
    async def test_push_accepted(self):
        transport = PushTransport("https://push.example/send")
        transport.session = self.stub_session(200, {"data": {"status": "ok", "id": "ticket"}})

        assert await transport.deliver("ExponentPushToken[bob]", self.payload()) is True
        sent = transport.session.post.call_args.kwargs['json']
        assert sent['to'] == "ExponentPushToken[bob]"
        assert sent['priority'] == "high"

    @pytest.mark.asyncio
    async def test_push_ticket_error(self):
        transport = PushTransport("https://push.example/send")
        transport.session = self.stub_session(200, {"data": {"status": "error", "message": "DeviceNotRegistered"}})
        assert await transport.deliver("ExponentPushToken[bob]", self.payload()) is False

    @pytest.mark.asyncio
    async def test_push_http_error(self):
        transport = PushTransport("https://push.example/send")
        transport.session = self.stub_session(500, text="boom")
        assert await transport.deliver("ExponentPushToken[bob]", self.payload()) is False

    @pytest.mark.asyncio
    async def test_sms_form_post(self):
        transport = SMSTransport("AC123", "secret", "+15551112222")
        transport.session = self.stub_session(201)

        assert await transport.deliver("+15550000001", self.payload()) is True
        form = transport.session.post.call_args.kwargs['data']
        assert form == {"To": "+15550000001", "From": "+15551112222", "Body": "Safety check-in: Are you safe?"}
        await transport.close()
        transport.session.close.assert_awaited_once()
