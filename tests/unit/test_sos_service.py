"""
Unit tests for the SOS alert service
"""

import asyncio

import pytest

from campusguard.models.alert import AlertSeverity, AlertStatus
from campusguard.models.notification import NotificationPriority, NotificationType
from campusguard.services.safety.exceptions import AlertNotFound, InvalidTransition


class TestCreateAlert:
    """Raising an SOS"""

    @pytest.mark.asyncio
    async def test_notifies_staff_and_security_topic(self, services, publisher, settle, location):
        alert = await services.sos.create_alert("alice", location=location(address="Parking Lot B"),
                                                message="Someone is following me")
        await settle(services)

        assert alert.status == AlertStatus.ACTIVE
        jobs = services.job_store.list_for_alert(alert.id)
        assert sorted(job.recipient_id for job in jobs) == ["sam", "sara"]
        assert all(job.payload.type == NotificationType.SOS_ALERT for job in jobs)
        assert "Parking Lot B" in jobs[0].payload.message

        events = publisher.for_topic("security", "sos_alert")
        assert events[0]['alert']['id'] == alert.id
        assert events[0]['alert']['message'] == "Someone is following me"

    @pytest.mark.asyncio
    async def test_low_severity_is_not_urgent(self, services):
        alert = await services.sos.create_alert("alice", severity=AlertSeverity.LOW)
        jobs = services.job_store.list_for_alert(alert.id)
        assert all(job.payload.priority == NotificationPriority.HIGH for job in jobs)
        assert alert.message == "Emergency SOS activated"


class TestTransitions:
    """Forward-only staff workflow"""

    @pytest.mark.asyncio
    async def test_acknowledge_then_resolve(self, services, clock, publisher):
        alert = await services.sos.create_alert("alice")
        clock.advance(30)

        acknowledged = await services.sos.acknowledge(alert.id, "sam")
        assert acknowledged.status == AlertStatus.ACKNOWLEDGED
        assert acknowledged.acknowledged_by == "sam"
        assert acknowledged.acknowledged_at == clock.now()

        clock.advance(300)
        resolved = await services.sos.resolve(alert.id, "sara", "Escorted home")
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.resolution == "Escorted home"

        stored = services.sos.get_alert(alert.id)
        assert stored.status == AlertStatus.RESOLVED
        assert stored.acknowledged_by == "sam"
        assert stored.resolved_by == "sara"
        assert publisher.for_topic("security", "sos_acknowledged")
        assert publisher.for_topic("security", "sos_resolved")

    @pytest.mark.asyncio
    async def test_owner_hears_back(self, services):
        alert = await services.sos.create_alert("alice")
        await services.sos.acknowledge(alert.id, "sam")

        owner_jobs = [job for job in services.job_store.list_for_alert(alert.id) if job.recipient_id == "alice"]
        assert [job.payload.type for job in owner_jobs] == [NotificationType.SOS_ACKNOWLEDGED]
        assert "Sam Security" in owner_jobs[0].payload.message

    @pytest.mark.asyncio
    async def test_resolve_from_active(self, services):
        alert = await services.sos.create_alert("alice")
        resolved = await services.sos.resolve(alert.id, "sam")
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.resolution == "Resolved"

    @pytest.mark.asyncio
    async def test_no_backward_moves(self, services):
        alert = await services.sos.create_alert("alice")
        await services.sos.acknowledge(alert.id, "sam")

        with pytest.raises(InvalidTransition) as exc_info:
            await services.sos.acknowledge(alert.id, "sara")
        assert exc_info.value.current == "acknowledged"

        await services.sos.resolve(alert.id, "sam")
        with pytest.raises(InvalidTransition):
            await services.sos.acknowledge(alert.id, "sam")
        with pytest.raises(InvalidTransition):
            await services.sos.resolve(alert.id, "sam")

    @pytest.mark.asyncio
    async def test_concurrent_acknowledgements(self, services):
        alert = await services.sos.create_alert("alice")

        results = await asyncio.gather(
            services.sos.acknowledge(alert.id, "sam"),
            services.sos.acknowledge(alert.id, "sara"),
            return_exceptions=True
        )

        assert sum(1 for r in results if isinstance(r, InvalidTransition)) == 1
        assert services.sos.get_alert(alert.id).acknowledged_by == "sam"

    @pytest.mark.asyncio
    async def test_compare_and_set_rejects_stale_status(self, services):
        alert = await services.sos.create_alert("alice")
        stale = services.alert_store.get(alert.id)
        await services.sos.resolve(alert.id, "sam")

        stale.status = AlertStatus.ACKNOWLEDGED
        assert services.alert_store.compare_and_set(stale, [AlertStatus.ACTIVE]) is False
        assert services.sos.get_alert(alert.id).status == AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_unknown_alert(self, services):
        with pytest.raises(AlertNotFound):
            await services.sos.acknowledge("missing", "sam")


class TestListing:
    """Staff queue"""

    @pytest.mark.asyncio
    async def test_pagination_and_filter(self, services, clock):
        ids = []
        for _ in range(5):
            ids.append((await services.sos.create_alert("alice")).id)
            clock.advance(10)
        await services.sos.resolve(ids[0], "sam")

        first_page = services.sos.list_alerts(page=1, limit=2)
        assert first_page['total'] == 5
        assert first_page['pages'] == 3
        assert [a.id for a in first_page['alerts']] == [ids[4], ids[3]]

        active = services.sos.list_alerts(status=AlertStatus.ACTIVE)
        assert active['total'] == 4
        assert ids[0] not in [a.id for a in active['alerts']]
