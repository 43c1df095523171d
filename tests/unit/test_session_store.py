"""
Unit tests for the safety session store
"""

from datetime import timedelta

import pytest

from campusguard.models.safety import (
    CheckIn, CheckInResponse, LocationPoint, SafetySession, SessionMode, SessionStatus, SharingGrant
)
from campusguard.services.safety.exceptions import (
    NoPendingCheckIn, SessionClosed, SessionConflict, SessionNotFound, StaleVersion
)
from campusguard.services.safety.session_store import SessionStore


@pytest.fixture
def store(db):
    return SessionStore(db)


def new_session(clock, owner_id="alice", interval=300, **kwargs):
    now = clock.now()
    session = SafetySession(
        owner_id=owner_id,
        started_at=now,
        expires_at=now + timedelta(hours=1),
        check_in_interval_seconds=interval,
        **kwargs
    )
    if interval:
        session.next_check_in_at = now + timedelta(seconds=interval)
    return session


class TestSessionPersistence:
    """Insert and load"""

    def test_round_trip_preserves_fields(self, store, clock):
        session = new_session(clock, destination="Library", max_history_points=5)
        session.sharing_grants.append(SharingGrant(
            recipient_id="bob", token="tok-bob",
            expires_at=clock.now() + timedelta(minutes=30), created_at=clock.now()
        ))
        session.record_location(LocationPoint(40.1, -73.2, clock.now(), accuracy=5.0, address="Gate 3"))
        store.insert_session(session)

        loaded = store.require_session(session.id)
        assert loaded.owner_id == "alice"
        assert loaded.destination == "Library"
        assert loaded.status == SessionStatus.ACTIVE
        assert loaded.mode == SessionMode.JOURNEY
        assert loaded.next_check_in_at == clock.now() + timedelta(seconds=300)
        assert loaded.current_location.address == "Gate 3"
        assert loaded.location_history.capacity == 5
        assert len(loaded.location_history) == 1
        assert loaded.find_grant("tok-bob").recipient_id == "bob"
        assert loaded.version == 1

    def test_missing_session(self, store):
        assert store.get_session("nope") is None
        with pytest.raises(SessionNotFound):
            store.require_session("nope")

    def test_second_open_session_rejected(self, store, clock):
        store.insert_session(new_session(clock))

        with pytest.raises(SessionConflict) as exc_info:
            store.insert_session(new_session(clock))
        assert exc_info.value.owner_id == "alice"

    def test_new_session_allowed_after_close(self, store, clock):
        first = store.insert_session(new_session(clock))
        first.close(SessionStatus.COMPLETED, clock.now())
        store.commit(first, clock.now())

        second = store.insert_session(new_session(clock))
        assert store.get_open_session("alice").id == second.id

    def test_other_owners_are_independent(self, store, clock):
        store.insert_session(new_session(clock, owner_id="alice"))
        store.insert_session(new_session(clock, owner_id="bob"))
        assert len(store.list_open_sessions()) == 2

    def test_find_by_grant_token(self, store, clock):
        session = new_session(clock)
        session.sharing_grants.append(SharingGrant(
            recipient_id="bob", token="abc123",
            expires_at=clock.now() + timedelta(minutes=30), created_at=clock.now()
        ))
        store.insert_session(session)

        assert store.find_session_by_grant_token("abc123").id == session.id
        assert store.find_session_by_grant_token("abc") is None

    def test_history_most_recent_first(self, store, clock):
        first = store.insert_session(new_session(clock))
        first.close(SessionStatus.CANCELLED, clock.now())
        store.commit(first, clock.now())
        clock.advance(60)
        second = store.insert_session(new_session(clock))

        history = store.list_sessions_by_owner("alice")
        assert [s.id for s in history] == [second.id, first.id]
        assert store.list_sessions_by_owner("alice", limit=1, offset=1)[0].id == first.id


class TestConditionalCommit:
    """Version and status compare-and-set"""

    def test_commit_advances_version(self, store, clock):
        session = store.insert_session(new_session(clock))
        session.destination = "Dorm"
        store.commit(session, clock.now())

        assert session.version == 2
        assert store.require_session(session.id).version == 2
        assert store.require_session(session.id).destination == "Dorm"

    def test_stale_copy_rejected(self, store, clock):
        session = store.insert_session(new_session(clock))
        first = store.require_session(session.id)
        second = store.require_session(session.id)

        first.destination = "Library"
        store.commit(first, clock.now())

        second.destination = "Gym"
        with pytest.raises(StaleVersion):
            store.commit(second, clock.now())
        assert store.require_session(session.id).destination == "Library"

    def test_terminal_status_never_overwritten(self, store, clock):
        session = store.insert_session(new_session(clock))
        closer = store.require_session(session.id)
        late_writer = store.require_session(session.id)

        closer.close(SessionStatus.COMPLETED, clock.now())
        store.commit(closer, clock.now())

        late_writer.close(SessionStatus.EMERGENCY, clock.now())
        with pytest.raises(SessionClosed) as exc_info:
            store.commit(late_writer, clock.now())
        assert exc_info.value.status == "completed"
        assert store.require_session(session.id).status == SessionStatus.COMPLETED

    def test_commit_unknown_session(self, store, clock):
        with pytest.raises(SessionNotFound):
            store.commit(new_session(clock), clock.now())


class TestCheckIns:
    """Check-in writes"""

    def issue(self, store, session, clock):
        check_in = CheckIn(session_id=session.id, scheduled_at=session.next_check_in_at)
        session.status = SessionStatus.CHECK_IN_DUE
        store.commit(session, clock.now(), insert_check_in=check_in)
        return check_in

    def test_issue_check_in(self, store, clock):
        session = store.insert_session(new_session(clock))
        check_in = self.issue(store, session, clock)

        pending = store.get_pending_check_in(session.id)
        assert pending.id == check_in.id
        assert pending.is_pending
        assert store.require_session(session.id).status == SessionStatus.CHECK_IN_DUE

    def test_response_written_once(self, store, clock):
        session = store.insert_session(new_session(clock))
        self.issue(store, session, clock)
        safe_copy = store.get_pending_check_in(session.id)
        unsafe_copy = store.get_pending_check_in(session.id)

        safe_copy.response = CheckInResponse.SAFE
        safe_copy.responded_at = clock.now()
        session.reschedule(clock.now())
        store.commit(session, clock.now(), resolve_check_in=safe_copy)

        late = store.require_session(session.id)
        unsafe_copy.response = CheckInResponse.UNSAFE
        unsafe_copy.responded_at = clock.now()
        late.close(SessionStatus.EMERGENCY, clock.now())
        with pytest.raises(NoPendingCheckIn):
            store.commit(late, clock.now(), resolve_check_in=unsafe_copy)

        assert store.get_check_in(safe_copy.id).response == CheckInResponse.SAFE
        assert store.require_session(session.id).status == SessionStatus.ACTIVE

    def test_failed_check_in_write_rolls_back_session(self, store, clock):
        session = store.insert_session(new_session(clock))
        check_in = self.issue(store, session, clock)
        check_in.response = CheckInResponse.TIMED_OUT
        session.close(SessionStatus.EMERGENCY, clock.now())
        store.commit(session, clock.now(), resolve_check_in=check_in)

        stale = store.get_check_in(check_in.id)
        stale.response = CheckInResponse.SAFE
        with pytest.raises(NoPendingCheckIn):
            store.commit(store.require_session(session.id), clock.now(), resolve_check_in=stale)
        assert store.get_check_in(check_in.id).response == CheckInResponse.TIMED_OUT

    def test_one_pending_check_in_per_session(self, store, clock):
        session = store.insert_session(new_session(clock))
        self.issue(store, session, clock)

        duplicate = CheckIn(session_id=session.id, scheduled_at=clock.now())
        with pytest.raises(StaleVersion):
            store.commit(store.require_session(session.id), clock.now(), insert_check_in=duplicate)
        assert len(store.list_check_ins(session.id)) == 1

    def test_claim_transition_once(self, store, clock):
        session = store.insert_session(new_session(clock))
        assert store.claim_transition(session.id, "emergency", clock.now()) is True
        assert store.claim_transition(session.id, "emergency", clock.now()) is False
        assert store.claim_transition(session.id, "started", clock.now()) is True


class TestSweepQueries:
    """Queries used by the scheduler"""

    def test_due_for_check_in(self, store, clock):
        session = store.insert_session(new_session(clock, interval=300))
        store.insert_session(new_session(clock, owner_id="bob", interval=None, mode=SessionMode.LIVE_SHARE))

        clock.advance(299)
        assert store.find_due_for_check_in(clock.now()) == []
        clock.advance(1)
        assert [s.id for s in store.find_due_for_check_in(clock.now())] == [session.id]

    def test_overdue_respects_grace(self, store, clock):
        session = store.insert_session(new_session(clock, interval=300))
        clock.advance(300)
        TestCheckIns().issue(store, session, clock)

        clock.advance(119)
        assert store.find_overdue_check_ins(clock.now(), 120) == []
        clock.advance(1)
        assert [s.id for s in store.find_overdue_check_ins(clock.now(), 120)] == [session.id]

    def test_expired_only_without_check_ins(self, store, clock):
        quiet = store.insert_session(new_session(clock, owner_id="bob", interval=None, mode=SessionMode.LIVE_SHARE))
        prompted = store.insert_session(new_session(clock, owner_id="alice", interval=300))
        TestCheckIns().issue(store, prompted, clock)

        clock.advance(3600)
        assert [s.id for s in store.find_expired_without_check_ins(clock.now())] == [quiet.id]

    def test_unescalated_emergencies(self, store, clock):
        session = store.insert_session(new_session(clock))
        session.close(SessionStatus.EMERGENCY, clock.now())
        store.commit(session, clock.now())

        assert [s.id for s in store.find_unescalated_emergencies("emergency")] == [session.id]
        store.claim_transition(session.id, "emergency", clock.now())
        assert store.find_unescalated_emergencies("emergency") == []
