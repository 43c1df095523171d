"""
Safety Session Store

Persists sessions and their check-ins. Write paths are conditional:
- inserting a session fails if the owner already has an open one
- session updates compare-and-set on the version column and only apply to
  open sessions, so a terminal status can never be overwritten
- check-in responses compare-and-set on response = 'pending'
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional

from ...core.clock import from_timestamp, to_timestamp
from ...core.database import DatabaseManager
from ...models.safety import (
    BoundedHistory, CheckIn, CheckInResponse, LocationPoint, SafetySession,
    SessionMode, SessionStatus, SharingGrant
)
from .exceptions import NoPendingCheckIn, SessionClosed, SessionConflict, SessionNotFound, StaleVersion


_OPEN = (SessionStatus.ACTIVE.value, SessionStatus.CHECK_IN_DUE.value)


class SessionStore:
    """Database access for safety sessions and check-ins"""

    def __init__(self, db: DatabaseManager):
        self.logger = logging.getLogger(__name__)
        self.db = db

    # Sessions

    def insert_session(self, session: SafetySession) -> SafetySession:
        """
        Insert a new session.

        Raises:
            SessionConflict: the owner already has a non-terminal session
        """
        try:
            self.db.execute_update(
                """INSERT INTO safety_sessions
                   (id, owner_id, mode, destination, status, started_at, expires_at,
                    check_in_interval_seconds, last_check_in_at, next_check_in_at,
                    current_location, location_history, max_history_points,
                    sharing_grants, ended_at, version, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    session.id,
                    session.owner_id,
                    session.mode.value,
                    session.destination,
                    session.status.value,
                    to_timestamp(session.started_at),
                    to_timestamp(session.expires_at),
                    session.check_in_interval_seconds,
                    self._ts(session.last_check_in_at),
                    self._ts(session.next_check_in_at),
                    self._location_json(session.current_location),
                    json.dumps([point.to_dict() for point in session.location_history]),
                    session.max_history_points,
                    json.dumps([grant.to_dict() for grant in session.sharing_grants]),
                    self._ts(session.ended_at),
                    session.version,
                    to_timestamp(session.started_at)
                )
            )
        except sqlite3.IntegrityError as e:
            self.logger.info(f"Rejected second open session for owner {session.owner_id}: {e}")
            raise SessionConflict(session.owner_id)

        self.logger.info(f"Created {session.mode.value} session {session.id} for {session.owner_id}")
        return session

    def get_session(self, session_id: str) -> Optional[SafetySession]:
        rows = self.db.execute_query(
            "SELECT * FROM safety_sessions WHERE id = ?",
            (session_id,)
        )
        return self._row_to_session(rows[0]) if rows else None

    def require_session(self, session_id: str) -> SafetySession:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    def get_open_session(self, owner_id: str) -> Optional[SafetySession]:
        rows = self.db.execute_query(
            "SELECT * FROM safety_sessions WHERE owner_id = ? AND status IN (?, ?)",
            (owner_id, *_OPEN)
        )
        return self._row_to_session(rows[0]) if rows else None

    def list_sessions_by_owner(self, owner_id: str, limit: int = 10, offset: int = 0) -> List[SafetySession]:
        """Session history, most recent first"""
        rows = self.db.execute_query(
            """SELECT * FROM safety_sessions WHERE owner_id = ?
               ORDER BY started_at DESC LIMIT ? OFFSET ?""",
            (owner_id, limit, offset)
        )
        return [self._row_to_session(row) for row in rows]

    def find_session_by_grant_token(self, token: str) -> Optional[SafetySession]:
        rows = self.db.execute_query(
            "SELECT * FROM safety_sessions WHERE sharing_grants LIKE ?",
            (f'%{token}%',)
        )
        for row in rows:
            session = self._row_to_session(row)
            if session.find_grant(token):
                return session
        return None

    def list_open_sessions(self) -> List[SafetySession]:
        rows = self.db.execute_query(
            "SELECT * FROM safety_sessions WHERE status IN (?, ?) ORDER BY started_at",
            _OPEN
        )
        return [self._row_to_session(row) for row in rows]

    def find_due_for_check_in(self, now: datetime) -> List[SafetySession]:
        """Active sessions whose next check-in time has arrived"""
        rows = self.db.execute_query(
            """SELECT * FROM safety_sessions
               WHERE status = ? AND next_check_in_at IS NOT NULL AND next_check_in_at <= ?
               ORDER BY next_check_in_at""",
            (SessionStatus.ACTIVE.value, to_timestamp(now))
        )
        return [self._row_to_session(row) for row in rows]

    def find_overdue_check_ins(self, now: datetime, grace_seconds: float) -> List[SafetySession]:
        """Sessions with an unanswered prompt past next_check_in_at + grace"""
        threshold = now - timedelta(seconds=grace_seconds)
        rows = self.db.execute_query(
            """SELECT s.* FROM safety_sessions s
               WHERE s.status = ? AND s.next_check_in_at IS NOT NULL AND s.next_check_in_at <= ?
                 AND EXISTS (SELECT 1 FROM check_ins c
                             WHERE c.session_id = s.id AND c.response = ?)
               ORDER BY s.next_check_in_at""",
            (SessionStatus.CHECK_IN_DUE.value, to_timestamp(threshold), CheckInResponse.PENDING.value)
        )
        return [self._row_to_session(row) for row in rows]

    def find_expired_without_check_ins(self, now: datetime) -> List[SafetySession]:
        """Open sessions past expires_at that never issued a check-in"""
        rows = self.db.execute_query(
            """SELECT s.* FROM safety_sessions s
               WHERE s.status IN (?, ?) AND s.expires_at <= ?
                 AND NOT EXISTS (SELECT 1 FROM check_ins c WHERE c.session_id = s.id)
               ORDER BY s.expires_at""",
            (*_OPEN, to_timestamp(now))
        )
        return [self._row_to_session(row) for row in rows]

    def find_unescalated_emergencies(self, transition_id: str) -> List[SafetySession]:
        """Emergency sessions whose fan-out was never claimed"""
        rows = self.db.execute_query(
            """SELECT s.* FROM safety_sessions s
               WHERE s.status = ?
                 AND NOT EXISTS (SELECT 1 FROM processed_events p
                                 WHERE p.session_id = s.id AND p.transition_id = ?)
               ORDER BY s.ended_at""",
            (SessionStatus.EMERGENCY.value, transition_id)
        )
        return [self._row_to_session(row) for row in rows]

    def commit(
        self,
        session: SafetySession,
        now: datetime,
        resolve_check_in: Optional[CheckIn] = None,
        insert_check_in: Optional[CheckIn] = None
    ) -> SafetySession:
        """
        Atomically persist a session change, optionally together with a
        check-in insert or a check-in response.

        The session row is only written if its version still equals
        session.version and it is still open. On success session.version is
        advanced.

        Raises:
            NoPendingCheckIn: resolve_check_in was already answered or timed out
            SessionClosed: the session was closed by another writer
            StaleVersion: the session was changed by another writer
        """
        with self.db.transaction() as conn:
            if resolve_check_in is not None:
                cursor = conn.execute(
                    """UPDATE check_ins SET response = ?, responded_at = ?, location = ?
                       WHERE id = ? AND response = ?""",
                    (
                        resolve_check_in.response.value,
                        self._ts(resolve_check_in.responded_at),
                        self._location_json(resolve_check_in.location),
                        resolve_check_in.id,
                        CheckInResponse.PENDING.value
                    )
                )
                if cursor.rowcount == 0:
                    raise NoPendingCheckIn(f"Check-in {resolve_check_in.id} is no longer pending")

            if insert_check_in is not None:
                try:
                    conn.execute(
                        """INSERT INTO check_ins (id, session_id, scheduled_at, responded_at, response, location)
                           VALUES (?, ?, ?, ?, ?, ?)""",
                        (
                            insert_check_in.id,
                            insert_check_in.session_id,
                            to_timestamp(insert_check_in.scheduled_at),
                            self._ts(insert_check_in.responded_at),
                            insert_check_in.response.value,
                            self._location_json(insert_check_in.location)
                        )
                    )
                except sqlite3.IntegrityError:
                    raise StaleVersion(f"Session {session.id} already has a pending check-in")

            cursor = conn.execute(
                """UPDATE safety_sessions
                   SET status = ?, destination = ?, expires_at = ?, check_in_interval_seconds = ?,
                       last_check_in_at = ?, next_check_in_at = ?, current_location = ?,
                       location_history = ?, max_history_points = ?, sharing_grants = ?,
                       ended_at = ?, version = version + 1, updated_at = ?
                   WHERE id = ? AND version = ? AND status IN (?, ?)""",
                (
                    session.status.value,
                    session.destination,
                    to_timestamp(session.expires_at),
                    session.check_in_interval_seconds,
                    self._ts(session.last_check_in_at),
                    self._ts(session.next_check_in_at),
                    self._location_json(session.current_location),
                    json.dumps([point.to_dict() for point in session.location_history]),
                    session.max_history_points,
                    json.dumps([grant.to_dict() for grant in session.sharing_grants]),
                    self._ts(session.ended_at),
                    to_timestamp(now),
                    session.id,
                    session.version,
                    *_OPEN
                )
            )

            if cursor.rowcount == 0:
                current = conn.execute(
                    "SELECT status, version FROM safety_sessions WHERE id = ?",
                    (session.id,)
                ).fetchone()
                if current is None:
                    raise SessionNotFound(f"Session {session.id} not found")
                if SessionStatus(current['status']).is_terminal:
                    raise SessionClosed(session.id, current['status'])
                raise StaleVersion(
                    f"Session {session.id} is at version {current['version']}, expected {session.version}"
                )

        session.version += 1
        return session

    # Check-ins

    def get_check_in(self, check_in_id: str) -> Optional[CheckIn]:
        rows = self.db.execute_query(
            "SELECT * FROM check_ins WHERE id = ?",
            (check_in_id,)
        )
        return self._row_to_check_in(rows[0]) if rows else None

    def get_pending_check_in(self, session_id: str) -> Optional[CheckIn]:
        rows = self.db.execute_query(
            "SELECT * FROM check_ins WHERE session_id = ? AND response = ?",
            (session_id, CheckInResponse.PENDING.value)
        )
        return self._row_to_check_in(rows[0]) if rows else None

    def list_check_ins(self, session_id: str) -> List[CheckIn]:
        rows = self.db.execute_query(
            "SELECT * FROM check_ins WHERE session_id = ? ORDER BY scheduled_at",
            (session_id,)
        )
        return [self._row_to_check_in(row) for row in rows]

    # Processed transitions

    def claim_transition(self, session_id: str, transition_id: str, now: datetime) -> bool:
        """Record a transition as processed; False if it already was"""
        rows = self.db.execute_update(
            "INSERT OR IGNORE INTO processed_events (session_id, transition_id, processed_at) VALUES (?, ?, ?)",
            (session_id, transition_id, to_timestamp(now))
        )
        return rows == 1

    def release_transition(self, session_id: str, transition_id: str) -> None:
        """Forget a claimed transition so it can be processed again"""
        self.db.execute_update(
            "DELETE FROM processed_events WHERE session_id = ? AND transition_id = ?",
            (session_id, transition_id)
        )

    # Row conversion

    def _ts(self, value: Optional[datetime]) -> Optional[str]:
        return to_timestamp(value) if value else None

    def _location_json(self, location: Optional[LocationPoint]) -> Optional[str]:
        return json.dumps(location.to_dict()) if location else None

    def _parse_location(self, raw: Optional[str]) -> Optional[LocationPoint]:
        return LocationPoint.from_dict(json.loads(raw)) if raw else None

    def _row_to_session(self, row) -> SafetySession:
        max_points = row['max_history_points']
        history = BoundedHistory(
            max_points,
            (LocationPoint.from_dict(item) for item in json.loads(row['location_history'] or '[]'))
        )

        return SafetySession(
            id=row['id'],
            owner_id=row['owner_id'],
            mode=SessionMode(row['mode']),
            destination=row['destination'],
            status=SessionStatus(row['status']),
            started_at=from_timestamp(row['started_at']),
            expires_at=from_timestamp(row['expires_at']),
            check_in_interval_seconds=row['check_in_interval_seconds'],
            last_check_in_at=from_timestamp(row['last_check_in_at']),
            next_check_in_at=from_timestamp(row['next_check_in_at']),
            current_location=self._parse_location(row['current_location']),
            location_history=history,
            max_history_points=max_points,
            sharing_grants=[SharingGrant.from_dict(item) for item in json.loads(row['sharing_grants'] or '[]')],
            ended_at=from_timestamp(row['ended_at']),
            version=row['version']
        )

    def _row_to_check_in(self, row) -> CheckIn:
        return CheckIn(
            id=row['id'],
            session_id=row['session_id'],
            scheduled_at=from_timestamp(row['scheduled_at']),
            responded_at=from_timestamp(row['responded_at']),
            response=CheckInResponse(row['response']),
            location=self._parse_location(row['location'])
        )
