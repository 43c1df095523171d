"""
SOS alert persistence
"""

import json
import logging
from typing import Iterable, List, Optional, Tuple

from ...core.clock import from_timestamp, to_timestamp
from ...core.database import DatabaseManager
from ...models.alert import AlertSeverity, AlertStatus, AlertTrigger, SOSAlert
from ...models.safety import LocationPoint


class AlertStore:
    """Database access for SOS alerts"""

    def __init__(self, db: DatabaseManager):
        self.logger = logging.getLogger(__name__)
        self.db = db

    def insert(self, alert: SOSAlert) -> SOSAlert:
        self.db.execute_update(
            """INSERT INTO sos_alerts
               (id, owner_id, session_id, message, location, severity, triggered_by,
                status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                alert.id,
                alert.owner_id,
                alert.session_id,
                alert.message,
                json.dumps(alert.location.to_dict()) if alert.location else None,
                alert.severity.value,
                alert.triggered_by.value,
                alert.status.value,
                to_timestamp(alert.created_at)
            )
        )
        return alert

    def delete(self, alert_id: str) -> None:
        self.db.execute_update("DELETE FROM sos_alerts WHERE id = ?", (alert_id,))

    def get(self, alert_id: str) -> Optional[SOSAlert]:
        rows = self.db.execute_query("SELECT * FROM sos_alerts WHERE id = ?", (alert_id,))
        return self._row_to_alert(rows[0]) if rows else None

    def compare_and_set(self, alert: SOSAlert, expected: Iterable[AlertStatus]) -> bool:
        """
        Write the alert's lifecycle fields only if the stored status is one of
        the expected statuses.

        Returns:
            True if the row was updated
        """
        expected_values = [status.value for status in expected]
        placeholders = ', '.join('?' for _ in expected_values)
        rows = self.db.execute_update(
            f"""UPDATE sos_alerts
                SET status = ?, acknowledged_by = ?, acknowledged_at = ?,
                    resolved_by = ?, resolved_at = ?, resolution = ?
                WHERE id = ? AND status IN ({placeholders})""",
            (
                alert.status.value,
                alert.acknowledged_by,
                to_timestamp(alert.acknowledged_at) if alert.acknowledged_at else None,
                alert.resolved_by,
                to_timestamp(alert.resolved_at) if alert.resolved_at else None,
                alert.resolution,
                alert.id,
                *expected_values
            )
        )
        return rows == 1

    def list_alerts(self, status: Optional[AlertStatus] = None,
                    limit: int = 20, offset: int = 0) -> Tuple[List[SOSAlert], int]:
        """Alerts newest first, with the total count for pagination"""
        where = "WHERE status = ?" if status else ""
        params: tuple = (status.value,) if status else ()

        total = self.db.execute_query(f"SELECT COUNT(*) FROM sos_alerts {where}", params)[0][0]
        rows = self.db.execute_query(
            f"SELECT * FROM sos_alerts {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            params + (limit, offset)
        )
        return [self._row_to_alert(row) for row in rows], total

    def list_for_session(self, session_id: str) -> List[SOSAlert]:
        rows = self.db.execute_query(
            "SELECT * FROM sos_alerts WHERE session_id = ? ORDER BY created_at",
            (session_id,)
        )
        return [self._row_to_alert(row) for row in rows]

    def _row_to_alert(self, row) -> SOSAlert:
        return SOSAlert(
            id=row['id'],
            owner_id=row['owner_id'],
            session_id=row['session_id'],
            message=row['message'],
            location=LocationPoint.from_dict(json.loads(row['location'])) if row['location'] else None,
            severity=AlertSeverity(row['severity']),
            triggered_by=AlertTrigger(row['triggered_by']),
            status=AlertStatus(row['status']),
            created_at=from_timestamp(row['created_at']),
            acknowledged_by=row['acknowledged_by'],
            acknowledged_at=from_timestamp(row['acknowledged_at']),
            resolved_by=row['resolved_by'],
            resolved_at=from_timestamp(row['resolved_at']),
            resolution=row['resolution']
        )
