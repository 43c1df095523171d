"""
Notification job persistence
"""

import json
import logging
from typing import List, Optional

from ...core.clock import from_timestamp, to_timestamp
from ...core.database import DatabaseManager
from ...models.notification import (
    ChannelOutcome, ChannelResult, NotificationChannel, NotificationJob, NotificationPayload
)


class NotificationJobStore:
    """Stores fan-out jobs and their per-channel results"""

    def __init__(self, db: DatabaseManager):
        self.logger = logging.getLogger(__name__)
        self.db = db

    def save(self, job: NotificationJob) -> NotificationJob:
        self.db.execute_update(
            """INSERT INTO notification_jobs
               (id, recipient_id, session_id, alert_id, event_key, payload, channels,
                channel_results, created_at, completed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                job.id,
                job.recipient_id,
                job.session_id,
                job.alert_id,
                job.event_key,
                json.dumps(job.payload.to_dict()),
                json.dumps([channel.value for channel in job.channels]),
                self._results_json(job),
                to_timestamp(job.created_at),
                to_timestamp(job.completed_at) if job.completed_at else None
            )
        )
        return job

    def update_results(self, job: NotificationJob) -> None:
        """Write back channel results once delivery has finished"""
        self.db.execute_update(
            "UPDATE notification_jobs SET channel_results = ?, completed_at = ? WHERE id = ?",
            (
                self._results_json(job),
                to_timestamp(job.completed_at) if job.completed_at else None,
                job.id
            )
        )

    def get(self, job_id: str) -> Optional[NotificationJob]:
        rows = self.db.execute_query("SELECT * FROM notification_jobs WHERE id = ?", (job_id,))
        return self._row_to_job(rows[0]) if rows else None

    def list_for_session(self, session_id: str) -> List[NotificationJob]:
        rows = self.db.execute_query(
            "SELECT * FROM notification_jobs WHERE session_id = ? ORDER BY created_at, recipient_id",
            (session_id,)
        )
        return [self._row_to_job(row) for row in rows]

    def list_for_alert(self, alert_id: str) -> List[NotificationJob]:
        rows = self.db.execute_query(
            "SELECT * FROM notification_jobs WHERE alert_id = ? ORDER BY created_at, recipient_id",
            (alert_id,)
        )
        return [self._row_to_job(row) for row in rows]

    def list_failed(self, limit: int = 50) -> List[NotificationJob]:
        """Completed jobs with at least one failed channel, newest first"""
        rows = self.db.execute_query(
            """SELECT * FROM notification_jobs
               WHERE completed_at IS NOT NULL AND channel_results LIKE ?
               ORDER BY completed_at DESC LIMIT ?""",
            (f'%"outcome": "{ChannelOutcome.FAILED.value}"%', limit)
        )
        return [self._row_to_job(row) for row in rows]

    def _results_json(self, job: NotificationJob) -> str:
        return json.dumps({
            channel.value: result.to_dict()
            for channel, result in job.channel_results.items()
        })

    def _row_to_job(self, row) -> NotificationJob:
        results = json.loads(row['channel_results'] or '{}')
        return NotificationJob(
            id=row['id'],
            recipient_id=row['recipient_id'],
            session_id=row['session_id'],
            alert_id=row['alert_id'],
            event_key=row['event_key'],
            payload=NotificationPayload.from_dict(json.loads(row['payload'])),
            channels=[NotificationChannel(value) for value in json.loads(row['channels'])],
            channel_results={
                NotificationChannel(channel): ChannelResult.from_dict(result)
                for channel, result in results.items()
            },
            created_at=from_timestamp(row['created_at']),
            completed_at=from_timestamp(row['completed_at'])
        )
