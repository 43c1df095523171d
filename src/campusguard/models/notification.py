"""
Notification data models for CampusGuard

A NotificationJob is one fan-out request to a single recipient across a set
of channels. Each channel's outcome is recorded independently.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from ..core.clock import from_timestamp, to_timestamp


class NotificationChannel(Enum):
    """Delivery mechanisms"""
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"


class ChannelOutcome(Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationPriority(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationType(Enum):
    CHECK_IN_PROMPT = "check_in_prompt"
    SESSION_UPDATE = "session_update"
    EMERGENCY_ALERT = "emergency_alert"
    SOS_ALERT = "sos_alert"
    SOS_ACKNOWLEDGED = "sos_acknowledged"
    SOS_RESOLVED = "sos_resolved"


@dataclass
class NotificationPayload:
    """Content delivered on every channel of a job"""
    title: str
    message: str
    type: NotificationType
    priority: NotificationPriority = NotificationPriority.NORMAL
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'message': self.message,
            'type': self.type.value,
            'priority': self.priority.value,
            'data': self.data
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationPayload':
        return cls(
            title=data['title'],
            message=data['message'],
            type=NotificationType(data['type']),
            priority=NotificationPriority(data.get('priority', 'normal')),
            data=data.get('data') or {}
        )


@dataclass
class ChannelResult:
    """Outcome of delivering a job on one channel"""
    outcome: ChannelOutcome
    timestamp: datetime
    attempts: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'outcome': self.outcome.value,
            'timestamp': to_timestamp(self.timestamp),
            'attempts': self.attempts,
            'error': self.error
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChannelResult':
        return cls(
            outcome=ChannelOutcome(data['outcome']),
            timestamp=from_timestamp(data['timestamp']),
            attempts=data.get('attempts', 0),
            error=data.get('error')
        )


@dataclass
class NotificationJob:
    """One recipient, one payload, a set of requested channels"""
    recipient_id: str
    payload: NotificationPayload
    channels: List[NotificationChannel]
    created_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    channel_results: Dict[NotificationChannel, ChannelResult] = field(default_factory=dict)
    session_id: Optional[str] = None
    alert_id: Optional[str] = None
    event_key: Optional[str] = None
    completed_at: Optional[datetime] = None

    def outcome_for(self, channel: NotificationChannel) -> Optional[ChannelOutcome]:
        result = self.channel_results.get(channel)
        return result.outcome if result else None

    def failed_channels(self) -> List[NotificationChannel]:
        return [
            channel for channel, result in self.channel_results.items()
            if result.outcome == ChannelOutcome.FAILED
        ]

    @property
    def is_complete(self) -> bool:
        return all(channel in self.channel_results for channel in self.channels)

    def outcomes(self) -> Dict[str, str]:
        """Channel name to outcome name, e.g. {'push': 'failed', 'email': 'sent'}"""
        return {
            channel.value: result.outcome.value
            for channel, result in self.channel_results.items()
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'recipient_id': self.recipient_id,
            'session_id': self.session_id,
            'alert_id': self.alert_id,
            'event_key': self.event_key,
            'payload': self.payload.to_dict(),
            'channels': [channel.value for channel in self.channels],
            'channel_results': {
                channel.value: result.to_dict()
                for channel, result in self.channel_results.items()
            },
            'created_at': to_timestamp(self.created_at),
            'completed_at': to_timestamp(self.completed_at) if self.completed_at else None
        }
