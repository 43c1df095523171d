"""
Data models for CampusGuard
"""

from .safety import (
    SessionMode, SessionStatus, CheckInResponse, BoundedHistory,
    LocationPoint, SharingGrant, SafetySession, CheckIn, OPEN_STATUSES
)
from .alert import AlertStatus, AlertSeverity, AlertTrigger, SOSAlert
from .notification import (
    NotificationChannel, ChannelOutcome, NotificationPriority, NotificationType,
    NotificationPayload, ChannelResult, NotificationJob
)
from .account import Account

__all__ = [
    'SessionMode', 'SessionStatus', 'CheckInResponse', 'BoundedHistory',
    'LocationPoint', 'SharingGrant', 'SafetySession', 'CheckIn', 'OPEN_STATUSES',
    'AlertStatus', 'AlertSeverity', 'AlertTrigger', 'SOSAlert',
    'NotificationChannel', 'ChannelOutcome', 'NotificationPriority', 'NotificationType',
    'NotificationPayload', 'ChannelResult', 'NotificationJob',
    'Account'
]
