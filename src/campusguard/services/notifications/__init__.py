"""
Multi-channel notification delivery
"""

from .dispatcher import NotificationDispatcher
from .job_store import NotificationJobStore
from .transports import (
    ChannelTransport, EmailTransport, InAppTransport, PushTransport, SMSTransport, TransportError
)

__all__ = [
    'NotificationDispatcher', 'NotificationJobStore', 'ChannelTransport', 'EmailTransport',
    'InAppTransport', 'PushTransport', 'SMSTransport', 'TransportError'
]
