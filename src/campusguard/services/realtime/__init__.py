"""
Real-time publishing of locations and events
"""

from .broadcaster import LiveLocationBroadcaster, QueuedUpdate, SubscriberQueue
from .publisher import RealtimePublisher, SECURITY_TOPIC, user_topic

__all__ = [
    'LiveLocationBroadcaster', 'QueuedUpdate', 'SubscriberQueue',
    'RealtimePublisher', 'SECURITY_TOPIC', 'user_topic'
]
