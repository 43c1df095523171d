"""
Safety session data models for CampusGuard

Defines the monitored session, its check-in prompts, sharing grants and
the bounded location history they carry.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, Generic, Iterable, Iterator, List, Optional, TypeVar
import uuid

from ..core.clock import from_timestamp, to_timestamp


T = TypeVar('T')


class SessionMode(Enum):
    """Kind of monitored session"""
    JOURNEY = "journey"
    LIVE_SHARE = "live_share"


class SessionStatus(Enum):
    """Safety session status"""
    ACTIVE = "active"
    CHECK_IN_DUE = "check_in_due"
    EMERGENCY = "emergency"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self not in OPEN_STATUSES


OPEN_STATUSES = frozenset({SessionStatus.ACTIVE, SessionStatus.CHECK_IN_DUE})


class CheckInResponse(Enum):
    """Check-in response state"""
    PENDING = "pending"
    SAFE = "safe"
    UNSAFE = "unsafe"
    TIMED_OUT = "timed_out"


class BoundedHistory(Generic[T]):
    """
    Fixed-capacity ordered history; appending beyond capacity evicts the
    oldest entry.
    """

    def __init__(self, capacity: int, items: Optional[Iterable[T]] = None):
        if capacity < 1:
            raise ValueError(f"History capacity must be at least 1, got {capacity}")
        self._items: Deque[T] = deque(items or (), maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._items.maxlen

    def append(self, item: T) -> None:
        self._items.append(item)

    def latest(self) -> Optional[T]:
        return self._items[-1] if self._items else None

    def resize(self, capacity: int) -> None:
        """Change capacity, keeping the newest entries"""
        if capacity < 1:
            raise ValueError(f"History capacity must be at least 1, got {capacity}")
        self._items = deque(self._items, maxlen=capacity)

    def to_list(self) -> List[T]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    def __repr__(self) -> str:
        return f"BoundedHistory(capacity={self.capacity}, size={len(self)})"


@dataclass
class LocationPoint:
    """A single reported position"""
    latitude: float
    longitude: float
    timestamp: datetime
    accuracy: Optional[float] = None
    address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'accuracy': self.accuracy,
            'address': self.address,
            'timestamp': to_timestamp(self.timestamp)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LocationPoint':
        return cls(
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            timestamp=from_timestamp(data['timestamp']),
            accuracy=data.get('accuracy'),
            address=data.get('address')
        )


@dataclass
class SharingGrant:
    """Time-bounded permission for one recipient to follow a session"""
    recipient_id: str
    token: str
    expires_at: datetime
    created_at: datetime

    def is_valid(self, now: datetime) -> bool:
        """Expired grants stay on the session as inert tombstones"""
        return now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'recipient_id': self.recipient_id,
            'token': self.token,
            'expires_at': to_timestamp(self.expires_at),
            'created_at': to_timestamp(self.created_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SharingGrant':
        return cls(
            recipient_id=data['recipient_id'],
            token=data['token'],
            expires_at=from_timestamp(data['expires_at']),
            created_at=from_timestamp(data['created_at'])
        )


@dataclass
class SafetySession:
    """Monitored journey or live-location share"""
    owner_id: str
    started_at: datetime
    expires_at: datetime
    max_history_points: int = 100
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    mode: SessionMode = SessionMode.JOURNEY
    destination: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    check_in_interval_seconds: Optional[int] = None
    last_check_in_at: Optional[datetime] = None
    next_check_in_at: Optional[datetime] = None
    current_location: Optional[LocationPoint] = None
    location_history: BoundedHistory = None
    sharing_grants: List[SharingGrant] = field(default_factory=list)
    ended_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        if self.location_history is None:
            self.location_history = BoundedHistory(self.max_history_points)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def has_check_ins(self) -> bool:
        return self.check_in_interval_seconds is not None

    def record_location(self, point: LocationPoint) -> None:
        """Make point the current location and append it to the history"""
        self.current_location = point
        self.location_history.append(point)

    def reschedule(self, now: datetime) -> None:
        """Record a safe check-in at now and schedule the next prompt"""
        self.status = SessionStatus.ACTIVE
        self.last_check_in_at = now
        if self.has_check_ins:
            self.next_check_in_at = now + timedelta(seconds=self.check_in_interval_seconds)

    def close(self, status: SessionStatus, now: datetime) -> None:
        """Move to a terminal status; no further check-ins are scheduled"""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        self.status = status
        self.ended_at = now
        self.next_check_in_at = None

    def set_max_history_points(self, max_points: int) -> None:
        self.location_history.resize(max_points)
        self.max_history_points = max_points

    def valid_grants(self, now: datetime) -> List[SharingGrant]:
        """Grants whose token has not expired, evaluated at call time"""
        return [grant for grant in self.sharing_grants if grant.is_valid(now)]

    def find_grant(self, token: str) -> Optional[SharingGrant]:
        for grant in self.sharing_grants:
            if grant.token == token:
                return grant
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'mode': self.mode.value,
            'destination': self.destination,
            'status': self.status.value,
            'started_at': to_timestamp(self.started_at),
            'expires_at': to_timestamp(self.expires_at),
            'check_in_interval_seconds': self.check_in_interval_seconds,
            'last_check_in_at': to_timestamp(self.last_check_in_at) if self.last_check_in_at else None,
            'next_check_in_at': to_timestamp(self.next_check_in_at) if self.next_check_in_at else None,
            'current_location': self.current_location.to_dict() if self.current_location else None,
            'location_history': [point.to_dict() for point in self.location_history],
            'max_history_points': self.max_history_points,
            'sharing_grants': [grant.to_dict() for grant in self.sharing_grants],
            'ended_at': to_timestamp(self.ended_at) if self.ended_at else None,
            'version': self.version
        }


@dataclass
class CheckIn:
    """One scheduled safety prompt; its response is written exactly once"""
    session_id: str
    scheduled_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    response: CheckInResponse = CheckInResponse.PENDING
    responded_at: Optional[datetime] = None
    location: Optional[LocationPoint] = None

    @property
    def is_pending(self) -> bool:
        return self.response == CheckInResponse.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'scheduled_at': to_timestamp(self.scheduled_at),
            'responded_at': to_timestamp(self.responded_at) if self.responded_at else None,
            'response': self.response.value,
            'location': self.location.to_dict() if self.location else None
        }
