"""
SOS alert data model
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from ..core.clock import to_timestamp
from .safety import LocationPoint


class AlertStatus(Enum):
    """SOS alert status; transitions only move forward"""
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AlertTrigger(Enum):
    """What raised the alert"""
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    GUARDIAN = "guardian"  # escalated safety session


@dataclass
class SOSAlert:
    """Emergency record handled by staff"""
    owner_id: str
    created_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    location: Optional[LocationPoint] = None
    message: str = "Emergency SOS activated"
    severity: AlertSeverity = AlertSeverity.HIGH
    triggered_by: AlertTrigger = AlertTrigger.MANUAL
    status: AlertStatus = AlertStatus.ACTIVE
    session_id: Optional[str] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    def is_open(self) -> bool:
        return self.status != AlertStatus.RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'session_id': self.session_id,
            'message': self.message,
            'location': self.location.to_dict() if self.location else None,
            'severity': self.severity.value,
            'triggered_by': self.triggered_by.value,
            'status': self.status.value,
            'created_at': to_timestamp(self.created_at),
            'acknowledged_by': self.acknowledged_by,
            'acknowledged_at': to_timestamp(self.acknowledged_at) if self.acknowledged_at else None,
            'resolved_by': self.resolved_by,
            'resolved_at': to_timestamp(self.resolved_at) if self.resolved_at else None,
            'resolution': self.resolution
        }
