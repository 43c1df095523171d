"""
Global pytest configuration and fixtures for CampusGuard testing.
"""
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest
import yaml

from campusguard.core.clock import Clock
from campusguard.core.config import ConfigurationManager
from campusguard.core.database import DatabaseManager
from campusguard.models.notification import NotificationChannel, NotificationPayload
from campusguard.models.safety import LocationPoint
from campusguard.services.container import ServiceContainer, build_services
from campusguard.services.notifications.transports import ChannelTransport, TransportError
from campusguard.services.realtime.publisher import RealtimePublisher


START_TIME = datetime(2024, 9, 2, 21, 0, tzinfo=timezone.utc)


class ManualClock(Clock):
    """Clock that only moves when told to"""

    def __init__(self, start: datetime = START_TIME):
        self.current = start
        self._monotonic = 0.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float):
        self.current += timedelta(seconds=seconds)
        self._monotonic += seconds


class RecordingTransport(ChannelTransport):
    """Transport that records deliveries and can be told to fail"""

    def __init__(self, channel: NotificationChannel):
        self.channel = channel
        self.fail = False
        self.error: Optional[str] = None
        self.attempts = 0
        self.deliveries: List[Tuple[str, NotificationPayload]] = []

    async def deliver(self, address: str, payload: NotificationPayload) -> bool:
        self.attempts += 1
        if self.error:
            raise TransportError(self.error)
        if self.fail:
            return False
        self.deliveries.append((address, payload))
        return True

    def addresses(self) -> List[str]:
        return [address for address, _ in self.deliveries]


class RecordingPublisher(RealtimePublisher):
    """Collects published payloads per topic"""

    def __init__(self):
        self.messages: List[Tuple[str, Dict[str, Any]]] = []

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        self.messages.append((topic, payload))

    def for_topic(self, topic: str, message_type: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            payload for published_topic, payload in self.messages
            if published_topic == topic and (message_type is None or payload.get('type') == message_type)
        ]

    def topics(self, message_type: Optional[str] = None) -> List[str]:
        return [
            topic for topic, payload in self.messages
            if message_type is None or payload.get('type') == message_type
        ]


# (id, name, role, email, phone, push_token, active)
ACCOUNTS = [
    ("alice", "Alice Student", "student", "alice@campus.edu", "+15550000001", "ExponentPushToken[alice]", True),
    ("bob", "Bob Friend", "student", "bob@campus.edu", None, "ExponentPushToken[bob]", True),
    ("carol", "Carol Roommate", "student", None, None, "ExponentPushToken[carol]", True),
    ("dave", "Dave Student", "student", "dave@campus.edu", None, None, True),
    ("sam", "Sam Security", "security", "sam@campus.edu", "+15550000009", "ExponentPushToken[sam]", True),
    ("sara", "Sara Staff", "staff", "sara@campus.edu", None, None, True),
    ("ivan", "Ivan Former", "staff", "ivan@campus.edu", None, None, False),
]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def transports():
    return {
        channel: RecordingTransport(channel)
        for channel in (NotificationChannel.PUSH, NotificationChannel.EMAIL, NotificationChannel.SMS)
    }


@pytest.fixture
def config_overrides():
    """Per-test configuration; override this fixture to change settings."""
    return {}


@pytest.fixture
def config(temp_dir, config_overrides):
    """Configuration loaded from a YAML file in a temporary config dir."""
    settings = {
        "database": {"path": str(temp_dir / "data" / "campusguard.db")},
        "sessions": {"grace_seconds": 120, "default_check_in_interval_seconds": 300},
        "notifications": {"max_attempts": 3, "retry_delay_seconds": 0},
        "logging": {"file": None, "console": False},
    }
    for section, values in config_overrides.items():
        settings.setdefault(section, {}).update(values)

    with open(temp_dir / "config.yaml", "w") as f:
        yaml.safe_dump(settings, f)

    manager = ConfigurationManager(str(temp_dir))
    manager.load_config()
    return manager


@pytest.fixture
def db(config):
    """Migrated database with the test accounts."""
    manager = DatabaseManager(config.get("database.path"))
    manager.execute_many(
        """INSERT INTO accounts (id, name, role, email, phone, push_token, active)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        ACCOUNTS
    )
    yield manager
    manager.close()


@pytest.fixture
def services(config, db, clock, publisher, transports) -> ServiceContainer:
    return build_services(config, db, clock, publisher, transports.values())


@pytest.fixture
def settle():
    """Wait for queued notifications and location updates to finish."""

    async def _settle(container: ServiceContainer):
        await container.dispatcher.drain()
        await container.broadcaster.drain()

    return _settle


@pytest.fixture
def location(clock):
    def _location(latitude: float = 40.8075, longitude: float = -73.9626, address: Optional[str] = None):
        return LocationPoint(latitude=latitude, longitude=longitude, timestamp=clock.now(), address=address)

    return _location
