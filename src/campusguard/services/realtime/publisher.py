"""
Real-time publish contract
"""

from abc import ABC, abstractmethod
from typing import Any, Dict


def user_topic(user_id: str) -> str:
    return f"user_{user_id}"


SECURITY_TOPIC = "security"


class RealtimePublisher(ABC):
    """Publishes a JSON-serializable payload to every subscriber of a topic"""

    @abstractmethod
    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        pass
