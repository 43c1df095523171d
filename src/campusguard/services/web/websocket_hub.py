"""
WebSocket hub

Real-time transport for the broadcaster and in-app notifications. Clients
subscribe to one topic per connection; publish sends the payload as JSON
text to every connection on the topic.
"""

import json
import logging
from typing import Any, Dict

from fastapi import WebSocket

from ..realtime.publisher import RealtimePublisher


logger = logging.getLogger(__name__)


class WebSocketHub(RealtimePublisher):
    """Manages WebSocket connections grouped by topic"""

    def __init__(self):
        self.topics: Dict[str, Dict[str, WebSocket]] = {}

    async def connect(self, websocket: WebSocket, topic: str, client_id: str):
        """Accept a WebSocket connection and subscribe it to topic"""
        await websocket.accept()
        self.topics.setdefault(topic, {})[client_id] = websocket
        logger.info(f"WebSocket client {client_id} subscribed to {topic}")

    def disconnect(self, topic: str, client_id: str):
        """Remove a WebSocket connection"""
        connections = self.topics.get(topic)
        if connections and client_id in connections:
            del connections[client_id]
            if not connections:
                del self.topics[topic]
            logger.info(f"WebSocket client {client_id} left {topic}")

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        """Send payload to every client on topic"""
        message = json.dumps(payload, default=str)
        disconnected_clients = []

        for client_id, websocket in list(self.topics.get(topic, {}).items()):
            try:
                await websocket.send_text(message)
            except Exception as e:
                logger.error(f"Error publishing to {client_id} on {topic}: {e}")
                disconnected_clients.append(client_id)

        for client_id in disconnected_clients:
            self.disconnect(topic, client_id)

    def subscriber_count(self, topic: str) -> int:
        return len(self.topics.get(topic, {}))
