"""
Notification transports

One adapter per delivery channel. Each adapter returns True when the
provider accepted the message and False (or raises TransportError) when it
did not; retry policy belongs to the dispatcher.
"""

import asyncio
import json
import logging
import smtplib
import ssl
import uuid
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import aiohttp

from ...core.clock import Clock, to_timestamp
from ...core.database import DatabaseManager
from ...models.notification import NotificationChannel, NotificationPayload, NotificationPriority
from ..realtime.publisher import RealtimePublisher, user_topic


class TransportError(Exception):
    """A transport could not hand the message to its provider"""
    pass


class ChannelTransport(ABC):
    """Delivery adapter for a single notification channel"""

    channel: NotificationChannel

    @abstractmethod
    async def deliver(self, address: str, payload: NotificationPayload) -> bool:
        """Deliver payload to address on this channel"""

    async def close(self):
        """Release any held connections"""
        pass


class PushTransport(ChannelTransport):
    """Expo push notifications over HTTP"""

    channel = NotificationChannel.PUSH

    def __init__(self, endpoint: str, timeout_seconds: float = 10, access_token: Optional[str] = None):
        self.logger = logging.getLogger(__name__)
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.access_token = access_token
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self):
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)

    async def send_push(self, recipient_token: str, payload: NotificationPayload) -> bool:
        await self._ensure_session()

        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json"
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        message = {
            "to": recipient_token,
            "title": payload.title,
            "body": payload.message,
            "data": {"type": payload.type.value, **payload.data},
            "priority": "high" if payload.priority in (NotificationPriority.HIGH, NotificationPriority.URGENT) else "default",
            "sound": "default"
        }

        try:
            async with self.session.post(self.endpoint, headers=headers, json=message) as response:
                if response.status != 200:
                    error_text = await response.text()
                    self.logger.warning(f"Push API error {response.status}: {error_text}")
                    return False

                data = await response.json()
                ticket = data.get("data") or {}
                if isinstance(ticket, list):
                    ticket = ticket[0] if ticket else {}
                if ticket.get("status") == "error":
                    self.logger.warning(f"Push rejected for {recipient_token}: {ticket.get('message')}")
                    return False
                return True

        except aiohttp.ClientError as e:
            raise TransportError(f"Push request failed: {e}")

    async def deliver(self, address: str, payload: NotificationPayload) -> bool:
        return await self.send_push(address, payload)

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()


class EmailTransport(ChannelTransport):
    """SMTP email; the blocking client runs in a worker thread"""

    channel = NotificationChannel.EMAIL

    def __init__(self, config: Dict[str, Any]):
        self.logger = logging.getLogger(__name__)
        self.smtp_host = config['smtp_host']
        self.smtp_port = config.get('smtp_port', 587)
        self.smtp_use_ssl = config.get('smtp_use_ssl', False)
        self.smtp_use_tls = config.get('smtp_use_tls', True)
        self.smtp_username = config.get('smtp_username')
        self.smtp_password = config.get('smtp_password')
        self.from_address = config.get('from_address', 'noreply@campusguard.local')
        self.timeout = config.get('timeout', 30)

    def _send_sync(self, address: str, subject: str, body: str) -> bool:
        mime_message = MIMEText(body, 'plain', 'utf-8')
        mime_message['Subject'] = subject
        mime_message['From'] = self.from_address
        mime_message['To'] = address

        context = ssl.create_default_context()
        if self.smtp_use_ssl:
            server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=self.timeout, context=context)
        else:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)

        try:
            if self.smtp_use_tls and not self.smtp_use_ssl:
                server.starttls(context=context)
            if self.smtp_username and self.smtp_password:
                server.login(self.smtp_username, self.smtp_password)
            refused = server.sendmail(self.from_address, [address], mime_message.as_string())
        finally:
            try:
                server.quit()
            except smtplib.SMTPException as e:
                self.logger.debug(f"Error during SMTP disconnect: {e}")

        return not refused

    async def send_email(self, address: str, subject: str, body: str) -> bool:
        try:
            return await asyncio.to_thread(self._send_sync, address, subject, body)
        except smtplib.SMTPRecipientsRefused as e:
            self.logger.warning(f"Recipient refused for {address}: {e}")
            return False
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(f"SMTP delivery failed: {e}")

    async def deliver(self, address: str, payload: NotificationPayload) -> bool:
        return await self.send_email(address, payload.title, payload.message)


class SMSTransport(ChannelTransport):
    """Twilio SMS over the REST API"""

    channel = NotificationChannel.SMS

    API_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

    def __init__(self, account_sid: str, auth_token: str, from_number: str, timeout_seconds: float = 10):
        self.logger = logging.getLogger(__name__)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout_seconds = timeout_seconds
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self):
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            auth = aiohttp.BasicAuth(self.account_sid, self.auth_token)
            self.session = aiohttp.ClientSession(timeout=timeout, auth=auth)

    async def send_sms(self, phone_number: str, text: str) -> bool:
        await self._ensure_session()

        form = {"To": phone_number, "From": self.from_number, "Body": text}
        try:
            async with self.session.post(self.API_URL.format(sid=self.account_sid), data=form) as response:
                if response.status in (200, 201):
                    return True
                error_text = await response.text()
                self.logger.warning(f"SMS API error {response.status}: {error_text}")
                return False
        except aiohttp.ClientError as e:
            raise TransportError(f"SMS request failed: {e}")

    async def deliver(self, address: str, payload: NotificationPayload) -> bool:
        return await self.send_sms(address, f"{payload.title}: {payload.message}")

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()


class InAppTransport(ChannelTransport):
    """Stores the notification for the recipient and publishes it live"""

    channel = NotificationChannel.IN_APP

    def __init__(self, db: DatabaseManager, publisher: RealtimePublisher, clock: Clock):
        self.logger = logging.getLogger(__name__)
        self.db = db
        self.publisher = publisher
        self.clock = clock

    async def deliver(self, address: str, payload: NotificationPayload) -> bool:
        notification_id = str(uuid.uuid4())
        created_at = to_timestamp(self.clock.now())

        self.db.execute_update(
            """INSERT INTO in_app_notifications
               (id, recipient_id, title, message, type, priority, data, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                notification_id, address, payload.title, payload.message,
                payload.type.value, payload.priority.value,
                json.dumps(payload.data), created_at
            )
        )

        await self.publisher.publish(user_topic(address), {
            'type': 'notification',
            'id': notification_id,
            'created_at': created_at,
            'notification': payload.to_dict()
        })
        return True
