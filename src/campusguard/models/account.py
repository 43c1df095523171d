"""
Account view used by the safety core

Accounts are owned by the identity service; CampusGuard only reads role and
reachability.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from .notification import NotificationChannel


@dataclass
class Account:
    """Read-only identity record"""
    id: str
    name: str
    role: str = "student"
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None
    active: bool = True

    def is_staff(self, staff_roles: Iterable[str]) -> bool:
        return self.role in set(staff_roles)

    def address_for(self, channel: NotificationChannel) -> Optional[str]:
        """Delivery address for a channel, or None if unreachable on it"""
        if channel == NotificationChannel.PUSH:
            return self.push_token
        if channel == NotificationChannel.EMAIL:
            return self.email
        if channel == NotificationChannel.SMS:
            return self.phone
        if channel == NotificationChannel.IN_APP:
            return self.id
        return None

    def is_reachable(self, channel: NotificationChannel) -> bool:
        return bool(self.address_for(channel))
