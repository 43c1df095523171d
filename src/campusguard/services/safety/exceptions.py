"""
Safety domain errors

State-machine violations are raised to the caller. Notification failures are
recorded on the job instead; DispatchPartialFailure describes them for staff
views and logs.
"""

from typing import List


class SafetyError(Exception):
    """Base class for safety domain errors"""
    pass


class SessionNotFound(SafetyError):
    pass


class SessionConflict(SafetyError):
    """The owner already has a non-terminal session"""

    def __init__(self, owner_id: str):
        super().__init__(f"Owner {owner_id} already has an active session")
        self.owner_id = owner_id


class NoPendingCheckIn(SafetyError):
    pass


class SessionClosed(SafetyError):
    """The session reached a terminal state and rejects further changes"""

    def __init__(self, session_id: str, status: str):
        super().__init__(f"Session {session_id} is closed ({status})")
        self.session_id = session_id
        self.status = status


class StaleVersion(SafetyError):
    """Another writer committed a change to the record first"""
    pass


class GrantNotFound(SafetyError):
    pass


class GrantExpired(SafetyError):
    pass


class AlertNotFound(SafetyError):
    pass


class InvalidTransition(SafetyError):
    """Requested SOS alert transition is not a forward move"""

    def __init__(self, alert_id: str, current: str, requested: str):
        super().__init__(f"Alert {alert_id} cannot move from {current} to {requested}")
        self.alert_id = alert_id
        self.current = current
        self.requested = requested


class DispatchPartialFailure(SafetyError):
    """One or more channels of a notification job failed"""

    def __init__(self, job_id: str, recipient_id: str, failed_channels: List[str]):
        super().__init__(
            f"Notification {job_id} to {recipient_id} failed on: {', '.join(failed_channels)}"
        )
        self.job_id = job_id
        self.recipient_id = recipient_id
        self.failed_channels = failed_channels
