"""Broker-level errors.

Each error carries the HTTP status code the endpoint reports for it.
Timeouts and cancellations are not errors: they are command outcomes
(see ``CommandState``).
"""

from __future__ import annotations


class BrokerError(Exception):
    """Base class for errors raised by the registry and executor."""

    status_code = 500

    def __init__(self, message: str, session_id: str = "") -> None:
        super().__init__(message)
        self.session_id = session_id


class SessionNotFound(BrokerError):
    """Raised when a session id is unknown."""

    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__("Session not found", session_id=session_id)


class NoCommandRunning(BrokerError):
    """Raised when cancelling a session that is idle."""

    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__("No command running", session_id=session_id)


class SessionBusy(BrokerError):
    """Raised when a command is requested while another is in flight."""

    status_code = 409

    def __init__(self, session_id: str, command: str = "") -> None:
        message = "Session is busy"
        if command:
            message = f"Session is busy running: {command}"
        super().__init__(message, session_id=session_id)
