"""Domain models for sessionbridge.

This package contains the core data structures, enumerations, and value
objects used throughout the broker. All models use Pydantic v2 for
validation and serialization.
"""

from sessionbridge.domain.models import (
    Command,
    CommandResult,
    CommandState,
    Credentials,
    SessionInfo,
    SessionKind,
)

__all__ = [
    "Command",
    "CommandResult",
    "CommandState",
    "Credentials",
    "SessionInfo",
    "SessionKind",
]
