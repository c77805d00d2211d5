"""Core domain models for the sessionbridge system.

These models represent the data flowing through the broker: the kind of
execution context a session wraps, the commands executed in it, their
outcomes, and the snapshots reported to clients.
"""

from __future__ import annotations

import asyncio
import enum
import time
import uuid

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, SecretStr
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SessionKind(str, enum.Enum):
    """What kind of execution context a session wraps."""

    LOCAL = "local"  # Interactive shell on a local pty
    REMOTE = "remote"  # Scripting engine, optionally remoting to a host


class CommandState(str, enum.Enum):
    """Lifecycle state of a single command."""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {CommandState.COMPLETED, CommandState.TIMED_OUT, CommandState.CANCELLED, CommandState.FAILED}
)

_TRANSITIONS: dict[CommandState, frozenset[CommandState]] = {
    CommandState.CREATED: frozenset({CommandState.RUNNING}),
    CommandState.RUNNING: _TERMINAL_STATES,
}


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class Credentials(BaseModel):
    """Credentials handed to a remote engine for its handshake."""

    model_config = ConfigDict(frozen=True)

    username: str = Field(description="Account name on the remote host")
    password: SecretStr = Field(description="Account password, never logged")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class Command(BaseModel):
    """One exclusive execution request within a session.

    A command refers to its session by id only. Its state moves through
    ``created -> running -> <terminal>`` exactly once; any later attempt
    to resolve it is ignored.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    session_id: str
    text: str
    started_at: float = Field(default_factory=time.time)
    timeout_at: float
    cancel_requested: bool = False
    state: CommandState = CommandState.CREATED

    _cancel_event: asyncio.Event = PrivateAttr(default_factory=asyncio.Event)

    def transition(self, new_state: CommandState) -> bool:
        """Move to ``new_state`` if allowed. Returns False for a no-op."""
        if new_state not in _TRANSITIONS.get(self.state, frozenset()):
            return False
        self.state = new_state
        return True

    def request_cancel(self) -> None:
        self.cancel_requested = True
        self._cancel_event.set()

    async def wait_cancelled(self) -> None:
        await self._cancel_event.wait()


class CommandResult(BaseModel):
    """The terminal outcome of a command, as reported to clients."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    command_id: str
    session_id: str
    label: str
    state: CommandState
    output: str = ""
    error: str | None = None
    elapsed_ms: int = Field(ge=0)
    command_count: int = Field(ge=0)

    @property
    def success(self) -> bool:
        return self.state is CommandState.COMPLETED

    @property
    def timed_out(self) -> bool:
        return self.state is CommandState.TIMED_OUT

    @property
    def cancelled(self) -> bool:
        return self.state is CommandState.CANCELLED

    def to_response(self) -> dict:
        """Flatten into the JSON body used by the HTTP and stream surfaces."""
        body = {
            "success": self.success,
            "sessionId": self.session_id,
            "commandId": self.command_id,
            "label": self.label,
            "state": self.state.value,
            "elapsedTime": self.elapsed_ms,
            "executionTime": self.elapsed_ms,
            "commandCount": self.command_count,
            "timedOut": self.timed_out,
            "cancelled": self.cancelled,
        }
        if self.success:
            body["output"] = self.output
        else:
            body["error"] = self.error or self.state.value
        return body


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class SessionInfo(BaseModel):
    """Point-in-time view of a session with derived metrics."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    session_id: str
    kind: SessionKind
    label: str
    target: str
    created: int = Field(description="Creation time, epoch milliseconds")
    last_used: int = Field(description="Last activity, epoch milliseconds")
    uptime: int = Field(ge=0, description="Milliseconds since creation")
    command_count: int = Field(ge=0)
    running: bool = Field(description="Whether a command is in flight")
    active_command: str | None = Field(default=None, description="Text of the in-flight command")
    observers: int = Field(ge=0, description="Live stream subscribers")
