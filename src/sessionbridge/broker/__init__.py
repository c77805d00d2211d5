"""Session/command concurrency broker.

Public API:
    SessionRegistry -- id -> Session mapping with create/close lifecycle
    CommandExecutor -- per-session exclusive command execution
    OutputBroadcaster, Observer -- output fan-out with backlog replay
    IdleReaper -- background eviction of unused sessions
"""

from sessionbridge.broker.broadcast import Observer, OutputBroadcaster
from sessionbridge.broker.errors import (
    BrokerError,
    NoCommandRunning,
    SessionBusy,
    SessionNotFound,
)
from sessionbridge.broker.executor import CommandExecutor
from sessionbridge.broker.reaper import IdleReaper
from sessionbridge.broker.registry import Session, SessionRegistry

__all__ = [
    "BrokerError",
    "CommandExecutor",
    "IdleReaper",
    "NoCommandRunning",
    "Observer",
    "OutputBroadcaster",
    "Session",
    "SessionBusy",
    "SessionNotFound",
    "SessionRegistry",
]
