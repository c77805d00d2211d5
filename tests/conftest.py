"""Shared test fixtures for the sessionbridge test suite.

Provides a scripted fake execution adapter so the broker can be tested
without spawning shells or PowerShell engines.
"""

from __future__ import annotations

import asyncio

import pytest

from sessionbridge.adapters.base import AdapterError, ExecutionAdapter
from sessionbridge.broker.executor import CommandExecutor
from sessionbridge.broker.registry import SessionRegistry
from sessionbridge.domain.models import Credentials, SessionKind


class FakeAdapter(ExecutionAdapter):
    """Adapter with a tiny scripted command language.

    - ``sleep <seconds>`` waits, then returns ``slept <seconds>``
    - ``fail <message>`` raises AdapterError(message)
    - ``echo <text>`` returns ``<text>``
    - anything else returns ``ran: <command>``
    """

    def __init__(self, kind: SessionKind, target: str, credentials: Credentials | None) -> None:
        super().__init__()
        self.kind = kind
        self.target = target
        self.credentials = credentials
        self.start_error: Exception | None = None
        self.dispose_error: Exception | None = None
        self.started = False
        self.disposed = False
        self.interrupts = 0
        self.calls: list[str] = []

    @property
    def is_alive(self) -> bool:
        return self.started and not self.disposed

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def run(self, command: str) -> str:
        self.calls.append(command)
        verb, _, arg = command.partition(" ")
        if verb == "sleep":
            await asyncio.sleep(float(arg))
            return f"slept {arg}"
        if verb == "fail":
            raise AdapterError(arg or "boom", adapter="fake")
        if verb == "echo":
            return arg
        return f"ran: {command}"

    async def interrupt(self) -> None:
        self.interrupts += 1

    async def dispose(self) -> None:
        self.disposed = True
        if self.dispose_error is not None:
            raise self.dispose_error


class FakeAdapterFactory:
    """Records every adapter it builds; can be told to make starts fail."""

    def __init__(self) -> None:
        self.created: list[FakeAdapter] = []
        self.start_error: Exception | None = None

    def __call__(
        self, kind: SessionKind, target: str, credentials: Credentials | None
    ) -> FakeAdapter:
        adapter = FakeAdapter(kind, target, credentials)
        adapter.start_error = self.start_error
        self.created.append(adapter)
        return adapter


# ---------------------------------------------------------------------------
# Broker Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def adapter_factory() -> FakeAdapterFactory:
    return FakeAdapterFactory()


@pytest.fixture
def registry(adapter_factory: FakeAdapterFactory) -> SessionRegistry:
    """A registry backed by fake adapters."""
    return SessionRegistry(adapter_factory, default_local_target="/bin/sh")


@pytest.fixture
def executor(registry: SessionRegistry) -> CommandExecutor:
    return CommandExecutor(registry, default_timeout=5.0)
