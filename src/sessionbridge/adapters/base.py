"""Abstract base class for execution adapters.

An adapter is the capability a session uses to run commands: a local
interactive shell on a pty, or a scripting engine that may be connected
to a remote host. The broker only ever talks to this interface, so the
registry and executor do not care which kind of context they drive.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable

logger = logging.getLogger(__name__)

OutputListener = Callable[[str], None]
ExitListener = Callable[[int], None]


class ExecutionAdapter(ABC):
    """Abstract interface for a session's execution context.

    Lifecycle: construct, ``bind()`` listeners, ``start()``, any number of
    ``run()`` calls (one at a time), then ``dispose()``.

    Example usage::

        async with LocalShellAdapter("/bin/bash") as shell:
            output = await shell.run("echo hi")
    """

    #: True when the adapter pushes everything it reads to the output
    #: listener itself (a pty shell). False when only ``run()`` results
    #: carry output, in which case the executor forwards them.
    streams_output: bool = False

    def __init__(self) -> None:
        self._on_output: OutputListener | None = None
        self._on_exit: ExitListener | None = None

    def bind(
        self,
        on_output: OutputListener | None = None,
        on_exit: ExitListener | None = None,
    ) -> None:
        """Attach listeners for streamed output and process exit."""
        self._on_output = on_output
        self._on_exit = on_exit

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """Whether the underlying process or engine is usable."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Spawn the process and perform any connection handshake.

        Raises:
            SpawnError: If the process cannot be started.
            HandshakeError: If the remote connection cannot be set up.
        """
        ...

    @abstractmethod
    async def run(self, command: str) -> str:
        """Execute ``command`` and return its output.

        Raises:
            AdapterError: If the engine reports a failure.
        """
        ...

    @abstractmethod
    async def interrupt(self) -> None:
        """Best-effort interruption of whatever is running."""
        ...

    @abstractmethod
    async def dispose(self) -> None:
        """Release the process. Safe to call more than once."""
        ...

    async def send_input(self, data: str) -> None:
        """Write raw keystrokes. Only interactive adapters support this."""
        raise AdapterError(
            f"{type(self).__name__} does not accept raw input", adapter=type(self).__name__
        )

    def _emit_output(self, text: str) -> None:
        if self._on_output is not None and text:
            self._on_output(text)

    def _emit_exit(self, code: int) -> None:
        if self._on_exit is not None:
            self._on_exit(code)

    async def __aenter__(self) -> ExecutionAdapter:
        await self.start()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        await self.dispose()


class AdapterError(Exception):
    """Raised when the execution engine reports a failure."""

    status_code = 500

    def __init__(self, message: str, adapter: str = "") -> None:
        super().__init__(message)
        self.adapter = adapter


class SpawnError(AdapterError):
    """Raised when a local process or engine fails to start."""


class HandshakeError(AdapterError):
    """Raised when a remote connection cannot be established."""
