"""Execution adapters for sessionbridge.

Public API:
    ExecutionAdapter -- Abstract base class
    LocalShellAdapter -- Interactive shell on a pty
    PowerShellAdapter -- PowerShell engine, optionally remoting to a host
    create_adapter -- Factory used by the session registry
"""

from __future__ import annotations

from sessionbridge.adapters.base import (
    AdapterError,
    ExecutionAdapter,
    HandshakeError,
    SpawnError,
)
from sessionbridge.config.settings import Settings
from sessionbridge.domain.models import Credentials, SessionKind

__all__ = [
    "AdapterError",
    "ExecutionAdapter",
    "HandshakeError",
    "LocalShellAdapter",
    "PowerShellAdapter",
    "SpawnError",
    "create_adapter",
]


def create_adapter(
    settings: Settings,
    kind: SessionKind,
    target: str,
    credentials: Credentials | None = None,
) -> ExecutionAdapter:
    """Build an unstarted adapter for a session of the given kind."""
    if kind is SessionKind.LOCAL:
        from sessionbridge.adapters.local import LocalShellAdapter

        return LocalShellAdapter(
            shell_command=target,
            rows=settings.local.rows,
            cols=settings.local.cols,
        )
    from sessionbridge.adapters.powershell import PowerShellAdapter

    return PowerShellAdapter(
        target=target,
        credentials=credentials,
        engine_command=settings.remote.engine_command,
        engine_args=list(settings.remote.engine_args),
        dispose_timeout=settings.remote.dispose_timeout,
    )


def __getattr__(name: str) -> type:
    """Lazy import for concrete implementations that need POSIX-only modules."""
    if name == "LocalShellAdapter":
        from sessionbridge.adapters.local import LocalShellAdapter
        return LocalShellAdapter
    if name == "PowerShellAdapter":
        from sessionbridge.adapters.powershell import PowerShellAdapter
        return PowerShellAdapter
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
