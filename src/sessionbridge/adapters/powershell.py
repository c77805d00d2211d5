"""PowerShell engine adapter.

Drives a long-lived ``pwsh`` process reading commands from stdin. Each
command is shipped base64-encoded on a single line and followed by a
marker line carrying ``$?``, so the adapter knows where one command's
output ends and whether it succeeded.

When credentials are supplied for a non-local target, ``start()``
performs the remoting handshake (``New-PSSession``) and every command
afterwards runs inside that session via ``Invoke-Command``.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import uuid

from sessionbridge.adapters.base import (
    AdapterError,
    ExecutionAdapter,
    HandshakeError,
    SpawnError,
)
from sessionbridge.domain.models import Credentials

logger = logging.getLogger(__name__)

LOCAL_TARGETS = frozenset({"localhost", "127.0.0.1", "::1", "."})

_MARKER = re.compile(r"\x1e(sb[0-9a-f]+):(True|False)\x1e")


def quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + value.replace("'", "''") + "'"


def _encode(script: str) -> str:
    return base64.b64encode(script.encode("utf-8")).decode("ascii")


class PowerShellAdapter(ExecutionAdapter):
    """Persistent PowerShell engine, optionally bound to a remote host."""

    def __init__(
        self,
        target: str = "localhost",
        credentials: Credentials | None = None,
        engine_command: str = "pwsh",
        engine_args: list[str] | None = None,
        dispose_timeout: float = 5.0,
    ) -> None:
        super().__init__()
        self._target = target
        self._credentials = credentials
        self._engine_command = engine_command
        self._engine_args = engine_args or ["-NoLogo", "-NoProfile", "-NonInteractive", "-Command", "-"]
        self._dispose_timeout = dispose_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._remote = False

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def is_remote(self) -> bool:
        """Whether commands are routed through a remoting session."""
        return self._remote

    async def start(self) -> None:
        """Start the engine and, if needed, open the remote session."""
        try:
            self._process = await asyncio.create_subprocess_exec(
                self._engine_command,
                *self._engine_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise SpawnError(
                f"Cannot start {self._engine_command}: {e}", adapter="powershell"
            ) from e
        logger.info("Started %s (pid=%d)", self._engine_command, self._process.pid)

        if self._credentials is None or self._target.lower() in LOCAL_TARGETS:
            return

        creds = self._credentials
        try:
            await self._invoke(
                "$__sb_cred = New-Object System.Management.Automation.PSCredential("
                f"{quote(creds.username)}, (ConvertTo-SecureString "
                f"{quote(creds.password.get_secret_value())} -AsPlainText -Force))"
            )
            await self._invoke(
                f"$__sb_session = New-PSSession -ComputerName {quote(self._target)} "
                "-Credential $__sb_cred -ErrorAction Stop"
            )
        except AdapterError as e:
            await self.dispose()
            raise HandshakeError(
                f"Cannot open session to {self._target}: {e}", adapter="powershell"
            ) from e
        self._remote = True
        logger.info("Remote session established to %s as %s", self._target, creds.username)

    async def run(self, command: str) -> str:
        if self._remote:
            script = (
                "Invoke-Command -Session $__sb_session -ErrorAction Stop "
                f"-ScriptBlock ([scriptblock]::Create({quote(command)}))"
            )
        else:
            script = command
        return await self._invoke(script)

    async def interrupt(self) -> None:
        # A pipe-driven engine has no terminal to send Ctrl+C to; the
        # broker replaces the adapter instead.
        logger.debug("Interrupt ignored by %s adapter", self._engine_command)

    async def dispose(self) -> None:
        process = self._process
        if process is None:
            return
        self._process = None
        if process.returncode is None:
            try:
                if self._remote and process.stdin is not None:
                    process.stdin.write(b"Remove-PSSession -Session $__sb_session\n")
                    await process.stdin.drain()
                if process.stdin is not None:
                    process.stdin.close()
                await asyncio.wait_for(process.wait(), timeout=self._dispose_timeout)
            except (asyncio.TimeoutError, ConnectionError, OSError):
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
        self._remote = False
        logger.info("%s stopped (exit=%s)", self._engine_command, process.returncode)

    async def _invoke(self, script: str) -> str:
        """Evaluate ``script`` in the engine and return its output."""
        process = self._process
        if process is None or process.returncode is not None:
            raise AdapterError("Engine is not running", adapter="powershell")
        assert process.stdin is not None and process.stdout is not None

        token = f"sb{uuid.uuid4().hex[:12]}"
        line = (
            "try { "
            f"Invoke-Expression ([Text.Encoding]::UTF8.GetString([Convert]::FromBase64String('{_encode(script)}'))) "
            "| Out-String -Stream; $__sb_ok = $? "
            "} catch { $_ | Out-String -Stream; $__sb_ok = $false }; "
            f"[Console]::Out.WriteLine([char]30 + '{token}:' + $__sb_ok + [char]30)\n"
        )
        try:
            process.stdin.write(line.encode("utf-8"))
            await process.stdin.drain()
        except (ConnectionError, OSError) as e:
            raise AdapterError(f"Failed to write to engine: {e}", adapter="powershell") from e

        lines: list[str] = []
        while True:
            raw = await process.stdout.readline()
            if not raw:
                raise AdapterError(
                    "Engine exited: " + "".join(lines).strip(), adapter="powershell"
                )
            text = raw.decode("utf-8", errors="replace")
            match = _MARKER.search(text)
            if match is None or match.group(1) != token:
                lines.append(text)
                continue
            lines.append(text[: match.start()])
            output = "".join(lines).rstrip()
            if match.group(2) != "True":
                raise AdapterError(output or "Command failed", adapter="powershell")
            return output
