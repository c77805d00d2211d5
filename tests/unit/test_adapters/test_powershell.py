"""Tests for the PowerShell engine adapter.

The engine process is replaced by a fake with a real StreamReader for
stdout, so the marker protocol is exercised without pwsh installed.
"""

from __future__ import annotations

import asyncio
import base64
import re
import uuid

import pytest

from sessionbridge.adapters import powershell
from sessionbridge.adapters.base import AdapterError, HandshakeError, SpawnError
from sessionbridge.adapters.powershell import PowerShellAdapter, quote
from sessionbridge.domain.models import Credentials

TOKEN = "sb0123456789ab"


class FakeStdin:
    def __init__(self) -> None:
        self.written = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.written += data

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    def __init__(self) -> None:
        self.pid = 4242
        self.returncode: int | None = None
        self.stdin = FakeStdin()
        self.hang = False
        self.killed = False
        self._stdout: asyncio.StreamReader | None = None

    @property
    def stdout(self) -> asyncio.StreamReader:
        # created lazily so it binds to the running test loop
        if self._stdout is None:
            self._stdout = asyncio.StreamReader()
        return self._stdout

    def reply(self, *lines: str) -> None:
        self.stdout.feed_data("".join(line + "\n" for line in lines).encode())

    async def wait(self) -> int:
        while self.hang and self.returncode is None:
            await asyncio.sleep(0.01)
        if self.returncode is None:
            self.returncode = 0
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9


def marker(ok: bool) -> str:
    return f"\x1e{TOKEN}:{ok}\x1e"


def sent_scripts(process: FakeProcess) -> list[str]:
    encoded = re.findall(r"FromBase64String\('([A-Za-z0-9+/=]+)'\)", process.stdin.written.decode())
    return [base64.b64decode(chunk).decode("utf-8") for chunk in encoded]


@pytest.fixture(autouse=True)
def fixed_token(monkeypatch):
    monkeypatch.setattr(
        powershell.uuid, "uuid4", lambda: uuid.UUID("0123456789abcdef0123456789abcdef")
    )


@pytest.fixture
def process() -> FakeProcess:
    return FakeProcess()


@pytest.fixture
def spawn(monkeypatch, process):
    async def fake_exec(*args, **kwargs):
        fake_exec.args = args
        return process

    monkeypatch.setattr(powershell.asyncio, "create_subprocess_exec", fake_exec)
    return fake_exec


def test_quote_doubles_single_quotes() -> None:
    assert quote("it's") == "'it''s'"
    assert quote("") == "''"


class TestInvoke:
    @pytest.mark.asyncio
    async def test_returns_output_before_marker(self, spawn, process) -> None:
        engine = PowerShellAdapter()
        await engine.start()
        process.reply("line one", "line two", marker(True))

        output = await engine.run("Get-Thing")

        assert output == "line one\nline two"
        assert sent_scripts(process) == ["Get-Thing"]
        assert spawn.args[0] == "pwsh"
        assert "-NonInteractive" in spawn.args

    @pytest.mark.asyncio
    async def test_false_status_raises(self, spawn, process) -> None:
        engine = PowerShellAdapter()
        await engine.start()
        process.reply("Cannot find path 'C:\\nope'", marker(False))

        with pytest.raises(AdapterError, match="Cannot find path"):
            await engine.run("Get-Item C:\\nope")

    @pytest.mark.asyncio
    async def test_engine_exit_raises(self, spawn, process) -> None:
        engine = PowerShellAdapter()
        await engine.start()
        process.reply("partial")
        process.stdout.feed_eof()

        with pytest.raises(AdapterError, match="Engine exited: partial"):
            await engine.run("exit")

    @pytest.mark.asyncio
    async def test_run_before_start(self) -> None:
        with pytest.raises(AdapterError, match="not running"):
            await PowerShellAdapter().run("Get-Date")

    @pytest.mark.asyncio
    async def test_raw_input_is_rejected(self) -> None:
        with pytest.raises(AdapterError, match="does not accept raw input"):
            await PowerShellAdapter().send_input("x")


class TestStart:
    @pytest.mark.asyncio
    async def test_missing_engine(self) -> None:
        engine = PowerShellAdapter(engine_command="sessionbridge-no-such-engine")
        with pytest.raises(SpawnError):
            await engine.start()

    @pytest.mark.asyncio
    async def test_local_target_skips_handshake(self, spawn, process) -> None:
        creds = Credentials(username="admin", password="pw")
        engine = PowerShellAdapter(target="localhost", credentials=creds)
        await engine.start()
        assert not engine.is_remote
        assert process.stdin.written == b""

    @pytest.mark.asyncio
    async def test_handshake_opens_remote_session(self, spawn, process) -> None:
        creds = Credentials(username="corp\\admin", password="it's secret")
        engine = PowerShellAdapter(target="winbox", credentials=creds)
        process.reply(marker(True), marker(True))

        await engine.start()

        assert engine.is_remote
        cred_script, session_script = sent_scripts(process)
        assert "PSCredential('corp\\admin'" in cred_script
        assert "'it''s secret'" in cred_script
        assert session_script.startswith("$__sb_session = New-PSSession -ComputerName 'winbox'")

    @pytest.mark.asyncio
    async def test_handshake_failure(self, spawn, process) -> None:
        creds = Credentials(username="admin", password="wrong")
        engine = PowerShellAdapter(target="winbox", credentials=creds)
        process.reply(marker(True), "Access is denied", marker(False))

        with pytest.raises(HandshakeError, match="Access is denied"):
            await engine.start()

        assert not engine.is_alive
        assert process.stdin.closed

    @pytest.mark.asyncio
    async def test_remote_commands_go_through_invoke_command(self, spawn, process) -> None:
        creds = Credentials(username="admin", password="pw")
        engine = PowerShellAdapter(target="winbox", credentials=creds)
        process.reply(marker(True), marker(True))
        await engine.start()

        process.reply("WINBOX", marker(True))
        assert await engine.run("hostname") == "WINBOX"

        script = sent_scripts(process)[-1]
        assert script.startswith("Invoke-Command -Session $__sb_session")
        assert "[scriptblock]::Create('hostname')" in script


class TestDispose:
    @pytest.mark.asyncio
    async def test_dispose_closes_remote_session(self, spawn, process) -> None:
        creds = Credentials(username="admin", password="pw")
        engine = PowerShellAdapter(target="winbox", credentials=creds)
        process.reply(marker(True), marker(True))
        await engine.start()

        await engine.dispose()

        assert b"Remove-PSSession -Session $__sb_session" in process.stdin.written
        assert process.stdin.closed
        assert not engine.is_alive
        assert not engine.is_remote

    @pytest.mark.asyncio
    async def test_dispose_kills_hung_engine(self, spawn, process) -> None:
        process.hang = True
        engine = PowerShellAdapter(dispose_timeout=0.05)
        await engine.start()

        await engine.dispose()
        assert process.killed

    @pytest.mark.asyncio
    async def test_dispose_twice_is_safe(self, spawn, process) -> None:
        engine = PowerShellAdapter()
        await engine.start()
        await engine.dispose()
        await engine.dispose()
