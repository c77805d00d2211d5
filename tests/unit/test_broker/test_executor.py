"""Tests for the CommandExecutor."""

from __future__ import annotations

import asyncio
import time

import pytest

from sessionbridge.adapters.base import HandshakeError
from sessionbridge.broker.broadcast import Observer
from sessionbridge.broker.errors import NoCommandRunning, SessionBusy, SessionNotFound
from sessionbridge.domain.models import CommandState, SessionKind


async def _wait_until_running(session, attempts: int = 100) -> None:
    for _ in range(attempts):
        if session.active_command is not None:
            return
        await asyncio.sleep(0)
    raise AssertionError("command never started")


class TestExecute:
    @pytest.mark.asyncio
    async def test_echo_completes(self, registry, executor) -> None:
        session = await registry.create(SessionKind.LOCAL)
        result = await executor.execute(session.id, "echo hi", timeout=5.0)

        assert result.success
        assert result.state is CommandState.COMPLETED
        assert "hi" in result.output
        assert result.command_count == 1
        assert session.command_count == 1
        assert session.active_command is None

    @pytest.mark.asyncio
    async def test_unknown_session(self, executor) -> None:
        with pytest.raises(SessionNotFound):
            await executor.execute("missing", "echo hi")

    @pytest.mark.asyncio
    async def test_second_exec_while_active_is_busy(self, registry, executor) -> None:
        session = await registry.create(SessionKind.LOCAL)
        first = asyncio.create_task(executor.execute(session.id, "sleep 0.2"))
        await _wait_until_running(session)
        running = session.active_command

        with pytest.raises(SessionBusy) as exc_info:
            await executor.execute(session.id, "echo second")
        assert exc_info.value.status_code == 409
        assert session.active_command is running

        result = await first
        assert result.success
        assert result.output == "slept 0.2"
        assert session.adapter.calls == ["sleep 0.2"]

    @pytest.mark.asyncio
    async def test_timeout_resolves_promptly(self, registry, executor, adapter_factory) -> None:
        session = await registry.create(SessionKind.LOCAL)
        started = time.monotonic()

        result = await executor.execute(session.id, "sleep 5", timeout=0.1)

        elapsed = time.monotonic() - started
        assert result.state is CommandState.TIMED_OUT
        assert result.timed_out and not result.success
        assert 0.09 <= elapsed < 1.0
        assert result.command_count == 0
        assert session.active_command is None
        # the abandoned adapter was swapped for a fresh one
        assert adapter_factory.created[0].disposed
        assert session.adapter is adapter_factory.created[1]

    @pytest.mark.asyncio
    async def test_cancel_mid_command(self, registry, executor, adapter_factory) -> None:
        session = await registry.create(SessionKind.REMOTE, target="winbox")
        task = asyncio.create_task(executor.execute(session.id, "sleep 5", timeout=10))
        await asyncio.sleep(0.05)

        cmd = executor.cancel(session.id)
        assert cmd.cancel_requested
        result = await asyncio.wait_for(task, timeout=1.0)

        assert result.state is CommandState.CANCELLED
        assert result.cancelled and not result.success
        assert adapter_factory.created[0].disposed

        follow_up = await executor.execute(session.id, "echo again")
        assert follow_up.success
        assert follow_up.output == "again"
        assert session.adapter is adapter_factory.created[1]
        assert adapter_factory.created[1].calls == ["echo again"]

    @pytest.mark.asyncio
    async def test_unreachable_host_after_cancel_closes_session(self, registry, executor, adapter_factory) -> None:
        session = await registry.create(SessionKind.REMOTE, target="winbox")
        task = asyncio.create_task(executor.execute(session.id, "sleep 5"))
        await _wait_until_running(session)
        adapter_factory.start_error = HandshakeError("remote gone")

        executor.cancel(session.id)
        result = await asyncio.wait_for(task, timeout=1.0)

        assert result.cancelled
        assert session.id not in registry
        with pytest.raises(SessionNotFound):
            await executor.execute(session.id, "echo again")
        assert adapter_factory.created[0].calls == ["sleep 5"]

    @pytest.mark.asyncio
    async def test_cancel_interrupts_local_shell_before_replacing(self, registry, executor, adapter_factory) -> None:
        session = await registry.create(SessionKind.LOCAL)
        task = asyncio.create_task(executor.execute(session.id, "sleep 5"))
        await _wait_until_running(session)
        executor.cancel(session.id)
        await task
        assert adapter_factory.created[0].interrupts == 1

    @pytest.mark.asyncio
    async def test_adapter_failure(self, registry, executor) -> None:
        session = await registry.create(SessionKind.LOCAL)
        result = await executor.execute(session.id, "fail bad syntax")

        assert result.state is CommandState.FAILED
        assert result.error == "bad syntax"
        assert session.command_count == 0
        assert session.active_command is None

        again = await executor.execute(session.id, "echo ok")
        assert again.success

    @pytest.mark.asyncio
    async def test_last_used_refreshed_on_start_and_end(self, registry, executor) -> None:
        session = await registry.create(SessionKind.LOCAL)
        session.last_used_at = 0.0
        task = asyncio.create_task(executor.execute(session.id, "sleep 0.05"))
        await _wait_until_running(session)
        at_start = session.last_used_at
        assert at_start > 0.0
        await task
        assert session.last_used_at >= at_start


class TestOutputRouting:
    @pytest.mark.asyncio
    async def test_non_streaming_output_is_broadcast(self, registry, executor) -> None:
        session = await registry.create(SessionKind.REMOTE, target="winbox")
        obs = Observer("a")
        session.output.attach(obs)

        await executor.execute(session.id, "echo hello")

        messages = [await obs.next() for _ in range(3)]
        assert messages[0] == {"type": "status", "status": "running", "command": "echo hello"}
        assert messages[1] == {"type": "output", "data": "hello\n"}
        assert messages[2] == {"type": "status", "status": "completed", "command": "echo hello"}
        assert session.output.buffer == "hello\n"

    @pytest.mark.asyncio
    async def test_streaming_adapter_output_not_duplicated(self, registry, executor) -> None:
        session = await registry.create(SessionKind.LOCAL)
        session.adapter.streams_output = True
        await executor.execute(session.id, "echo hello")
        assert session.output.buffer == ""

    @pytest.mark.asyncio
    async def test_cancel_publishes_interrupted(self, registry, executor) -> None:
        session = await registry.create(SessionKind.REMOTE)
        obs = Observer("a")
        session.output.attach(obs)
        task = asyncio.create_task(executor.execute(session.id, "sleep 5"))
        await _wait_until_running(session)
        executor.cancel(session.id)
        await task

        types = []
        while obs.pending:
            types.append((await obs.next())["type"])
        assert types == ["status", "interrupted", "status"]


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_idle_session(self, registry, executor) -> None:
        session = await registry.create(SessionKind.LOCAL)
        with pytest.raises(NoCommandRunning) as exc_info:
            executor.cancel(session.id)
        assert exc_info.value.status_code == 404

    def test_cancel_unknown_session(self, executor) -> None:
        with pytest.raises(SessionNotFound):
            executor.cancel("missing")

    @pytest.mark.asyncio
    async def test_cancel_all(self, registry, executor) -> None:
        busy = await registry.create(SessionKind.LOCAL)
        await registry.create(SessionKind.LOCAL)
        task = asyncio.create_task(executor.execute(busy.id, "sleep 5"))
        await _wait_until_running(busy)

        assert executor.cancel_all() == [busy.id]
        result = await task
        assert result.cancelled


class TestExecuteMany:
    @pytest.mark.asyncio
    async def test_runs_concurrently_across_sessions(self, registry, executor) -> None:
        a = await registry.create(SessionKind.LOCAL)
        b = await registry.create(SessionKind.LOCAL)
        started = time.monotonic()

        results = await executor.execute_many("sleep 0.2")

        assert time.monotonic() - started < 0.35
        assert [r["sessionId"] for r in results] == [a.id, b.id]
        assert all(r["success"] for r in results)

    @pytest.mark.asyncio
    async def test_unknown_ids_become_error_entries(self, registry, executor) -> None:
        a = await registry.create(SessionKind.LOCAL)
        results = await executor.execute_many("echo x", session_ids=[a.id, "missing"])
        assert results[0]["success"] is True
        assert results[0]["output"] == "x"
        assert results[1] == {"sessionId": "missing", "success": False, "error": "Session not found"}
