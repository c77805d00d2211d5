"""Command executor.

Runs one command at a time per session and resolves the first of three
competing signals: the adapter returning, the timeout elapsing, or a
cancellation request. The losing signals are abandoned; because the
engine call itself cannot be stopped mid-flight, a timed-out or
cancelled command costs the session its adapter, which is replaced
before ``execute()`` returns.

Timeouts and cancellations are advisory towards the engine: whatever
the abandoned command was doing on the target may still complete.
"""

from __future__ import annotations

import asyncio
import logging
import time

from sessionbridge.adapters.base import AdapterError
from sessionbridge.broker.errors import BrokerError, NoCommandRunning, SessionBusy
from sessionbridge.broker.registry import Session, SessionRegistry
from sessionbridge.domain.models import Command, CommandResult, CommandState

logger = logging.getLogger(__name__)


class CommandExecutor:
    """Drives commands through session adapters with exclusivity."""

    def __init__(self, registry: SessionRegistry, default_timeout: float = 30.0) -> None:
        self._registry = registry
        self._default_timeout = default_timeout

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    async def execute(
        self,
        session_id: str,
        command: str,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``command`` in a session and report how it ended.

        Args:
            session_id: Target session.
            command: Command text handed to the adapter.
            timeout: Seconds before giving up; defaults to the executor's.

        Raises:
            SessionNotFound: If the session does not exist.
            SessionBusy: If the session already has a command in flight.
        """
        session = self._registry.get(session_id)
        if session.active_command is not None:
            raise SessionBusy(session_id, session.active_command.text)

        timeout = self._default_timeout if timeout is None else timeout
        started = time.monotonic()
        cmd = Command(
            session_id=session_id,
            text=command,
            timeout_at=time.time() + timeout,
        )
        session.active_command = cmd
        session.touch()
        try:
            cmd.transition(CommandState.RUNNING)
            logger.info("Executing in %s: %s", session.label, command)
            session.output.publish({"type": "status", "status": "running", "command": command})

            output, error = await self._race(session, cmd, timeout)
            elapsed_ms = int((time.monotonic() - started) * 1000)

            if cmd.state is CommandState.COMPLETED:
                session.command_count += 1
                if output and not session.adapter.streams_output:
                    session.output.append(output if output.endswith("\n") else output + "\n")
                logger.info("Command completed in %dms", elapsed_ms)
            elif cmd.state in (CommandState.TIMED_OUT, CommandState.CANCELLED):
                logger.info("Command %s after %dms: %s", cmd.state.value, elapsed_ms, command)
                await self._replace_adapter(session)
                if cmd.state is CommandState.CANCELLED:
                    session.output.publish({"type": "interrupted"})
            else:
                logger.info("Command failed: %s", error)

            session.output.publish({"type": "status", "status": cmd.state.value, "command": command})
            return CommandResult(
                command_id=cmd.id,
                session_id=session_id,
                label=session.label,
                state=cmd.state,
                output=output,
                error=error,
                elapsed_ms=elapsed_ms,
                command_count=session.command_count,
            )
        finally:
            session.active_command = None
            session.touch()

    def cancel(self, session_id: str) -> Command:
        """Ask the in-flight command of a session to stop.

        Returns at once; the pending ``execute()`` call reports the
        outcome.

        Raises:
            SessionNotFound: If the session does not exist.
            NoCommandRunning: If the session is idle.
        """
        session = self._registry.get(session_id)
        cmd = session.active_command
        if cmd is None:
            raise NoCommandRunning(session_id)
        cmd.request_cancel()
        logger.info("Cancellation requested for %s: %s", session.label, cmd.text)
        return cmd

    def cancel_all(self) -> list[str]:
        cancelled = []
        for session in self._registry:
            if session.active_command is None:
                continue
            session.active_command.request_cancel()
            cancelled.append(session.id)
        logger.info("Cancellation requested for %d sessions", len(cancelled))
        return cancelled

    async def execute_many(
        self,
        command: str,
        session_ids: list[str] | None = None,
        timeout: float | None = None,
    ) -> list[dict]:
        """Run the same command concurrently in several sessions."""
        targets = session_ids if session_ids is not None else [s.id for s in self._registry]
        logger.info("Executing across %d sessions concurrently...", len(targets))

        async def run_one(session_id: str) -> dict:
            try:
                result = await self.execute(session_id, command, timeout)
            except BrokerError as e:
                return {"sessionId": session_id, "success": False, "error": str(e)}
            return result.to_response()

        return list(await asyncio.gather(*(run_one(sid) for sid in targets)))

    async def _race(
        self, session: Session, cmd: Command, timeout: float
    ) -> tuple[str, str | None]:
        """Resolve completion vs. timeout vs. cancellation for ``cmd``.

        Returns (output, error) and leaves ``cmd`` in a terminal state.
        """
        run_task = asyncio.ensure_future(session.adapter.run(cmd.text))
        cancel_task = asyncio.ensure_future(cmd.wait_cancelled())
        try:
            done, _ = await asyncio.wait(
                {run_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_task.cancel()
            if not run_task.done():
                run_task.cancel()
            run_task.add_done_callback(_consume_result)

        if run_task in done:
            try:
                output = run_task.result()
            except AdapterError as e:
                cmd.transition(CommandState.FAILED)
                return "", str(e)
            except Exception as e:
                logger.exception("Adapter raised unexpectedly")
                cmd.transition(CommandState.FAILED)
                return "", f"{type(e).__name__}: {e}"
            cmd.transition(CommandState.COMPLETED)
            return output, None
        if cancel_task in done:
            cmd.transition(CommandState.CANCELLED)
            return "", "Command cancelled"
        cmd.transition(CommandState.TIMED_OUT)
        return "", f"Command timed out after {timeout:g}s"

    async def _replace_adapter(self, session: Session) -> None:
        try:
            await self._registry.reset_adapter(session)
        except AdapterError as e:
            logger.error("Could not replace adapter of %s: %s", session.label, e)


def _consume_result(task: asyncio.Future) -> None:
    # Abandoned engine calls may still fail later; nobody is waiting for them
    if not task.cancelled():
        task.exception()
