"""Session registry.

Owns the mapping of session id to live ``Session`` objects: creation
(including the adapter handshake), lookup, relabelling, teardown and
snapshots. A session only becomes visible once its adapter has started,
so a failed spawn or handshake never leaves a half-built entry behind.
"""

from __future__ import annotations

import itertools
import logging
import time
import uuid
from typing import Callable, Optional

from sessionbridge.adapters.base import AdapterError, ExecutionAdapter
from sessionbridge.broker.broadcast import OutputBroadcaster
from sessionbridge.broker.errors import SessionNotFound
from sessionbridge.domain.models import Command, Credentials, SessionInfo, SessionKind

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[SessionKind, str, Optional[Credentials]], ExecutionAdapter]


class Session:
    """A named, persistent execution context.

    Only the executor sets or clears ``active_command``.
    """

    def __init__(
        self,
        kind: SessionKind,
        target: str,
        label: str,
        adapter: ExecutionAdapter,
        output: OutputBroadcaster,
        credentials: Credentials | None = None,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.kind = kind
        self.target = target
        self.label = label
        self.adapter = adapter
        self.output = output
        self.credentials = credentials
        self.created_at = time.time()
        self.last_used_at = self.created_at
        self.command_count = 0
        self.active_command: Command | None = None

    @property
    def is_running(self) -> bool:
        return self.active_command is not None

    def touch(self, now: float | None = None) -> None:
        self.last_used_at = time.time() if now is None else now

    def info(self, now: float | None = None) -> SessionInfo:
        now = time.time() if now is None else now
        return SessionInfo(
            session_id=self.id,
            kind=self.kind,
            label=self.label,
            target=self.target,
            created=int(self.created_at * 1000),
            last_used=int(self.last_used_at * 1000),
            uptime=max(0, int((now - self.created_at) * 1000)),
            command_count=self.command_count,
            running=self.is_running,
            active_command=self.active_command.text if self.active_command else None,
            observers=len(self.output.observers),
        )

    def __repr__(self) -> str:
        return f"Session({self.label!r}, id={self.id}, kind={self.kind.value})"


class SessionRegistry:
    """Registry of live sessions.

    Args:
        adapter_factory: Builds an unstarted adapter for (kind, target,
            credentials). Also used to replace an adapter after a
            cancelled or timed-out command.
        default_local_target: Shell used when a local session names none.
        buffer_max_chars: Output buffer cap per session.
        buffer_keep_chars: Size the buffer is cut back to once over the cap.
    """

    def __init__(
        self,
        adapter_factory: AdapterFactory,
        default_local_target: str = "/bin/bash",
        buffer_max_chars: int = 100_000,
        buffer_keep_chars: int = 50_000,
    ) -> None:
        self._adapter_factory = adapter_factory
        self._default_local_target = default_local_target
        self._buffer_max_chars = buffer_max_chars
        self._buffer_keep_chars = buffer_keep_chars
        self._sessions: dict[str, Session] = {}
        self._label_counters = {kind: itertools.count(1) for kind in SessionKind}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __iter__(self):
        return iter(list(self._sessions.values()))

    async def create(
        self,
        kind: SessionKind,
        target: str | None = None,
        label: str | None = None,
        credentials: Credentials | None = None,
    ) -> Session:
        """Start an adapter and register a new session around it.

        Raises:
            SpawnError: If the process cannot be started.
            HandshakeError: If the remote connection fails.
        """
        if not target:
            target = self._default_local_target if kind is SessionKind.LOCAL else "localhost"
        if not label:
            label = f"{kind.value.capitalize()}-{next(self._label_counters[kind])}"

        adapter = self._adapter_factory(kind, target, credentials)
        session = Session(
            kind=kind,
            target=target,
            label=label,
            adapter=adapter,
            output=OutputBroadcaster(self._buffer_max_chars, self._buffer_keep_chars),
            credentials=credentials,
        )
        self._bind(session, adapter)
        await adapter.start()

        self._sessions[session.id] = session
        logger.info("Created session: %s (%s) -> %s", session.label, session.id, target)
        return session

    def get(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(session_id) from None

    def rename(self, session_id: str, label: str) -> Session:
        session = self.get(session_id)
        session.label = label
        logger.info("Updated session label to: %s (%s)", label, session_id)
        return session

    async def close(self, session_id: str) -> None:
        """Unregister a session, drop its observers and dispose its adapter.

        The session is gone from the registry even if disposal fails; the
        failure is re-raised as ``AdapterError``.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFound(session_id)
        if session.active_command is not None:
            session.active_command.request_cancel()
        session.output.close()
        logger.info("Closed session: %s (%s)", session.label, session_id)
        try:
            await session.adapter.dispose()
        except AdapterError:
            raise
        except Exception as e:
            raise AdapterError(f"Failed to dispose session {session_id}: {e}") from e

    async def close_all(self) -> list[str]:
        closed = []
        for session_id in list(self._sessions):
            try:
                await self.close(session_id)
                closed.append(session_id)
            except (SessionNotFound, AdapterError) as e:
                logger.error("Failed to close session %s: %s", session_id, e)
        logger.info("Closed %d sessions", len(closed))
        return closed

    def list(self) -> list[SessionInfo]:
        now = time.time()
        return [session.info(now) for session in self._sessions.values()]

    @property
    def total_commands(self) -> int:
        return sum(s.command_count for s in self._sessions.values())

    async def reset_adapter(self, session: Session) -> None:
        """Throw away a session's adapter and start a fresh one.

        Used after a command was abandoned, so late output of that
        command cannot leak into the next one. Local shells get a Ctrl+C
        first. If the replacement cannot be started (a shell that fails to
        spawn, a remote host that refuses the handshake) the session is
        closed and the error re-raised.
        """
        old = session.adapter
        if session.kind is SessionKind.LOCAL:
            try:
                await old.interrupt()
            except Exception:
                logger.debug("Interrupt before reset failed", exc_info=True)
        try:
            await old.dispose()
        except Exception:
            logger.exception("Failed to dispose adapter of %s", session.label)
        if session.id not in self._sessions:
            return

        new = self._adapter_factory(session.kind, session.target, session.credentials)
        self._bind(session, new)
        try:
            await new.start()
        except AdapterError as e:
            logger.error("Cannot restart adapter of %s, closing it: %s", session.label, e)
            if session.id in self._sessions:
                try:
                    await self.close(session.id)
                except AdapterError:
                    logger.exception("Failed to close %s", session.label)
            raise
        session.adapter = new
        logger.info("Replaced adapter for session %s (%s)", session.label, session.id)

    def _bind(self, session: Session, adapter: ExecutionAdapter) -> None:
        def on_exit(code: int) -> None:
            if session.adapter is not adapter:
                return
            session.output.publish({"type": "exit", "code": code})
            if session.id in self._sessions:
                logger.info("Shell of session %s exited, closing it", session.label)
                self._sessions.pop(session.id, None)
                session.output.close()

        adapter.bind(on_output=session.output.append, on_exit=on_exit)
