"""Per-session output fan-out with backlog replay.

A session has a single logical writer (the executor, or the local
shell's own output stream) and any number of observers. Every observer
gets a bounded queue; ``append`` only ever enqueues, so a slow or dead
connection can never stall the writer. An observer that falls too far
behind is closed and has to reconnect, at which point it receives the
buffered backlog again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)

Message = dict[str, Any]


class Observer:
    """One live subscriber of a session's output stream.

    The connection handling code drains ``next()`` and writes each
    message to its transport until ``None`` signals the end.
    """

    def __init__(self, name: str = "", max_pending: int = 1000) -> None:
        self.name = name
        self._queue: asyncio.Queue[Message | None] = asyncio.Queue(maxsize=max_pending + 1)
        self._max_pending = max_pending
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, message: Message) -> bool:
        """Enqueue without waiting. Returns False if the observer is gone or full."""
        if self._closed or self._queue.qsize() >= self._max_pending:
            return False
        self._queue.put_nowait(message)
        return True

    async def next(self) -> Message | None:
        return await self._queue.get()

    def close(self) -> None:
        """Stop delivery; the pending ``next()`` returns None after the backlog."""
        if self._closed:
            return
        self._closed = True
        # One slot is reserved for the end-of-stream sentinel
        self._queue.put_nowait(None)

    def __repr__(self) -> str:
        return f"Observer({self.name!r}, pending={self.pending})"


class OutputBroadcaster:
    """Bounded output buffer plus the set of live observers of one session."""

    def __init__(self, max_chars: int = 100_000, keep_chars: int = 50_000) -> None:
        if keep_chars >= max_chars:
            raise ValueError("keep_chars must be smaller than max_chars")
        self._max_chars = max_chars
        self._keep_chars = keep_chars
        self._buffer = ""
        self._observers: set[Observer] = set()
        self._closed = False

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def observers(self) -> frozenset[Observer]:
        return frozenset(self._observers)

    def append(self, text: str) -> None:
        """Buffer ``text`` and forward it to every observer."""
        if not text:
            return
        self._buffer += text
        if len(self._buffer) > self._max_chars:
            self._buffer = self._buffer[-self._keep_chars:]
        self._fan_out({"type": "output", "data": text})

    def publish(self, message: Message) -> None:
        """Forward an event (status, exit, ...) without buffering it."""
        self._fan_out(message)

    def attach(self, observer: Observer) -> None:
        """Replay the backlog to ``observer`` and subscribe it.

        Both happen without yielding to the event loop, so nothing
        appended in between can be lost or duplicated.
        """
        if self._closed:
            observer.close()
            return
        if self._buffer:
            observer.offer({"type": "output", "data": self._buffer, "backlog": True})
        self._observers.add(observer)
        logger.debug("Attached %r (%d observers)", observer, len(self._observers))

    def detach(self, observer: Observer) -> None:
        self._observers.discard(observer)

    def close(self) -> None:
        """Drop every observer, e.g. when the session is destroyed."""
        self._closed = True
        for observer in list(self._observers):
            observer.close()
        self._observers.clear()

    def _fan_out(self, message: Message) -> None:
        for observer in list(self._observers):
            if observer.offer(message):
                continue
            logger.warning("Dropping observer %r: delivery queue full or closed", observer)
            observer.close()
            self._observers.discard(observer)
