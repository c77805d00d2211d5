"""WebSocket stream protocol for a single session.

Client -> server messages::

    {"type": "input", "data": "ls\\r"}            raw keystrokes (local shells)
    {"type": "exec", "command": "...", "timeout": 5000}
    {"type": "interrupt"}

Server -> client messages::

    {"type": "output", "data": "...", "backlog": true?}
    {"type": "status", "status": "running", "command": "..."}
    {"type": "result", "success": true, "output": "...", ...}
    {"type": "error", "message": "..."}
    {"type": "exit", "code": 0}
    {"type": "interrupted"}
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Literal, Union

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from sessionbridge.adapters.base import AdapterError
from sessionbridge.broker.broadcast import Observer
from sessionbridge.broker.errors import BrokerError, NoCommandRunning
from sessionbridge.broker.executor import CommandExecutor
from sessionbridge.broker.registry import Session

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Client messages (discriminated union)
# ---------------------------------------------------------------------------


class InputMessage(BaseModel):
    type: Literal["input"] = "input"
    data: str = Field(description="Raw keystrokes written to the terminal")


class ExecMessage(BaseModel):
    type: Literal["exec"] = "exec"
    command: str = Field(min_length=1)
    timeout: int | None = Field(default=None, gt=0, description="Timeout in milliseconds")


class InterruptMessage(BaseModel):
    type: Literal["interrupt"] = "interrupt"


ClientMessage = Annotated[
    Union[InputMessage, ExecMessage, InterruptMessage],
    Field(discriminator="type"),
]

_client_message: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(raw: str) -> InputMessage | ExecMessage | InterruptMessage:
    """Parse one inbound frame. Raises ``ValidationError`` on bad input."""
    return _client_message.validate_json(raw)


def error_message(message: str) -> dict:
    return {"type": "error", "message": message}


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


class StreamConnection:
    """Serves one WebSocket subscribed to one session.

    Output reaches the socket only through the session's broadcaster;
    replies meant for this client alone (command results, errors) are
    queued on the same observer so they stay ordered with the output.
    """

    def __init__(
        self,
        websocket: WebSocket,
        session: Session,
        executor: CommandExecutor,
        max_pending: int = 1000,
    ) -> None:
        self._ws = websocket
        self._session = session
        self._executor = executor
        client = websocket.client
        name = f"{client.host}:{client.port}" if client else "ws"
        self.observer = Observer(name=name, max_pending=max_pending)
        self._exec_tasks: set[asyncio.Task[None]] = set()

    async def serve(self) -> None:
        """Run until either the client or the session goes away."""
        self._session.output.attach(self.observer)
        logger.info("Stream attached to %s (%s)", self._session.label, self.observer.name)
        receiver = asyncio.create_task(self._receive_loop())
        sender = asyncio.create_task(self._send_loop())
        try:
            done, pending = await asyncio.wait(
                {receiver, sender}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.warning(
                        "Stream to %s ended with error: %r", self.observer.name, task.exception()
                    )
        finally:
            receiver.cancel()
            sender.cancel()
            self._session.output.detach(self.observer)
            self.observer.close()
            logger.info("Stream detached from %s (%s)", self._session.label, self.observer.name)

    async def _send_loop(self) -> None:
        while True:
            message = await self.observer.next()
            if message is None:
                break
            await self._ws.send_json(message)
        if self._ws.client_state == WebSocketState.CONNECTED:
            await self._ws.close()

    async def _receive_loop(self) -> None:
        while True:
            try:
                raw = await self._ws.receive_text()
            except WebSocketDisconnect:
                return
            try:
                message = parse_client_message(raw)
            except ValidationError as e:
                self.observer.offer(error_message(f"Invalid message: {e.errors()[0]['msg']}"))
                continue
            await self._handle(message)

    async def _handle(self, message: InputMessage | ExecMessage | InterruptMessage) -> None:
        if isinstance(message, InputMessage):
            try:
                await self._session.adapter.send_input(message.data)
            except AdapterError as e:
                self.observer.offer(error_message(str(e)))
        elif isinstance(message, ExecMessage):
            task = asyncio.create_task(self._exec(message))
            self._exec_tasks.add(task)
            task.add_done_callback(self._exec_tasks.discard)
        else:
            await self._interrupt()

    async def _exec(self, message: ExecMessage) -> None:
        timeout = message.timeout / 1000 if message.timeout else None
        try:
            result = await self._executor.execute(self._session.id, message.command, timeout)
        except BrokerError as e:
            self.observer.offer(error_message(str(e)))
            return
        self.observer.offer({"type": "result", **result.to_response()})

    async def _interrupt(self) -> None:
        try:
            self._executor.cancel(self._session.id)
            return
        except NoCommandRunning:
            pass
        except BrokerError as e:
            self.observer.offer(error_message(str(e)))
            return
        # Nothing brokered is running: pass Ctrl+C through to the shell
        await self._session.adapter.interrupt()
        self._session.output.publish({"type": "interrupted"})
