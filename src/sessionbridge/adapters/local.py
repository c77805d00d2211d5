"""Local interactive shell adapter.

Manages a long-running shell process on a pseudo-terminal (pty), so the
shell behaves as it would for a human: line editing, job control and
Ctrl+C all work. Everything the shell prints is streamed to the output
listener; ``run()`` additionally captures the output of one command by
waiting for a marker line carrying the command's exit status.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import re
import select
import shutil
import signal
import struct
import termios
import uuid

from sessionbridge.adapters.base import AdapterError, ExecutionAdapter, SpawnError

logger = logging.getLogger(__name__)

# The record separator never appears in the echoed printf command (which
# contains the literal text "\036"), only in what printf actually prints.
_MARKER_CHAR = "\x1e"

_ANSI_PATTERNS = (
    re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]"),  # CSI (colors, cursor movement)
    re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"),  # OSC (window title)
    re.compile(r"\x1b[()][AB012]"),
    re.compile(r"\x1b[>=]"),
    re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]"),
)


def strip_terminal_codes(text: str) -> str:
    """Remove escape sequences and control characters from pty output."""
    for pattern in _ANSI_PATTERNS:
        text = pattern.sub("", text)
    return text.replace("\r\n", "\n").replace("\r", "\n")


class _PendingRun:
    def __init__(self, command: str, loop: asyncio.AbstractEventLoop) -> None:
        self.command = command
        self.token = f"sb{uuid.uuid4().hex[:12]}"
        self.pattern = re.compile(
            re.escape(_MARKER_CHAR + self.token) + r":(\d+)" + re.escape(_MARKER_CHAR)
        )
        self.future: asyncio.Future[str] = loop.create_future()
        self.captured = ""

    @property
    def script(self) -> str:
        return f"{self.command}\nprintf '\\036{self.token}:%s\\036\\n' \"$?\"\n"

    def feed(self, data: str) -> bool:
        """Accumulate output; resolve the future once the marker arrives."""
        self.captured += data
        match = self.pattern.search(self.captured)
        if match is None:
            return False
        if not self.future.done():
            self.future.set_result(self._clean(self.captured[: match.start()]))
        return True

    def _clean(self, raw: str) -> str:
        lines = strip_terminal_codes(raw).split("\n")
        first = self.command.splitlines()[0].strip() if self.command.strip() else ""
        if first and lines and lines[0].strip().endswith(first):
            lines = lines[1:]
        lines = [line for line in lines if self.token not in line]
        return "\n".join(lines).strip("\n")


class LocalShellAdapter(ExecutionAdapter):
    """Persistent interactive shell subprocess via pty.

    Uses a pseudo-terminal for realistic terminal behavior including
    proper line editing, signal handling, and ANSI escape support.
    """

    streams_output = True

    def __init__(
        self,
        shell_command: str = "/bin/bash",
        rows: int = 24,
        cols: int = 120,
    ) -> None:
        super().__init__()
        self._shell_command = shell_command
        self._rows = rows
        self._cols = cols
        self._is_alive = False
        self._disposing = False
        self._read_task: asyncio.Task[None] | None = None
        self._master_fd: int | None = None
        self._pid: int | None = None
        self._pending: _PendingRun | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def is_alive(self) -> bool:
        return self._is_alive

    @property
    def pid(self) -> int | None:
        return self._pid

    async def start(self) -> None:
        """Start the shell subprocess using a pty."""
        if not os.path.exists(self._shell_command) and shutil.which(self._shell_command) is None:
            raise SpawnError(f"Shell not found: {self._shell_command}", adapter="local")

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(f"Cannot allocate pty: {e}", adapter="local") from e

        # Set terminal size
        winsize = struct.pack("HHHH", self._rows, self._cols, 0, 0)
        fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, winsize)

        env = os.environ.copy()
        env["TERM"] = "xterm-256color"
        env["COLUMNS"] = str(self._cols)
        env["LINES"] = str(self._rows)

        try:
            pid = os.fork()
        except OSError as e:
            os.close(master_fd)
            os.close(slave_fd)
            raise SpawnError(f"Cannot fork shell: {e}", adapter="local") from e

        if pid == 0:
            # Child process
            try:
                os.close(master_fd)
                os.setsid()
                fcntl.ioctl(slave_fd, termios.TIOCSCTTY, 0)
                os.dup2(slave_fd, 0)
                os.dup2(slave_fd, 1)
                os.dup2(slave_fd, 2)
                if slave_fd > 2:
                    os.close(slave_fd)
                os.execvpe(self._shell_command, [self._shell_command], env)
            finally:
                os._exit(127)

        # Parent process
        os.close(slave_fd)
        self._master_fd = master_fd
        self._pid = pid

        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

        self._is_alive = True
        self._read_task = asyncio.create_task(self._read_output_loop())
        logger.info(
            "Started shell %s (pid=%d, %dx%d)",
            self._shell_command, pid, self._cols, self._rows,
        )

    async def dispose(self) -> None:
        """Stop the shell subprocess gracefully."""
        self._disposing = True
        self._fail_pending("Shell disposed")

        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None

        if self._pid is not None:
            try:
                os.kill(self._pid, signal.SIGHUP)
                await asyncio.sleep(0.2)
                try:
                    os.waitpid(self._pid, os.WNOHANG)
                except ChildProcessError:
                    pass
                # Check if still alive
                try:
                    os.kill(self._pid, 0)
                    os.kill(self._pid, signal.SIGKILL)
                    os.waitpid(self._pid, 0)
                except (ProcessLookupError, ChildProcessError):
                    pass
            except ProcessLookupError:
                pass
            self._pid = None

        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None

        if self._is_alive:
            logger.info("Shell %s stopped", self._shell_command)
        self._is_alive = False

    async def run(self, command: str) -> str:
        """Type ``command`` into the shell and wait for its marker line."""
        if self._pending is not None:
            raise AdapterError("Shell is already running a command", adapter="local")
        pending = _PendingRun(command, asyncio.get_running_loop())
        self._pending = pending
        try:
            await self.send_input(pending.script)
            return await pending.future
        finally:
            self._pending = None

    async def send_input(self, data: str) -> None:
        """Send input data to the shell's stdin via pty."""
        if not self._is_alive or self._master_fd is None:
            raise AdapterError("Shell is not alive", adapter="local")
        try:
            os.write(self._master_fd, data.encode())
        except OSError as e:
            raise AdapterError(f"Failed to write to shell: {e}", adapter="local") from e

    async def interrupt(self) -> None:
        """Send Ctrl+C through the terminal, like a user would."""
        if not self._is_alive or self._master_fd is None:
            return
        try:
            os.write(self._master_fd, b"\x03")
            logger.debug("Sent SIGINT to shell pid=%s", self._pid)
        except OSError as e:
            logger.debug("Interrupt failed: %s", e)

    def _fail_pending(self, reason: str) -> None:
        if self._pending is not None and not self._pending.future.done():
            self._pending.future.set_exception(AdapterError(reason, adapter="local"))

    async def _read_output_loop(self) -> None:
        """Background task that reads shell output and fans it out."""
        loop = asyncio.get_running_loop()
        while self._is_alive and self._master_fd is not None:
            try:
                data = await loop.run_in_executor(None, self._read_master)
            except asyncio.CancelledError:
                break
            if data is None:
                continue
            if data == b"":
                self._handle_exit()
                break
            text = self._decoder.decode(data)
            if not text:
                continue
            logger.debug("Shell output: %d chars", len(text))
            try:
                self._emit_output(text)
            except Exception:
                logger.exception("Output listener failed")
            if self._pending is not None:
                self._pending.feed(text)

    def _handle_exit(self) -> None:
        self._is_alive = False
        code = -1
        if self._pid is not None:
            try:
                _, status = os.waitpid(self._pid, 0)
                code = os.waitstatus_to_exitcode(status)
            except ChildProcessError:
                pass
            self._pid = None
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None
        self._fail_pending(f"Shell exited with code {code}")
        if not self._disposing:
            logger.info("Shell %s exited with code %d", self._shell_command, code)
            self._emit_exit(code)

    def _read_master(self) -> bytes | None:
        """Read from the master pty fd (blocking call, run in executor).

        Returns None when nothing was ready and b"" once the shell is gone.
        """
        fd = self._master_fd
        if fd is None:
            return b""
        try:
            r, _, _ = select.select([fd], [], [], 0.1)
            if not r:
                return None
            data = os.read(fd, 4096)
        except BlockingIOError:
            return None
        except (OSError, ValueError):
            # EIO on the master side means the child closed the terminal
            return b""
        return data
