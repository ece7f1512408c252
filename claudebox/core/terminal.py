"""
Terminal bridge.

Starts a command inside a sandbox through `docker exec -it`, with the docker
client itself running on the slave side of a host pseudo-terminal. The master
side is read from the event loop and everything the process writes is
published, in order and otherwise untouched, to every subscriber queue.

Event channel contract:
- zero or more PtyOutput events, in the exact order the terminal produced them
- exactly one PtyExit event, after all output has been drained
"""

import asyncio
import codecs
import fcntl
import logging
import os
import shlex
import signal
import struct
import termios
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from claudebox.core.sandbox import WORKSPACE_MOUNT, SandboxHandle
from claudebox.lib.errors import BridgeError, ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_COLS = 80
DEFAULT_ROWS = 30
READ_CHUNK = 65536

# How long to wait for buffered output after the process has exited
DRAIN_TIMEOUT = 2.0

# Reading from the terminal pauses while any subscriber has this many events
# waiting, and resumes once every subscriber is below half of it
MAX_PENDING_EVENTS = 256


@dataclass(frozen=True)
class PtyOutput:
    """Text produced by the process."""

    data: str


@dataclass(frozen=True)
class PtyExit:
    """The process terminated. `code` follows the shell convention (128+N for signals)."""

    code: int
    signal: Optional[int] = None


PtyEvent = Union[PtyOutput, PtyExit]


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    safe_cols = max(1, int(cols))
    safe_rows = max(1, int(rows))
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", safe_rows, safe_cols, 0, 0))


class _EventQueue(asyncio.Queue):
    """Subscriber queue that reports every item taken off it."""

    def __init__(self, on_get):
        super().__init__()
        self._on_get = on_get

    def _get(self):
        item = super()._get()
        self._on_get()
        return item


class PtyProcess:
    """A process attached to a host pseudo-terminal."""

    def __init__(self, proc: asyncio.subprocess.Process, master_fd: int):
        self._proc = proc
        self._master_fd: Optional[int] = master_fd
        self._loop = asyncio.get_running_loop()
        self._decoder = codecs.getincrementaldecoder("utf-8")("replace")
        self._subscribers: list[asyncio.Queue] = []
        # Events produced before anyone subscribed
        self._backlog: list[PtyEvent] = []
        self._write_buffer = bytearray()
        self._reading = True
        self._paused = False
        self._reader_closed = asyncio.Event()
        self.exit: Optional[PtyExit] = None

        os.set_blocking(master_fd, False)
        self._loop.add_reader(master_fd, self._on_readable)
        self._wait_task = asyncio.create_task(self._wait_for_exit())

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> "PtyProcess":
        """Start argv on a new pseudo-terminal."""
        master_fd, slave_fd = os.openpty()
        try:
            _set_winsize(slave_fd, cols, rows)
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=env,
                cwd=cwd,
                start_new_session=True,
            )
        except Exception:
            os.close(master_fd)
            os.close(slave_fd)
            raise

        # Only the child holds the slave now, so EOF on master means it is gone
        os.close(slave_fd)
        return cls(proc, master_fd)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    @property
    def closed(self) -> bool:
        return self.exit is not None

    # --- Event channels ---

    def subscribe(self) -> asyncio.Queue:
        """Get a queue that receives every subsequent event.

        The first subscriber also receives anything produced before it
        subscribed, so no output is lost between spawn and attach.
        """
        queue: asyncio.Queue = _EventQueue(self._maybe_resume)
        if not self._subscribers:
            for event in self._backlog:
                queue.put_nowait(event)
            self._backlog.clear()
        elif self.exit is not None:
            queue.put_nowait(self.exit)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)
            self._maybe_resume()

    def _publish(self, event: PtyEvent) -> None:
        if not self._subscribers:
            self._backlog.append(event)
            return
        for queue in self._subscribers:
            queue.put_nowait(event)
        if any(queue.qsize() >= MAX_PENDING_EVENTS for queue in self._subscribers):
            self._pause()

    # --- Flow control ---

    @property
    def paused(self) -> bool:
        return self._paused

    def _pause(self) -> None:
        if self._paused or not self._reading:
            return
        self._paused = True
        self._loop.remove_reader(self._master_fd)

    def _resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        if self._reading and self._master_fd is not None:
            self._loop.add_reader(self._master_fd, self._on_readable)

    def _maybe_resume(self) -> None:
        if self._paused and all(
            queue.qsize() < MAX_PENDING_EVENTS // 2 for queue in self._subscribers
        ):
            self._resume()

    # --- Reading ---

    def _on_readable(self) -> None:
        try:
            chunk = os.read(self._master_fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side has been closed by the exiting process
            chunk = b""

        if not chunk:
            self._stop_reading()
            return

        text = self._decoder.decode(chunk)
        if text:
            self._publish(PtyOutput(text))

    def _stop_reading(self) -> None:
        if not self._reading:
            return
        self._reading = False
        if self._master_fd is not None:
            self._loop.remove_reader(self._master_fd)
            if self._write_buffer:
                self._loop.remove_writer(self._master_fd)
                self._write_buffer.clear()
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._publish(PtyOutput(tail))
        self._reader_closed.set()

    async def _wait_for_exit(self) -> None:
        returncode = await self._proc.wait()
        # Whatever is still buffered is bounded by the terminal, so drain it
        self._resume()
        try:
            await asyncio.wait_for(self._reader_closed.wait(), timeout=DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug(f"PTY {self.pid} still open after exit, closing")
            self._stop_reading()

        if returncode < 0:
            self.exit = PtyExit(code=128 - returncode, signal=-returncode)
        else:
            self.exit = PtyExit(code=returncode)
        self._close_fd()
        self._publish(self.exit)

    def _close_fd(self) -> None:
        if self._master_fd is None:
            return
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = None

    # --- Input and control ---

    def write(self, data: Union[str, bytes]) -> None:
        """Send keyboard input. Bytes are written in call order."""
        if self._master_fd is None or not self._reading:
            logger.debug(f"Dropping input for exited PTY {self.pid}")
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not data:
            return

        if self._write_buffer:
            self._write_buffer.extend(data)
            return

        try:
            written = os.write(self._master_fd, data)
        except BlockingIOError:
            written = 0
        except OSError as e:
            logger.warning(f"Write to PTY {self.pid} failed: {e}")
            return

        if written < len(data):
            self._write_buffer.extend(data[written:])
            self._loop.add_writer(self._master_fd, self._on_writable)

    def _on_writable(self) -> None:
        try:
            written = os.write(self._master_fd, self._write_buffer)
        except BlockingIOError:
            return
        except OSError as e:
            logger.warning(f"Write to PTY {self.pid} failed: {e}")
            written = len(self._write_buffer)
        del self._write_buffer[:written]
        if not self._write_buffer:
            self._loop.remove_writer(self._master_fd)

    def resize(self, cols: int, rows: int) -> None:
        """Change the terminal geometry and notify the process."""
        if self._master_fd is None:
            return
        _set_winsize(self._master_fd, cols, rows)
        # The docker client is not the slave's controlling process, so the
        # kernel will not deliver SIGWINCH on its own
        try:
            os.kill(self.pid, signal.SIGWINCH)
        except ProcessLookupError:
            pass

    async def terminate(self, timeout: float = 3.0) -> PtyExit:
        """Stop the process (SIGTERM, then SIGKILL) and wait for its exit event."""
        if self._proc.returncode is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(asyncio.shield(self._wait_task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"PTY process {self.pid} ignored SIGTERM, killing")
                try:
                    self._proc.kill()
                except ProcessLookupError:
                    pass
        await self._wait_task
        return self.exit


class TerminalBridge:
    """Attaches interactive terminals to processes inside sandboxes."""

    def __init__(self, workdir: str = WORKSPACE_MOUNT, term: str = "xterm-256color"):
        self.workdir = workdir
        self.term = term

    async def resolve_executable(self, handle: SandboxHandle, executable: str) -> bool:
        """Check that an executable is on PATH inside the sandbox."""
        proc = await asyncio.create_subprocess_exec(
            "docker", "exec", handle.target,
            "sh", "-c", 'command -v "$1"', "sh", executable,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            await asyncio.wait_for(proc.wait(), timeout=10.0)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return False
        return proc.returncode == 0

    def build_exec_args(self, handle: SandboxHandle, argv: Sequence[str]) -> list[str]:
        return [
            "docker", "exec", "-it",
            "-w", self.workdir,
            "-e", f"TERM={self.term}",
            handle.target,
            *argv,
        ]

    async def attach(
        self,
        handle: SandboxHandle,
        command: Union[str, Sequence[str]],
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
    ) -> PtyProcess:
        """Start `command` inside the sandbox on a new terminal.

        Raises BridgeError if the executable cannot be resolved inside the
        sandbox or the terminal cannot be created.
        """
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            raise BridgeError("No command to attach", session_id=handle.session_id)

        try:
            found = await self.resolve_executable(handle, argv[0])
        except OSError as e:
            raise BridgeError(f"Failed to inspect sandbox: {e}", session_id=handle.session_id) from e
        if not found:
            raise BridgeError(
                f"Executable '{argv[0]}' not found in sandbox",
                code=ErrorCode.EXECUTABLE_NOT_FOUND,
                session_id=handle.session_id,
            )

        env = dict(os.environ)
        env["TERM"] = self.term
        try:
            pty = await PtyProcess.spawn(
                self.build_exec_args(handle, argv), cols=cols, rows=rows, env=env
            )
        except OSError as e:
            raise BridgeError(f"Failed to attach terminal: {e}", session_id=handle.session_id) from e

        logger.info(f"Attached terminal (pid {pty.pid}) to {handle.name}: {' '.join(argv)}")
        return pty
