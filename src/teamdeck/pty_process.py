"""A child process attached to a pseudoterminal, driven by the asyncio loop."""

from __future__ import annotations

import asyncio
import errno
import fcntl
import os
import pty
import signal
import struct
import termios
from typing import Callable, Protocol, Sequence

from .logging import get_logger

logger = get_logger(__name__)

_READ_CHUNK_BYTES = 8192

DataCallback = Callable[[bytes], None]
ExitCallback = Callable[[int], None]


class ProcessHandle(Protocol):
    """What the session manager needs from a running terminal process."""

    @property
    def pid(self) -> int: ...

    def write(self, data: bytes) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def kill(self, sig: int) -> None: ...


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", max(rows, 2), max(cols, 2), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); fd 0 is the pty slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def resolve_signal(name: str) -> int:
    candidate = name.strip().upper()
    if not candidate.startswith("SIG"):
        candidate = "SIG" + candidate
    try:
        return int(getattr(signal, candidate))
    except AttributeError as exc:
        raise ValueError(f"Unknown signal: {name}") from exc


class PtyProcess:
    """Own the PTY master fd of one child process.

    Output is read with ``loop.add_reader`` and handed to ``on_data`` chunk by
    chunk. When the child exits, output still buffered in the PTY is drained
    before ``on_exit`` fires, so exit is always the last callback.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        master_fd: int,
        on_data: DataCallback,
        on_exit: ExitCallback,
    ):
        self._process = process
        self._master_fd = master_fd
        self._on_data = on_data
        self._on_exit = on_exit
        self._loop = asyncio.get_running_loop()
        self._pending = bytearray()
        self._reading = False
        self._writing = False
        self._closed = False
        self._waiter: asyncio.Task[None] | None = None
        self.returncode: int | None = None

    @property
    def pid(self) -> int:
        return self._process.pid

    @classmethod
    async def start(
        cls,
        command: str,
        args: Sequence[str],
        *,
        cwd: str,
        env: dict[str, str],
        cols: int,
        rows: int,
        on_data: DataCallback,
        on_exit: ExitCallback,
    ) -> "PtyProcess":
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(master_fd, cols, rows)
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        instance = cls(process, master_fd, on_data, on_exit)
        instance._start_reading()
        instance._waiter = asyncio.create_task(instance._wait())
        return instance

    def write(self, data: bytes) -> None:
        if self._closed or not data:
            return
        if self._pending:
            self._pending.extend(data)
            return
        try:
            written = os.write(self._master_fd, data)
        except BlockingIOError:
            written = 0
        except OSError as exc:
            logger.debug("Write to pty of pid %s failed: %s", self.pid, exc)
            return
        if written < len(data):
            self._pending.extend(data[written:])
            self._start_writing()

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        _set_winsize(self._master_fd, cols, rows)

    def kill(self, sig: int = signal.SIGHUP) -> None:
        if self.returncode is not None or self._process.returncode is not None:
            return
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._process.send_signal(sig)

    async def wait(self) -> int:
        if self._waiter is not None:
            await asyncio.shield(self._waiter)
        return self.returncode if self.returncode is not None else -1

    def _start_reading(self) -> None:
        if not self._reading:
            self._loop.add_reader(self._master_fd, self._on_readable)
            self._reading = True

    def _stop_reading(self) -> None:
        if self._reading:
            self._loop.remove_reader(self._master_fd)
            self._reading = False

    def _start_writing(self) -> None:
        if not self._writing:
            self._loop.add_writer(self._master_fd, self._on_writable)
            self._writing = True

    def _stop_writing(self) -> None:
        if self._writing:
            self._loop.remove_writer(self._master_fd)
            self._writing = False

    def _read_chunk(self) -> bytes | None:
        """Return the next chunk, ``b""`` when nothing is ready, ``None`` at end of stream."""
        try:
            data = os.read(self._master_fd, _READ_CHUNK_BYTES)
        except BlockingIOError:
            return b""
        except OSError as exc:
            # Linux reports EIO once every slave handle has been closed.
            if exc.errno != errno.EIO:
                logger.debug("Read from pty of pid %s failed: %s", self.pid, exc)
            return None
        return data or None

    def _on_readable(self) -> None:
        data = self._read_chunk()
        if data is None:
            self._stop_reading()
            return
        if data:
            self._on_data(data)

    def _on_writable(self) -> None:
        try:
            written = os.write(self._master_fd, self._pending)
        except BlockingIOError:
            return
        except OSError as exc:
            logger.debug("Write to pty of pid %s failed: %s", self.pid, exc)
            self._pending.clear()
            self._stop_writing()
            return
        del self._pending[:written]
        if not self._pending:
            self._stop_writing()

    def _drain(self) -> None:
        while self._reading:
            data = self._read_chunk()
            if not data:
                break
            self._on_data(data)

    def _close(self) -> None:
        if self._closed:
            return
        self._stop_reading()
        self._stop_writing()
        self._pending.clear()
        self._closed = True
        try:
            os.close(self._master_fd)
        except OSError:
            pass

    async def _wait(self) -> None:
        returncode = await self._process.wait()
        self._drain()
        self._close()
        self.returncode = returncode
        self._on_exit(returncode)
