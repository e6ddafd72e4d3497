"""PTY adapter for a single pseudo-terminal-backed process.

The adapter owns one OS process attached to a fresh pty pair:
- spawn(): allocate the pty, start the process with the slave as its
  controlling terminal, begin event-driven reads of the master
- read(): next output chunk in emission order, b"" at EOF
- write(): non-blocking input, partial writes are drained when writable
- resize(): TIOCSWINSZ on the master
- kill(): tear down the whole process tree and close the master
"""

import asyncio
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from typing import Dict, List, Optional

from bump_bridge.constants import (
    DEFAULT_COLS,
    DEFAULT_ROWS,
    PROCESS_KILL_TIMEOUT,
    PTY_READ_SIZE,
)
from bump_bridge.errors import SpawnFailure
from bump_bridge.utils.process import (
    collect_session_processes,
    signal_processes,
    terminate_process_tree,
)

logger = logging.getLogger(__name__)

# bound on drain_output() reads, a background job may keep writing forever
DRAIN_MAX_READS = 64


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", max(1, int(rows)), max(1, int(cols)), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); fd 0 is already the pty slave.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


class PtyProcess:
    """One process attached to a pseudo-terminal.

    Attributes:
        argv: Command line of the process
        cwd: Working directory the process was started in
        env: Process environment
        cols, rows: Current terminal geometry
    """

    def __init__(
        self,
        argv: List[str],
        cwd: str,
        env: Optional[Dict[str, str]] = None,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
    ):
        self.argv = argv
        self.cwd = cwd
        self.env = env
        self.cols = max(1, cols)
        self.rows = max(1, rows)

        self._process: Optional[asyncio.subprocess.Process] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._master_fd: Optional[int] = None
        self._chunks: "asyncio.Queue[bytes]" = asyncio.Queue()
        self._eof = False
        self._reading = False
        self._write_buffer = bytearray()
        self._writer_registered = False
        self._killed = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.returncode is None and not self._killed

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    async def spawn(self) -> None:
        """Start the process.

        Raises:
            RuntimeError: If already spawned
            SpawnFailure: If the pty or the process cannot be created
        """
        if self._process is not None:
            raise RuntimeError(f"PTY process already spawned: pid={self._process.pid}")

        self._loop = asyncio.get_running_loop()
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnFailure(f"Failed to allocate a pseudo-terminal: {e}") from e

        try:
            _set_winsize(master_fd, self.cols, self.rows)
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.cwd,
                env=self.env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            reason = getattr(e, "strerror", None) or str(e)
            raise SpawnFailure(f"Failed to start {self.argv[0]} in {self.cwd}: {reason}") from e
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        self._master_fd = master_fd
        self._loop.add_reader(master_fd, self._on_readable)
        self._reading = True
        logger.info(f"Spawned {self.argv[0]} pid={self._process.pid} cwd={self.cwd}")

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, PTY_READ_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            # Linux reports EIO once every slave descriptor is closed
            if e.errno != errno.EIO:
                logger.warning(f"PTY read error pid={self.pid}: {e}")
            data = b""

        if data:
            self._chunks.put_nowait(data)
        else:
            self._mark_eof()

    def _mark_eof(self) -> None:
        self._stop_reading()
        if not self._eof:
            self._eof = True
            self._chunks.put_nowait(b"")

    def _stop_reading(self) -> None:
        if self._reading and self._loop is not None and self._master_fd is not None:
            self._loop.remove_reader(self._master_fd)
        self._reading = False

    async def read(self) -> bytes:
        """Return the next output chunk, or b"" once the output stream has ended."""
        if self._eof and self._chunks.empty():
            return b""
        return await self._chunks.get()

    def drain_output(self) -> List[bytes]:
        """Output already produced but not yet consumed, without waiting.

        Used once the process has exited while something else still holds the
        slave open, so no EOF will arrive.
        """
        chunks = []
        while not self._chunks.empty():
            chunk = self._chunks.get_nowait()
            if chunk:
                chunks.append(chunk)
        for _ in range(DRAIN_MAX_READS):
            if not self._reading:
                break
            try:
                data = os.read(self._master_fd, PTY_READ_SIZE)
            except BlockingIOError:
                break
            except OSError as e:
                if e.errno != errno.EIO:
                    logger.warning(f"PTY read error pid={self.pid}: {e}")
                data = b""
            if not data:
                self._mark_eof()
                break
            chunks.append(data)
        return chunks

    def write(self, data: bytes) -> None:
        if self._master_fd is None:
            logger.debug(f"Dropping {len(data)} bytes written to a closed PTY")
            return
        self._write_buffer.extend(data)
        self._flush_writes()

    def _flush_writes(self) -> None:
        fd = self._master_fd
        if fd is None:
            self._write_buffer.clear()
            return

        while self._write_buffer:
            try:
                written = os.write(fd, self._write_buffer)
            except BlockingIOError:
                break
            except OSError as e:
                logger.warning(f"PTY write failed pid={self.pid}: {e}")
                self._write_buffer.clear()
                break
            del self._write_buffer[:written]

        if self._write_buffer and not self._writer_registered:
            self._loop.add_writer(fd, self._flush_writes)
            self._writer_registered = True
        elif not self._write_buffer and self._writer_registered:
            self._loop.remove_writer(fd)
            self._writer_registered = False

    def resize(self, cols: int, rows: int) -> None:
        self.cols = max(1, int(cols))
        self.rows = max(1, int(rows))
        if self._master_fd is None:
            return
        try:
            _set_winsize(self._master_fd, self.cols, self.rows)
        except OSError as e:
            logger.warning(f"PTY resize failed pid={self.pid}: {e}")

    async def wait(self) -> Optional[int]:
        """Wait for the process to exit and return its status."""
        if self._process is None:
            return None
        return await self._process.wait()

    async def kill(self, timeout: float = PROCESS_KILL_TIMEOUT) -> None:
        """Terminate the process tree and release the master fd.

        Safe to call multiple times. Release failures are logged, not raised.
        """
        if self._killed:
            return
        self._killed = True

        self._stop_reading()
        if self._writer_registered and self._loop is not None and self._master_fd is not None:
            self._loop.remove_writer(self._master_fd)
            self._writer_registered = False

        if self._process is not None:
            try:
                # Interactive shells ignore SIGTERM; SIGHUP is what a closing terminal sends
                await terminate_process_tree(self._process, timeout, first_signal=signal.SIGHUP)
                # the shell leads its own session; jobs it left behind still carry its sid
                leftovers = await asyncio.to_thread(collect_session_processes, self._process.pid)
                if leftovers:
                    logger.info(f"Killing {len(leftovers)} leftover processes of session {self._process.pid}")
                    signal_processes(leftovers, signal.SIGKILL)
            except Exception as e:
                logger.error(f"Failed to terminate process tree pid={self._process.pid}: {e}")

        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError as e:
                logger.error(f"Failed to close PTY master fd={self._master_fd}: {e}")
            self._master_fd = None

        self._write_buffer.clear()
        if not self._eof:
            self._eof = True
            self._chunks.put_nowait(b"")
