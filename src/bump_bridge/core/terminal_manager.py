"""Terminal manager for coordinating all terminal sessions.

This module multiplexes any number of PTY-backed shells:
- Session lifecycle (open, close, respawn of the last session on exit)
- Output fan-out: bounded buffer, on-disk log, data/title/exit events
- Best-effort cwd and git branch lookup

Each session has exactly one pump task that reads its PTY and is the only
writer of its buffer and log, so output is recorded in emission order.
"""

import asyncio
import codecs
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from bump_bridge.adapters.pty import PtyProcess
from bump_bridge.constants import (
    DEFAULT_COLS,
    DEFAULT_ROWS,
    KEEP_TERMINAL_LOGS,
    TERMINAL_BUFFER_BYTES,
    TERMINALS_DIR,
)
from bump_bridge.core.events import EventBus
from bump_bridge.core.output import LogSink, OutputBuffer
from bump_bridge.errors import SpawnFailure, UnknownTarget
from bump_bridge.models.events import TerminalDataEvent, TerminalExitEvent, TerminalTitleEvent
from bump_bridge.models.terminal import TerminalInfo, TerminalStatus
from bump_bridge.utils.process import find_git_branch, get_process_cwd
from bump_bridge.utils.terminal import (
    default_shell,
    extract_title,
    get_terminal_log_path,
    shell_environment,
    terminal_id_sequence,
)

logger = logging.getLogger(__name__)


class TerminalSession:
    """One interactive shell plus its buffer and log."""

    def __init__(self, terminal_id: str, cwd: str, log_path: Path, buffer_capacity: int):
        self.id = terminal_id
        self.initial_cwd = cwd
        self.last_cwd = cwd
        self.title = cwd
        self.buffer = OutputBuffer(buffer_capacity)
        self.log = LogSink(log_path)
        self.process: Optional[PtyProcess] = None
        self.status = TerminalStatus.STARTING
        self.cols = DEFAULT_COLS
        self.rows = DEFAULT_ROWS
        self.pending_input: List[bytes] = []
        self.pump_task: Optional[asyncio.Task] = None
        self.decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def alive(self) -> bool:
        return self.status == TerminalStatus.RUNNING and self.process is not None and self.process.alive

    def info(self) -> TerminalInfo:
        return TerminalInfo(
            id=self.id,
            log_path=str(self.log.path),
            title=self.title,
            alive=self.alive,
            status=self.status,
            pid=self.process.pid if self.process else None,
        )


class TerminalManager:
    """Registry of terminal sessions keyed by id.

    Attributes:
        event_bus: Where data/title/exit events are published
        terminals: Registry of live sessions (terminal_id -> TerminalSession)
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        buffer_capacity: int = TERMINAL_BUFFER_BYTES,
        log_dir: Path = TERMINALS_DIR,
        keep_logs: bool = KEEP_TERMINAL_LOGS,
        shell: Optional[str] = None,
    ):
        self.event_bus = event_bus or EventBus()
        self.buffer_capacity = buffer_capacity
        self.log_dir = Path(log_dir)
        self.keep_logs = keep_logs
        self.shell = shell
        self.terminals: Dict[str, TerminalSession] = {}
        self._ids = terminal_id_sequence()
        self._shutting_down = False

    async def open(self, cwd: Optional[str] = None) -> str:
        """Open a new terminal running a login shell.

        The id is registered before the shell is spawned, so writes issued
        while startup is in progress are queued rather than dropped.

        Raises:
            SpawnFailure: If the log file or the shell cannot be created
        """
        resolved_cwd = cwd or str(Path.home())
        terminal_id = next(self._ids)
        session = TerminalSession(
            terminal_id,
            resolved_cwd,
            get_terminal_log_path(terminal_id, self.log_dir),
            self.buffer_capacity,
        )
        self.terminals[terminal_id] = session

        try:
            await session.log.open()
            await self._spawn(session)
        except (SpawnFailure, OSError) as e:
            logger.error(f"Failed to open terminal {terminal_id}: {e}")
            self.terminals.pop(terminal_id, None)
            session.status = TerminalStatus.CLOSED
            await session.log.close(remove=True)
            if isinstance(e, SpawnFailure):
                raise
            raise SpawnFailure(f"Failed to create terminal log: {e}") from e

        if session.status == TerminalStatus.CLOSED:
            # close() ran while the shell was starting
            await self._release(session)
        else:
            logger.info(f"Opened terminal {terminal_id} in {resolved_cwd}")
        return terminal_id

    async def _spawn(self, session: TerminalSession) -> None:
        shell = self.shell or default_shell()
        process = PtyProcess(
            [shell, "-l"],
            cwd=session.initial_cwd,
            env=shell_environment(shell),
            cols=session.cols,
            rows=session.rows,
        )
        await process.spawn()

        session.process = process
        session.decoder.reset()
        if session.status != TerminalStatus.CLOSED:
            session.status = TerminalStatus.RUNNING
        for chunk in session.pending_input:
            process.write(chunk)
        session.pending_input.clear()
        session.pump_task = asyncio.create_task(
            self._pump(session, process), name=f"terminal-pump-{session.id}"
        )

    async def _pump(self, session: TerminalSession, process: PtyProcess) -> None:
        """Copy output until EOF or until the shell exits, whichever comes first.

        A background job can hold the pty open after the shell is gone, so the
        exit is watched separately rather than inferred from EOF.
        """
        code: Optional[int] = None
        exited = asyncio.create_task(process.wait(), name=f"terminal-wait-{session.id}")
        reader: Optional[asyncio.Future] = None
        try:
            while True:
                reader = asyncio.ensure_future(process.read())
                await asyncio.wait({reader, exited}, return_when=asyncio.FIRST_COMPLETED)
                if not reader.done():
                    reader.cancel()
                    break
                chunk = reader.result()
                if not chunk:
                    break
                await self._record_output(session, chunk)
            code = await exited
            for chunk in process.drain_output():
                await self._record_output(session, chunk)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Output pump failed for terminal {session.id}: {e}", exc_info=True)
            code = process.returncode
        finally:
            for task in (reader, exited):
                if task is not None and not task.done():
                    task.cancel()
        await self._handle_exit(session, process, code)

    async def _record_output(self, session: TerminalSession, chunk: bytes) -> None:
        session.buffer.append(chunk)
        try:
            await session.log.write(chunk)
        except OSError as e:
            logger.error(f"Failed to write terminal log {session.log.path}: {e}")
        self._publish_output(session, chunk)

    def _publish_output(self, session: TerminalSession, chunk: bytes) -> None:
        text = session.decoder.decode(chunk)
        if text:
            self.event_bus.publish(TerminalDataEvent(terminal_id=session.id, data=text))
        title = extract_title(text)
        if title and title != session.title:
            session.title = title
            self.event_bus.publish(TerminalTitleEvent(terminal_id=session.id, title=title))

    async def _handle_exit(
        self, session: TerminalSession, process: PtyProcess, code: Optional[int]
    ) -> None:
        if session.process is not process or session.status == TerminalStatus.CLOSED:
            return

        session.status = TerminalStatus.EXITED
        respawn = (
            not self._shutting_down
            and self.terminals.get(session.id) is session
            and len(self.terminals) == 1
        )
        logger.info(f"Terminal {session.id} exited with code {code} (respawn={respawn})")
        self.event_bus.publish(
            TerminalExitEvent(terminal_id=session.id, code=code, respawned=respawn)
        )
        await process.kill()

        if respawn:
            try:
                await self._spawn(session)
                logger.info(f"Respawned terminal {session.id}")
                return
            except SpawnFailure as e:
                logger.error(f"Failed to respawn terminal {session.id}: {e}")

        self.terminals.pop(session.id, None)
        await self._release(session)

    async def _release(self, session: TerminalSession) -> None:
        task = session.pump_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if session.process is not None:
            await session.process.kill()
        await session.log.close(remove=not self.keep_logs)
        session.buffer.clear()
        session.pending_input.clear()

    def write(self, terminal_id: str, data: Union[bytes, str]) -> None:
        """Forward raw input to a terminal. Unknown ids are ignored."""
        session = self.terminals.get(terminal_id)
        if session is None:
            logger.debug(f"Ignoring write to unknown terminal {terminal_id}")
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        if session.status != TerminalStatus.RUNNING or session.process is None:
            session.pending_input.append(data)
            return
        session.process.write(data)

    def resize(self, terminal_id: str, cols: int, rows: int) -> None:
        """Propagate terminal geometry, clamped to at least 1x1. Unknown ids are ignored."""
        session = self.terminals.get(terminal_id)
        if session is None:
            logger.debug(f"Ignoring resize of unknown terminal {terminal_id}")
            return
        session.cols = max(1, int(cols))
        session.rows = max(1, int(rows))
        if session.process is not None:
            session.process.resize(session.cols, session.rows)

    async def close(self, terminal_id: str) -> None:
        """Terminate a terminal and release its resources. Idempotent."""
        session = self.terminals.pop(terminal_id, None)
        if session is None:
            logger.debug(f"Terminal already closed: {terminal_id}")
            return
        previous = session.status
        session.status = TerminalStatus.CLOSED
        if previous == TerminalStatus.STARTING and session.process is None:
            # open() finishes the teardown once the spawn returns
            return
        await self._release(session)
        logger.info(f"Closed terminal {terminal_id}")

    def get(self, terminal_id: str) -> TerminalSession:
        session = self.terminals.get(terminal_id)
        if session is None:
            raise UnknownTarget(f"Terminal '{terminal_id}' not found")
        return session

    def snapshot(self, terminal_id: str) -> str:
        """Current bounded-buffer contents, verbatim."""
        return self.get(terminal_id).buffer.text()

    def snapshots(self, terminal_ids: Optional[List[str]] = None) -> List[Tuple[str, str]]:
        """(terminal_id, snapshot) pairs for the given ids, or every terminal. Unknown ids are skipped."""
        ids = list(self.terminals) if terminal_ids is None else terminal_ids
        return [(tid, self.terminals[tid].buffer.text()) for tid in ids if tid in self.terminals]

    async def cwd(self, terminal_id: str) -> str:
        """Best-effort working directory; falls back to the last known value."""
        session = self.get(terminal_id)
        pid = session.process.pid if session.process else None
        if pid is not None:
            found = await asyncio.to_thread(get_process_cwd, pid)
            if found:
                session.last_cwd = found
        return session.last_cwd

    async def branch(self, terminal_id: str) -> Optional[str]:
        directory = await self.cwd(terminal_id)
        return await asyncio.to_thread(find_git_branch, directory)

    def list_terminals(self) -> List[TerminalInfo]:
        return [session.info() for session in self.terminals.values()]

    async def close_all(self) -> None:
        """Close every terminal; respawn is disabled from here on.

        Errors are logged but don't stop cleanup.
        """
        self._shutting_down = True
        if not self.terminals:
            return
        logger.info(f"Closing {len(self.terminals)} terminals")
        for terminal_id in list(self.terminals):
            try:
                await self.close(terminal_id)
            except Exception as e:
                logger.error(f"Error closing terminal {terminal_id}: {e}")
