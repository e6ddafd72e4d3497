"""Process utilities: process-tree teardown, cwd and git branch lookup."""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Iterable, List, Optional

import psutil

logger = logging.getLogger(__name__)


def collect_process_tree(pid: int) -> List[psutil.Process]:
    """Return the descendants of ``pid`` (deepest first) followed by the process itself."""
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return []
    try:
        descendants = root.children(recursive=True)
    except psutil.Error:
        descendants = []
    return list(reversed(descendants)) + [root]


def collect_session_processes(sid: int) -> List[psutil.Process]:
    """Live processes whose session id is ``sid``.

    Includes background jobs that outlived the session leader.
    """
    found = []
    for proc in psutil.process_iter():
        try:
            if os.getsid(proc.pid) == sid and is_alive(proc):
                found.append(proc)
        except (OSError, psutil.Error):
            continue
    return found


def is_alive(proc: psutil.Process) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.Error:
        return False


def signal_processes(procs: Iterable[psutil.Process], sig: int) -> int:
    """Send ``sig`` to every process still running. Returns how many were signalled."""
    sent = 0
    for proc in procs:
        try:
            proc.send_signal(sig)
            sent += 1
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as e:
            logger.warning(f"Not allowed to signal pid {proc.pid}: {e}")
    return sent


async def terminate_process_tree(
    process: asyncio.subprocess.Process,
    timeout: float,
    first_signal: int = signal.SIGTERM,
) -> Optional[int]:
    """Stop an asyncio subprocess and all of its descendants.

    Sends ``first_signal`` to the whole tree, waits up to ``timeout`` seconds
    for the root to exit, then SIGKILLs anything still alive.

    Returns:
        The root's exit status, or None if it could not be reaped.
    """
    if process.returncode is not None:
        return process.returncode

    procs = await asyncio.to_thread(collect_process_tree, process.pid)
    signal_processes(procs, first_signal)

    try:
        await asyncio.wait_for(process.wait(), timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} still running after {timeout}s, sending SIGKILL")

    survivors = [proc for proc in procs if is_alive(proc)]
    if survivors:
        signal_processes(survivors, signal.SIGKILL)

    try:
        return await asyncio.wait_for(process.wait(), timeout)
    except asyncio.TimeoutError:
        logger.error(f"Failed to reap process {process.pid}; it may be leaked")
        return None


def get_process_cwd(pid: int) -> Optional[str]:
    """Best-effort working directory of a running process."""
    try:
        return psutil.Process(pid).cwd()
    except (psutil.Error, OSError) as e:
        logger.debug(f"Could not read cwd of pid {pid}: {e}")
        return None


def find_git_branch(directory: str) -> Optional[str]:
    """Walk up from ``directory`` to the nearest .git/HEAD and return the branch.

    Returns the short commit sha for a detached HEAD, or None outside a repository.
    """
    current = Path(directory).resolve()
    for candidate in [current, *current.parents]:
        head = candidate / ".git" / "HEAD"
        if head.is_file():
            try:
                content = head.read_text(encoding="utf-8").strip()
            except OSError:
                return None
            prefix = "ref: refs/heads/"
            if content.startswith(prefix):
                return content[len(prefix):]
            return content[:7]
    return None
