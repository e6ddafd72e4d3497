"""Per-terminal output storage.

OutputBuffer keeps a bounded, newest-biased window of raw output in memory.
LogSink appends the same output to an unbounded on-disk log.
"""

import logging
from pathlib import Path

import aiofiles

logger = logging.getLogger(__name__)


class OutputBuffer:
    """Bounded byte window; the oldest bytes are evicted first."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"Buffer capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._data = bytearray()

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        if len(chunk) >= self.capacity:
            self._data = bytearray(chunk[-self.capacity:])
            return
        self._data.extend(chunk)
        overflow = len(self._data) - self.capacity
        if overflow > 0:
            del self._data[:overflow]

    def getvalue(self) -> bytes:
        return bytes(self._data)

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class LogSink:
    """Append-only on-disk log for one terminal."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._file = None

    @property
    def is_open(self) -> bool:
        return self._file is not None

    async def open(self) -> None:
        """Create (or truncate) the log file and open it for appending."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.path, "wb"):
            pass
        self._file = await aiofiles.open(self.path, "ab")

    async def write(self, chunk: bytes) -> None:
        if self._file is None or not chunk:
            return
        await self._file.write(chunk)
        await self._file.flush()

    async def close(self, remove: bool = False) -> None:
        """Close the log handle. Safe to call multiple times."""
        log_file, self._file = self._file, None
        if log_file is not None:
            try:
                await log_file.close()
            except OSError as e:
                logger.error(f"Failed to close terminal log {self.path}: {e}")
        if remove:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove terminal log {self.path}: {e}")
