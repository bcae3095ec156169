"""Filesystem cache store.

Objects are only ever made visible by renaming a fully written, fsynced
staging file from the same directory onto the final name. Readers therefore
see either nothing or a complete object, without any locking. Two concurrent
populates of the same key each write their own staging file and the last
rename wins.
"""

from __future__ import annotations

import asyncio
import os
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

import structlog

from .paths import resolve_cache_path


LOGGER = structlog.get_logger("lancache.store")

DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644


@dataclass(frozen=True)
class CacheEntry:
    path: Path
    size: int


class StagingFile:
    """Temporary file that becomes a cache object on :meth:`commit`."""

    def __init__(self, final_path: Path, file_mode: int = DEFAULT_FILE_MODE) -> None:
        self.final_path = final_path
        fd, name = tempfile.mkstemp(dir=final_path.parent, prefix=final_path.name + ".tmp")
        self.path = Path(name)
        self._handle = os.fdopen(fd, "wb")
        self._file_mode = file_mode
        self.bytes_written = 0
        self.committed = False

    @property
    def closed(self) -> bool:
        return self._handle.closed

    async def write(self, chunk: bytes) -> None:
        if not chunk:
            return
        await asyncio.to_thread(self._handle.write, chunk)
        self.bytes_written += len(chunk)

    def _finalize(self) -> None:
        self._handle.flush()
        os.fsync(self._handle.fileno())
        self._handle.close()
        # mkstemp creates 0600 files
        os.chmod(self.path, self._file_mode)
        os.replace(self.path, self.final_path)

    async def commit(self) -> int:
        await asyncio.to_thread(self._finalize)
        self.committed = True
        return self.bytes_written

    def discard(self) -> None:
        """Close and delete the staging file. Safe to call more than once."""

        if self.committed:
            return
        try:
            self._handle.close()
        except OSError as exc:
            LOGGER.warning("while closing staging file", path=str(self.path), error=str(exc))
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.error("while removing staging file", path=str(self.path), error=str(exc))


class CacheStore:
    def __init__(self, root: Path, dir_mode: int = DEFAULT_DIR_MODE) -> None:
        self.root = Path(root)
        self._dir_mode = dir_mode

    def initialise(self) -> None:
        self.root.mkdir(mode=self._dir_mode, parents=True, exist_ok=True)

    def resolve(self, request_path: str) -> Path:
        return resolve_cache_path(self.root, request_path)

    def lookup(self, path: Path) -> Optional[CacheEntry]:
        try:
            info = os.stat(path)
        except (OSError, ValueError):
            return None
        if not stat.S_ISREG(info.st_mode):
            return None
        return CacheEntry(path=path, size=info.st_size)

    def ensure_parent(self, path: Path) -> None:
        if path == self.root or path.is_dir():
            raise IsADirectoryError(f"cache path {path} is a directory")
        path.parent.mkdir(mode=self._dir_mode, parents=True, exist_ok=True)

    def stage(self, path: Path) -> StagingFile:
        return StagingFile(path)

    async def populate(self, staging: StagingFile, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """Tee ``chunks`` into ``staging`` while yielding them to the caller.

        The staging file is committed once ``chunks`` is exhausted. If the
        source fails, a write fails, the commit fails or the consumer stops
        early, the staging file is removed and nothing is renamed.
        """

        try:
            async for chunk in chunks:
                await staging.write(chunk)
                yield chunk
            await staging.commit()
        finally:
            if not staging.committed:
                staging.discard()
