"""Exclusive file locks behind a small provider interface."""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import IO, Protocol

from host_relay.bus.errors import LedgerLockError


class LockHandle:
    """Open, exclusively locked file; reads and writes go through the locked stream."""

    def __init__(self, path: Path, stream: IO[str]) -> None:
        self.path = path
        self.stream = stream

    @property
    def closed(self) -> bool:
        return self.stream.closed

    def write_text(self, text: str) -> None:
        self.stream.seek(0)
        self.stream.truncate()
        self.stream.write(text)
        self.stream.flush()

    def read_text(self) -> str:
        self.stream.seek(0)
        return self.stream.read()


class LockProvider(Protocol):
    """Try-acquire / release mutex on a path."""

    def try_acquire(self, path: Path) -> LockHandle | None:
        """Return a locked handle, or None when someone else holds the lock."""

    def release(self, handle: LockHandle) -> None:
        """Unlock and close the handle."""

    def is_locked(self, path: Path) -> bool:
        """Single non-blocking probe: True when another holder has the path locked."""


def _open_stream(path: Path, *, create: bool) -> IO[str]:
    flags = os.O_RDWR | (os.O_CREAT if create else 0)
    fd = os.open(str(path), flags, 0o644)
    return os.fdopen(fd, "r+", encoding="utf-8")


def _lock(stream: IO[str]) -> None:
    stream.seek(0)
    if os.name == "nt":
        import msvcrt

        msvcrt.locking(stream.fileno(), msvcrt.LK_NBLCK, 1)
    else:
        import fcntl

        fcntl.flock(stream.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock(stream: IO[str]) -> None:
    stream.seek(0)
    if os.name == "nt":
        import msvcrt

        msvcrt.locking(stream.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(stream.fileno(), fcntl.LOCK_UN)


class FileLockProvider:
    """OS-level advisory locks (``flock`` on POSIX, ``msvcrt.locking`` on Windows)."""

    def try_acquire(self, path: Path) -> LockHandle | None:
        path.parent.mkdir(parents=True, exist_ok=True)
        stream = _open_stream(path, create=True)
        try:
            _lock(stream)
        except OSError:
            stream.close()
            return None
        return LockHandle(path, stream)

    def release(self, handle: LockHandle) -> None:
        try:
            _unlock(handle.stream)
        except OSError as error:
            raise LedgerLockError(f"Failed to unlock {handle.path}: {error}") from error
        finally:
            handle.stream.close()

    def is_locked(self, path: Path) -> bool:
        try:
            stream = _open_stream(path, create=False)
        except FileNotFoundError:
            return False
        except OSError:
            return True
        try:
            _lock(stream)
        except OSError:
            return True
        else:
            _unlock(stream)
            return False
        finally:
            stream.close()


class InMemoryLockProvider:
    """Lock bookkeeping in process memory; files are still real, locks are not."""

    def __init__(self) -> None:
        self._held: set[Path] = set()
        self._guard = threading.Lock()

    def try_acquire(self, path: Path) -> LockHandle | None:
        key = path.resolve()
        with self._guard:
            if key in self._held:
                return None
            path.parent.mkdir(parents=True, exist_ok=True)
            stream = _open_stream(path, create=True)
            self._held.add(key)
        return LockHandle(path, stream)

    def release(self, handle: LockHandle) -> None:
        with self._guard:
            self._held.discard(handle.path.resolve())
        handle.stream.close()

    def is_locked(self, path: Path) -> bool:
        with self._guard:
            return path.resolve() in self._held
