"""Cross-process advisory lock on a sibling lock file.

Every read-modify-write of the index runs inside ``FileLock`` so two CLI
invocations never lose each other's updates.  The lock is tied to an open
file descriptor, so the OS releases it if the process dies; in-process it
is released by the context manager on every exit path.

POSIX uses ``fcntl.flock``; Windows uses ``msvcrt.locking`` on the first
byte of the lock file.
"""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from types import TracebackType

from loguru import logger

from nebi.local.errors import Cancelled, IOFailure

if sys.platform == "win32":
    import msvcrt

    def _acquire(fd: int, blocking: bool) -> bool:
        os.lseek(fd, 0, os.SEEK_SET)
        try:
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        except OSError:
            return False
        return True

    def _release(fd: int) -> None:
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _acquire(fd: int, blocking: bool) -> bool:
        flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        try:
            fcntl.flock(fd, flags)
        except BlockingIOError:
            return False
        return True

    def _release(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_UN)


_POLL_INTERVAL = 0.05


class FileLock:
    """Exclusive lock on ``path``, usable as a context manager.

    ``timeout=None`` blocks until the lock is granted.  A finite timeout
    polls and raises ``Cancelled`` when it expires.
    """

    def __init__(self, path: str | Path, timeout: float | None = None) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self._fd: int | None = None

    @property
    def is_locked(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            msg = f"lock {self.path} is already held by this object"
            raise RuntimeError(msg)
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as exc:
            raise IOFailure.wrap("opening lock file", self.path, exc) from exc

        try:
            self._wait(fd)
        except BaseException:
            os.close(fd)
            raise
        self._fd = fd
        logger.debug("Acquired lock {}", self.path)

    def _wait(self, fd: int) -> None:
        # Windows has no blocking variant that waits indefinitely, so poll there.
        if self.timeout is None and sys.platform != "win32":
            _acquire(fd, blocking=True)
            return
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while not _acquire(fd, blocking=False):
            if deadline is not None and time.monotonic() >= deadline:
                msg = f"timed out after {self.timeout}s waiting for {self.path}"
                raise Cancelled(msg)
            time.sleep(_POLL_INTERVAL)

    def release(self) -> None:
        fd = self._fd
        if fd is None:
            return
        self._fd = None
        try:
            _release(fd)
        finally:
            os.close(fd)
        logger.debug("Released lock {}", self.path)

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
