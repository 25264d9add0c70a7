"""Advisory file locking.

The lease state of a node is guarded by an advisory lock on a dedicated lock file. The lock is
honored only by cooperating processes, i.e. by the lease scripts (`flock` utility) and by
`AdvisoryLock`.

The exclusive mode never queues: if the lock is held by anybody else, the acquisition fails
immediately. The shared mode waits for the writer, optionally up to a timeout, so readers are
blocked only while a writer holds the lock.
"""

import contextlib
import fcntl
import logging
import os
import pathlib as pl
import time
import typing as tp

import filelock

from colo_fleet.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

# Suppress messages from filelock
logging.getLogger("filelock").setLevel(logging.WARNING)


class LockUnavailable(Exception):
    """The advisory lock is held by somebody else."""


class AdvisoryLock:
    """Shared / exclusive advisory lock on a lock file.

    The exclusive mode is `filelock.UnixFileLock`, which takes `flock(LOCK_EX)` on the lock file.
    The shared mode takes `flock(LOCK_SH)` on the same file, so the two modes conflict with each
    other the same way the `flock` utility does.
    """

    def __init__(self, path: ttypes.FileType) -> None:
        self.path = pl.Path(path)
        self._exclusive = filelock.UnixFileLock(str(self.path), timeout=0)
        self._shared_fd: int | None = None

    @property
    def is_locked(self) -> bool:
        return self._shared_fd is not None or self._exclusive.is_locked

    def acquire_shared(
        self, *, timeout: float | None = None, poll_interval: float = 0.05
    ) -> None:
        """Acquire the lock in shared mode, waiting at most `timeout` seconds.

        With `timeout=None` wait as long as it takes.
        """
        if self.is_locked:
            msg = f"Lock '{self.path}' is already held by this object."
            raise RuntimeError(msg)

        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        if timeout is None:
            try:
                fcntl.flock(fd, fcntl.LOCK_SH)
            except OSError:
                os.close(fd)
                raise
            self._shared_fd = fd
            return

        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    msg = f"Timed out waiting for shared lock on '{self.path}'."
                    raise LockUnavailable(msg) from None
                time.sleep(poll_interval)
            else:
                break

        self._shared_fd = fd

    def acquire_exclusive_nonblocking(self) -> None:
        """Acquire the lock in exclusive mode, or fail immediately with `LockUnavailable`."""
        if self.is_locked:
            msg = f"Lock '{self.path}' is already held by this object."
            raise RuntimeError(msg)

        try:
            self._exclusive.acquire(blocking=False)
        except filelock.Timeout as exc:
            msg = f"Lock '{self.path}' is held by another process."
            raise LockUnavailable(msg) from exc

    def release(self) -> None:
        """Release the lock, whatever the mode it was acquired in."""
        if self._shared_fd is not None:
            fd, self._shared_fd = self._shared_fd, None
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
        elif self._exclusive.is_locked:
            self._exclusive.release()

    @contextlib.contextmanager
    def shared(self, *, timeout: float | None = None) -> tp.Iterator["AdvisoryLock"]:
        """Hold the lock in shared mode - context manager."""
        self.acquire_shared(timeout=timeout)
        try:
            yield self
        finally:
            self.release()

    @contextlib.contextmanager
    def exclusive(self) -> tp.Iterator["AdvisoryLock"]:
        """Hold the lock in exclusive mode - context manager."""
        self.acquire_exclusive_nonblocking()
        try:
            yield self
        finally:
            self.release()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({str(self.path)!r})"
