"""
Cross-process lock for the token files.

Only one instance that changes the token files (new authorization or
refresh) may run at a time. The lock is an advisory exclusive lock on an
append-opened file; the operating system drops it when the holding process
exits, normally or not.
"""

import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

from .exceptions import LockTimeoutError

if os.name == "nt":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)


def _try_lock(fileobj) -> bool:
    """Attempt a non-blocking exclusive lock, returning whether it was taken."""
    try:
        if os.name == "nt":
            fileobj.seek(0)
            msvcrt.locking(fileobj.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(fileobj.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, PermissionError):
        return False
    except OSError:
        # msvcrt reports contention as a generic OSError (EDEADLOCK/EACCES)
        if os.name == "nt":
            return False
        raise
    return True


class LockCoordinator:
    """
    Advisory exclusive lock bound to a well-known path.

    Usage:
        lock = LockCoordinator(config.path(config.lock_file))
        lock.acquire(timeout=300)
        ...  # held until release() or process exit
    """

    def __init__(
        self,
        lock_file: Path,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize lock coordinator.

        Args:
            lock_file: Path of the lock target (content is irrelevant)
            poll_interval: Seconds between acquisition attempts
            clock: Monotonic clock used for the wait bound
            sleep: Sleep function used between attempts
        """
        self.lock_file = Path(lock_file)
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._fh = None

    @property
    def held(self) -> bool:
        return self._fh is not None

    def acquire(self, timeout: Optional[float] = None) -> None:
        """
        Acquire the lock, waiting if another process holds it.

        Args:
            timeout: Maximum seconds to wait (None waits indefinitely)

        Raises:
            LockTimeoutError: If the lock could not be taken within timeout
            OSError: If the lock file cannot be opened
        """
        if self._fh is not None:
            return

        fh = open(self.lock_file, "a")
        start = self._clock()

        if not _try_lock(fh):
            logger.info(
                f"waiting for lock on {self.lock_file} (is another instance running?)"
            )
            while not _try_lock(fh):
                if timeout is not None and self._clock() - start > timeout:
                    fh.close()
                    raise LockTimeoutError(
                        f"timeout: waiting for file lock on {self.lock_file}"
                    )
                self._sleep(self.poll_interval)

        self._fh = fh
        logger.debug(f"Acquired lock on {self.lock_file}")

    def release(self) -> None:
        """Release the lock by closing the lock file."""
        if self._fh is None:
            return
        self._fh.close()
        self._fh = None
        logger.debug(f"Released lock on {self.lock_file}")

    def __enter__(self) -> "LockCoordinator":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
