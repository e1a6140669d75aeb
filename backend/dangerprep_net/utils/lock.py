from __future__ import annotations

import fcntl
import os
import threading
import time
from typing import IO, Optional

from ..config import settings
from ..errors import LockTimeoutError, PrivilegeError


class NetworkLock:
    """Exclusive advisory lock on the network lock file.

    Re-entrant within a process: nested ``with`` blocks share one flock.
    """

    def __init__(self, path: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self._path = path
        self._timeout = timeout
        self._fh: Optional[IO[str]] = None
        self._depth = 0
        self._mutex = threading.RLock()

    @property
    def path(self) -> str:
        return self._path or settings.lock_file

    def acquire(self) -> None:
        timeout = settings.lock_timeout if self._timeout is None else self._timeout
        if not self._mutex.acquire(timeout=timeout):
            raise LockTimeoutError(f"Failed to acquire network state lock {self.path} within {timeout:g}s")
        if self._depth > 0:
            self._depth += 1
            return
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            fh = open(self.path, "a+", encoding="utf-8")
        except PermissionError as exc:
            self._mutex.release()
            raise PrivilegeError(f"Cannot open network state lock {self.path}: {exc.strerror}; run as root") from exc
        except OSError as exc:
            self._mutex.release()
            raise LockTimeoutError(f"Cannot open network state lock {self.path}: {exc}") from exc
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    fh.close()
                    self._mutex.release()
                    raise LockTimeoutError(f"Failed to acquire network state lock {self.path} within {timeout:g}s")
                time.sleep(0.2)
        fh.seek(0)
        fh.truncate()
        fh.write(str(os.getpid()))
        fh.flush()
        self._fh = fh
        self._depth = 1

    def release(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0 and self._fh is not None:
            fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
            self._fh.close()
            self._fh = None
        self._mutex.release()

    def __enter__(self) -> "NetworkLock":
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


network_lock = NetworkLock()
