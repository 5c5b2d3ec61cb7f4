"""Per-plugin exclusive locks.

Two layers: an in-process lock per plugin name (threads of one process)
and an advisory file lock under ``locks_dir`` (separate processes). Both
are held for the whole install/update/uninstall.
"""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from uniplug.errors import InstallInProgress
from uniplug.registry.models import check_plugin_name

logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
_thread_locks: Dict[str, threading.Lock] = {}


def _thread_lock_for(key: str) -> threading.Lock:
    with _registry_lock:
        lock = _thread_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _thread_locks[key] = lock
        return lock


def _try_lock_file(handle) -> bool:
    if os.name == "nt":
        import msvcrt

        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
        except OSError:
            return False
        return True
    import fcntl

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False
    return True


def _unlock_file(handle) -> None:
    if os.name == "nt":
        import msvcrt

        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        except OSError:
            return
        return
    import fcntl

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    except OSError:
        return


class PluginLock:
    """Context manager holding the exclusive lock for one plugin.

    With ``wait=False`` contention raises InstallInProgress immediately.
    With ``wait=True`` it polls until ``timeout`` (None waits forever).
    """

    def __init__(
        self,
        locks_dir: Path,
        name: str,
        wait: bool = False,
        timeout: Optional[float] = None,
        poll_interval: float = 0.1,
    ) -> None:
        self.name = check_plugin_name(name)
        self.path = locks_dir / f"{self.name}.lock"
        self.wait = wait
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._thread_lock = _thread_lock_for(str(self.path.resolve()))
        self._handle: Any = None

    def _busy(self) -> InstallInProgress:
        return InstallInProgress(
            "another operation on this plugin is in progress",
            plugin_name=self.name,
            operation="lock",
        )

    def acquire(self) -> None:
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        if self.wait:
            if not self._thread_lock.acquire(timeout=-1 if self.timeout is None else self.timeout):
                raise self._busy()
        elif not self._thread_lock.acquire(blocking=False):
            raise self._busy()

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.path, "a+")
            while not _try_lock_file(handle):
                if not self.wait or (deadline is not None and time.monotonic() >= deadline):
                    handle.close()
                    raise self._busy()
                time.sleep(self.poll_interval)
            self._handle = handle
        except BaseException:
            self._thread_lock.release()
            raise
        logger.debug(f"Acquired lock for {self.name}")

    def release(self) -> None:
        if self._handle is not None:
            _unlock_file(self._handle)
            self._handle.close()
            self._handle = None
        self._thread_lock.release()
        logger.debug(f"Released lock for {self.name}")

    def __enter__(self) -> "PluginLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
