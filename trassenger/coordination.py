"""
Cross-process coordination between the interactive session and the
background service.

There is no IPC. Two marker files in the data directory carry everything:

- tui.running exists while an interactive session runs. The background
  service skips its poll cycle while it is present.
- daemon.pid holds the pid of the running background service and keeps a
  second one from starting.

Markers are acquired as context managers and released on every exit path:
normal return, exceptions, cancellation from a termination signal, and
interpreter exit. A marker left behind by a killed process is detected by a
liveness probe on the recorded pid and reclaimed.
"""

import os
import atexit
import signal
import asyncio
import logging
from pathlib import Path
from typing import Optional

import psutil

from .audit import AuditLog

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGTERM", "SIGINT", "SIGHUP") if hasattr(signal, name)
)


class CoordinationError(Exception):
    """Base class for marker problems."""


class InstanceAlreadyRunning(CoordinationError):
    """A live background service already holds the single-instance marker."""

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"Trassenger daemon is already running (pid {pid})")


class StaleCoordinationMarker(CoordinationError):
    """A marker names a process that no longer exists."""

    def __init__(self, path: Path, pid: Optional[int]):
        self.path = path
        self.pid = pid
        super().__init__(f"Stale marker {path.name} (pid {pid})")


def is_process_alive(pid: int) -> bool:
    """Non-destructive liveness probe."""
    if pid <= 0:
        return False
    return psutil.pid_exists(pid)


class CoordinationMarker:
    """A marker file whose presence is the shared fact."""

    def __init__(self, path: Path, audit: Optional[AuditLog] = None):
        self.path = path
        self.audit = audit
        self._held = False

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def held(self) -> bool:
        return self._held

    def exists(self) -> bool:
        return self.path.exists()

    def read_owner(self) -> Optional[int]:
        """The pid recorded in the marker, or None if absent or unreadable."""
        try:
            content = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read marker {self.path}: {e}")
            return None
        try:
            return int(content)
        except ValueError:
            return None

    def _reclaim(self, error: StaleCoordinationMarker) -> None:
        logger.warning(f"{error}; reclaiming")
        if self.audit:
            self.audit.log_marker_reclaimed(self.name, error.pid or 0)
        self.path.unlink(missing_ok=True)

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(os.getpid()))

    def acquire(self) -> None:
        self._write()
        self._held = True
        atexit.register(self.release)
        logger.debug(f"Acquired marker {self.path}")

    def release(self) -> None:
        """Remove the marker if we hold it. Safe to call more than once."""
        if not self._held:
            return
        self._held = False
        atexit.unregister(self.release)
        try:
            self.path.unlink(missing_ok=True)
            logger.debug(f"Released marker {self.path}")
        except OSError as e:
            logger.error(f"Failed to remove marker {self.path}: {e}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


class ActiveSessionMarker(CoordinationMarker):
    """Present while an interactive session runs.

    Only presence matters. The file carries the owner's pid so a marker left
    by a killed session can be told apart from a live one; an empty or
    unparsable file counts as present.
    """

    def is_present(self) -> bool:
        if not self.exists():
            return False

        pid = self.read_owner()
        if pid is None or is_process_alive(pid):
            return True

        self._reclaim(StaleCoordinationMarker(self.path, pid))
        return False


class SingleInstanceMarker(CoordinationMarker):
    """Holds the background service's pid; one live holder at a time."""

    def check_owner(self) -> None:
        """Probe the recorded owner.

        Raises InstanceAlreadyRunning for a live owner and
        StaleCoordinationMarker for a dead or unreadable one.
        """
        pid = self.read_owner()
        if pid is not None and pid != os.getpid() and is_process_alive(pid):
            raise InstanceAlreadyRunning(pid)
        raise StaleCoordinationMarker(self.path, pid)

    def _write(self) -> None:
        # The marker only ever appears with its pid already inside; link()
        # fails with FileExistsError if another instance got there first.
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        tmp_path.write_text(str(os.getpid()))
        try:
            os.link(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def acquire(self) -> None:
        """Claim the marker. Raises InstanceAlreadyRunning, leaving the file untouched."""
        if self.exists():
            try:
                self.check_owner()
            except StaleCoordinationMarker as e:
                self._reclaim(e)

        try:
            super().acquire()
        except FileExistsError:
            # Another instance won the race since our check
            pid = self.read_owner()
            raise InstanceAlreadyRunning(pid or 0)

        logger.info(f"Daemon running with pid {os.getpid()}")


def install_signal_handlers(task: "asyncio.Task", loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
    """Turn termination signals into cancellation of the main task.

    Cancellation unwinds through the marker context managers, so every marker
    is released before the process exits.
    """
    loop = loop or asyncio.get_running_loop()

    for sig in TERMINATION_SIGNALS:
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError, ValueError):
            # No loop signal support (Windows); fall back to a plain handler
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(task.cancel))
