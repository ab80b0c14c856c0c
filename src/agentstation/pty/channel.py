"""Lock-guarded handles onto the controlling end of a pseudo-terminal."""

from __future__ import annotations

import fcntl
import logging
import os
import struct
import termios
import threading

from agentstation.errors import LockError, TerminalIOError

logger = logging.getLogger(__name__)

MAX_DIMENSION = 65535


class PtyChannel:
    """One file descriptor on the PTY master plus the lock that guards it.

    A session holds two of these: one for input bytes and one for geometry
    changes. The lock is held only for the duration of the syscall. Once
    closed, the fd number is never touched again, so a recycled fd can't be
    written to by mistake.
    """

    def __init__(self, fd: int, name: str = "channel", lock_timeout: float = 5.0) -> None:
        self._fd = fd
        self._name = name
        self._lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._closed = False

    @property
    def fd(self) -> int:
        return self._fd

    @property
    def closed(self) -> bool:
        return self._closed

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise LockError(
                f"Timed out waiting for {self._name} lock",
                context={"fd": self._fd, "timeout": self._lock_timeout},
            )

    def write_all(self, data: bytes) -> None:
        """Write every byte of ``data``; partial writes are continued."""
        self._acquire()
        try:
            if self._closed:
                raise TerminalIOError(f"{self._name} is closed", context={"fd": self._fd})
            view = memoryview(data)
            try:
                while view:
                    written = os.write(self._fd, view)
                    view = view[written:]
            except OSError as e:
                raise TerminalIOError(
                    f"Failed to write to terminal: {e}", context={"fd": self._fd}
                ) from e
        finally:
            self._lock.release()

    def set_size(self, cols: int, rows: int) -> None:
        """Apply a new window size (TIOCSWINSZ); the kernel signals SIGWINCH."""
        if not (1 <= cols <= MAX_DIMENSION and 1 <= rows <= MAX_DIMENSION):
            raise ValueError(f"Invalid terminal size {cols}x{rows}")
        winsize = struct.pack("HHHH", rows, cols, 0, 0)
        self._acquire()
        try:
            if self._closed:
                raise TerminalIOError(f"{self._name} is closed", context={"fd": self._fd})
            try:
                fcntl.ioctl(self._fd, termios.TIOCSWINSZ, winsize)
            except OSError as e:
                raise TerminalIOError(
                    f"Failed to resize terminal: {e}", context={"fd": self._fd}
                ) from e
        finally:
            self._lock.release()

    def get_size(self) -> tuple[int, int]:
        """Return the current ``(cols, rows)``."""
        self._acquire()
        try:
            if self._closed:
                raise TerminalIOError(f"{self._name} is closed", context={"fd": self._fd})
            try:
                packed = fcntl.ioctl(self._fd, termios.TIOCGWINSZ, b"\0" * 8)
            except OSError as e:
                raise TerminalIOError(
                    f"Failed to query terminal size: {e}", context={"fd": self._fd}
                ) from e
        finally:
            self._lock.release()
        rows, cols, _, _ = struct.unpack("HHHH", packed)
        return cols, rows

    def close(self) -> None:
        """Close the fd. Idempotent; waits for an in-flight syscall to finish."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                os.close(self._fd)
            except OSError as e:
                logger.debug("Closing %s fd %d failed: %s", self._name, self._fd, e)
