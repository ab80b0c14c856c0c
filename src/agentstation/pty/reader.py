"""Background units that run for a session's whole life.

Each session gets its own reader thread and its own reaper thread. Nothing
here touches the registry, and nothing here raises into a caller: a failing
session only ever stops itself.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading

from agentstation.events import EventSink, WireEvent, exit_event, output_event
from agentstation.pty.channel import PtyChannel
from agentstation.pty.session import Liveness

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 4096


class OutputReaderLoop(threading.Thread):
    """Blocking read loop forwarding PTY output to an ``EventSink``.

    One reader per session keeps chunks in byte order. On EOF or a read
    error the loop flips liveness, emits exactly one exit event, closes its
    read fd and closes the session's channels so later writes fail cleanly.
    """

    def __init__(
        self,
        session_id: str,
        read_fd: int,
        sink: EventSink,
        liveness: Liveness,
        channels: tuple[PtyChannel, ...] = (),
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        super().__init__(name=f"pty-reader-{session_id[:8]}", daemon=True)
        self.session_id = session_id
        self._read_fd = read_fd
        self._sink = sink
        self._liveness = liveness
        self._channels = channels
        self._chunk_size = chunk_size
        self.bytes_read = 0

    def run(self) -> None:
        try:
            while True:
                try:
                    data = os.read(self._read_fd, self._chunk_size)
                except OSError as e:
                    # Linux reports a hung-up PTY master as EIO rather than EOF.
                    logger.debug("PTY reader %s ended: %s", self.session_id, e)
                    break

                if not data:
                    break

                self.bytes_read += len(data)
                self._emit(output_event(self.session_id, data.decode("utf-8", errors="replace")))
        finally:
            self._finish()

    def _emit(self, event: WireEvent) -> None:
        try:
            self._sink.emit(event)
        except Exception:
            logger.exception("Event sink failed for terminal %s", self.session_id)

    def _finish(self) -> None:
        if self._liveness.stop():
            logger.info("Terminal %s exited (%d bytes read)", self.session_id, self.bytes_read)
        self._emit(exit_event(self.session_id))

        try:
            os.close(self._read_fd)
        except OSError:
            pass
        for channel in self._channels:
            channel.close()


class ChildReaper(threading.Thread):
    """Waits for the shell to exit so the OS can reclaim it."""

    def __init__(self, session_id: str, proc: subprocess.Popen) -> None:
        super().__init__(name=f"pty-reaper-{session_id[:8]}", daemon=True)
        self.session_id = session_id
        self._proc = proc
        self.returncode: int | None = None

    def run(self) -> None:
        try:
            self.returncode = self._proc.wait()
        except Exception as e:
            logger.debug("Reaper for terminal %s failed: %s", self.session_id, e)
            return
        logger.debug(
            "Terminal %s process %d reaped (code=%s)",
            self.session_id,
            self._proc.pid,
            self.returncode,
        )
