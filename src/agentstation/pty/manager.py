"""Terminal manager: the command surface the UI layer calls."""

from __future__ import annotations

import logging

from agentstation.config import TerminalConfig
from agentstation.errors import SessionNotFoundError, TerminalError
from agentstation.events import EventSink
from agentstation.pty.registry import SessionRegistry
from agentstation.pty.session import SessionInfo, TerminalSession
from agentstation.pty.spawn import SpawnOrchestrator, SpawnResult

logger = logging.getLogger(__name__)

INTERRUPT = b"\x03"  # Ctrl+C


class TerminalManager:
    """Manages the lifecycle of project terminals.

    Every operation looks the session up under the registry lock, then does
    its I/O on the session's own channel, so one session's slow syscall never
    holds up another session or the registry.

    Known limitations:
    - ``kill`` only sends Ctrl+C. A shell that ignores it keeps running and
      its reader keeps emitting output, though the registry no longer lists it.
    - Sessions that exit on their own stay listed (not running) until killed.
    """

    def __init__(
        self,
        sink: EventSink,
        registry: SessionRegistry | None = None,
        config: TerminalConfig | None = None,
    ) -> None:
        self._registry = registry if registry is not None else SessionRegistry()
        self._orchestrator = SpawnOrchestrator(self._registry, sink, config)
        self._spawned: dict[str, SpawnResult] = {}

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def spawn(self, project_id: str, cwd: str) -> str:
        """Start a login shell for ``project_id`` in ``cwd``; return its id."""
        result = self._orchestrator.spawn(project_id, cwd)
        self._spawned[result.session.id] = result
        return result.session.id

    def _require(self, session_id: str) -> TerminalSession:
        session = self._registry.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def write(self, session_id: str, data: bytes | str) -> None:
        """Send input bytes to the terminal.

        A failed write leaves the session registered; if the shell died, the
        reader reports it through the exit event.
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        session = self._require(session_id)
        session.input_channel.write_all(data)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        session = self._require(session_id)
        session.control_channel.set_size(cols, rows)
        logger.info("Resized terminal %s to %dx%d", session_id, cols, rows)

    def kill(self, session_id: str) -> None:
        """Unregister the session and ask its shell to interrupt.

        Unknown ids are ignored.
        """
        session = self._registry.remove(session_id)
        if session is None:
            return

        session.liveness.stop()
        try:
            session.input_channel.write_all(INTERRUPT)
        except TerminalError as e:
            logger.debug("Interrupt for terminal %s not delivered: %s", session_id, e)
        self._spawned.pop(session_id, None)
        logger.info("Killed terminal %s (pid=%d)", session_id, session.pid)

    def status(self, session_id: str) -> bool:
        """Whether the session is running; unknown ids report False."""
        session = self._registry.get(session_id)
        return session.alive if session is not None else False

    def list(self) -> list[SessionInfo]:
        return self._registry.list()

    def find_by_project(self, project_id: str) -> SessionInfo | None:
        session = self._registry.find_by_project(project_id)
        return session.info() if session is not None else None

    def find_all_by_project(self, project_id: str) -> list[SessionInfo]:
        return [s.info() for s in self._registry.find_all_by_project(project_id)]

    def spawn_result(self, session_id: str) -> SpawnResult | None:
        """Process and thread handles for a registered session (for waiting/tests)."""
        return self._spawned.get(session_id)

    def shutdown(self) -> None:
        """Interrupt every registered session. Called when the host exits."""
        for session_id in self._registry.ids():
            self.kill(session_id)
        logger.info("All terminals interrupted")

    def __len__(self) -> int:
        return len(self._registry)
