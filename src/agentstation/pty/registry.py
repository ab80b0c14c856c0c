"""Session registry: the single source of truth for which terminals exist."""

from __future__ import annotations

import threading

from agentstation.pty.session import SessionInfo, TerminalSession


class SessionRegistry:
    """Thread-safe mapping from session id to ``TerminalSession``.

    One coarse lock guards the map. It is held for the dict operation only;
    callers do their terminal I/O on the returned session after the lock is
    released, so no method here ever blocks on a process or a PTY.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, TerminalSession] = {}
        self._lock = threading.Lock()

    def insert(self, session: TerminalSession) -> None:
        """Register a session. Ids are never reused, so a clash is a bug."""
        with self._lock:
            if session.id in self._sessions:
                raise KeyError(f"Session id already registered: {session.id}")
            self._sessions[session.id] = session

    def get(self, session_id: str) -> TerminalSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> TerminalSession | None:
        """Drop a session and return it, or None if it wasn't registered."""
        with self._lock:
            return self._sessions.pop(session_id, None)

    def snapshot(self) -> list[TerminalSession]:
        with self._lock:
            return list(self._sessions.values())

    def list(self) -> list[SessionInfo]:
        return [s.info() for s in self.snapshot()]

    def find_by_project(self, project_id: str) -> TerminalSession | None:
        """Return the first session found for ``project_id``.

        Several sessions may share a project id; which one wins is not
        defined. Use ``find_all_by_project`` when that matters.
        """
        with self._lock:
            for session in self._sessions.values():
                if session.project_id == project_id:
                    return session
        return None

    def find_all_by_project(self, project_id: str) -> list[TerminalSession]:
        with self._lock:
            return [s for s in self._sessions.values() if s.project_id == project_id]

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
