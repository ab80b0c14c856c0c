"""Terminal session: one spawned shell bound to its pseudo-terminal."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field

from agentstation.pty.channel import PtyChannel


class SessionInfo(BaseModel):
    """Point-in-time view of a session, as reported to the UI."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    project_id: str = Field(alias="projectId")
    is_running: bool = Field(alias="isRunning")


class Liveness:
    """Monotonic running flag: starts true, can only ever go false."""

    def __init__(self) -> None:
        self._running = True
        self._lock = threading.Lock()

    def stop(self) -> bool:
        """Flip to not-running. Returns True only for the first transition."""
        with self._lock:
            if not self._running:
                return False
            self._running = False
            return True

    def __bool__(self) -> bool:
        return self._running


def new_session_id() -> str:
    return str(uuid.uuid4())


@dataclass
class TerminalSession:
    """A registered terminal.

    The channels and the liveness flag are plain shared objects: the reader
    loop holds its own references to them, so removing the session from the
    registry never invalidates a running loop.
    """

    project_id: str
    input_channel: PtyChannel
    control_channel: PtyChannel
    id: str = field(default_factory=new_session_id)
    pid: int = 0
    liveness: Liveness = field(default_factory=Liveness)

    @property
    def alive(self) -> bool:
        return bool(self.liveness)

    def info(self) -> SessionInfo:
        return SessionInfo(id=self.id, project_id=self.project_id, is_running=self.alive)
