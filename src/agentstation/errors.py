"""Error taxonomy for terminal sessions.

Every Command API operation either returns normally or raises one of these.
Low-level ``OSError`` instances are chained as ``__cause__``.
"""

from __future__ import annotations

from typing import Any


class TerminalError(Exception):
    """Base class for all terminal session errors.

    Attributes:
        message: Human-readable error description.
        context: Extra key/value details (session id, fd, ...).
    """

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message


class ResourceAllocationError(TerminalError):
    """A pseudo-terminal or one of its handles could not be allocated."""


class SpawnError(TerminalError):
    """The shell could not be resolved or launched."""


class SessionNotFoundError(TerminalError):
    """An operation referenced a session id that is not registered."""

    def __init__(self, session_id: str) -> None:
        super().__init__("Terminal not found", context={"terminal_id": session_id})
        self.session_id = session_id


NotFoundError = SessionNotFoundError


class TerminalIOError(TerminalError):
    """A write, flush or resize on a registered session failed."""


class LockError(TerminalError):
    """A shared lock could not be acquired and is considered unusable."""
