"""Event stream: decouples terminal reader loops from the UI.

Reader loops push ``terminal-output`` and ``terminal-exit`` events into an
``EventSink``. The default sink is ``Wire``, a broadcast bus that hands events
to asyncio-queue subscribers and to plain callback listeners. Reader loops run
on their own threads, so every delivery path here is thread-safe.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    TERMINAL_OUTPUT = "terminal-output"
    TERMINAL_EXIT = "terminal-exit"


class TerminalOutput(BaseModel):
    """Payload shared by both event kinds. ``data`` is empty for exits."""

    model_config = ConfigDict(populate_by_name=True)

    terminal_id: str = Field(alias="terminalId")
    data: str = ""


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal_id(self) -> str:
        return self.data.get("terminalId", "")

    def to_message(self) -> dict[str, Any]:
        """Render as the ``{"event", "payload"}`` object sent to the host UI."""
        return {"event": self.type.value, "payload": dict(self.data)}


def output_event(terminal_id: str, data: str) -> WireEvent:
    payload = TerminalOutput(terminal_id=terminal_id, data=data)
    return WireEvent(type=EventType.TERMINAL_OUTPUT, data=payload.model_dump(by_alias=True))


def exit_event(terminal_id: str) -> WireEvent:
    payload = TerminalOutput(terminal_id=terminal_id)
    return WireEvent(type=EventType.TERMINAL_EXIT, data=payload.model_dump(by_alias=True))


class EventSink(Protocol):
    """Anything a reader loop can push events into."""

    def emit(self, event: WireEvent) -> None: ...


Listener = Callable[[WireEvent], None]


class Wire:
    """Thread-safe broadcast bus: reader loops -> UI subscribers.

    Many producers (one per session), many consumers. Queue subscribers
    created inside a running event loop are fed through
    ``call_soon_threadsafe``; listeners are called synchronously on the
    producing thread and must not block.
    """

    def __init__(self) -> None:
        self._subscribers: list[
            tuple[asyncio.Queue[WireEvent | None], asyncio.AbstractEventLoop | None]
        ] = []
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._closed: bool = False

    def emit(self, event: WireEvent) -> None:
        """Deliver an event to every subscriber and listener.

        Silently drops events after ``close()`` has been called.
        """
        with self._lock:
            if self._closed:
                return
            subscribers = list(self._subscribers)
            listeners = list(self._listeners)

        for q, loop in subscribers:
            _put(q, loop, event)

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed on %s", event.type.value)

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from.

        When called from a coroutine the queue is bound to the running loop,
        so events produced on reader threads are handed over safely.
        """
        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        with self._lock:
            self._subscribers.append((q, loop))
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        with self._lock:
            self._subscribers = [(sq, lp) for sq, lp in self._subscribers if sq is not q]

    def add_listener(self, listener: Listener) -> None:
        """Register a synchronous callback invoked for every event."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Signal all queue subscribers that the wire is closing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscribers = list(self._subscribers)
        for q, loop in subscribers:
            _put(q, loop, None)


def _put(
    q: asyncio.Queue[WireEvent | None],
    loop: asyncio.AbstractEventLoop | None,
    item: WireEvent | None,
) -> None:
    if loop is None:
        q.put_nowait(item)
        return
    try:
        loop.call_soon_threadsafe(q.put_nowait, item)
    except RuntimeError:
        # Loop already closed; the subscriber is gone.
        logger.debug("Dropping event for subscriber on closed loop")
