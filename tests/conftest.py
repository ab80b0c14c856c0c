"""Shared fixtures for terminal tests."""

from __future__ import annotations

import sys
import threading
import time
from typing import Callable, Iterator

import pytest

from agentstation.config import TerminalConfig
from agentstation.events import EventType, WireEvent
from agentstation.pty.manager import TerminalManager

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX PTYs")


class RecordingSink:
    """EventSink that stores events and lets tests wait on them."""

    def __init__(self) -> None:
        self.events: list[WireEvent] = []
        self._cond = threading.Condition()

    def emit(self, event: WireEvent) -> None:
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    def for_terminal(self, terminal_id: str) -> list[WireEvent]:
        with self._cond:
            return [e for e in self.events if e.terminal_id == terminal_id]

    def output(self, terminal_id: str) -> str:
        return "".join(
            e.data["data"]
            for e in self.for_terminal(terminal_id)
            if e.type == EventType.TERMINAL_OUTPUT
        )

    def exits(self, terminal_id: str) -> list[WireEvent]:
        return [e for e in self.for_terminal(terminal_id) if e.type == EventType.TERMINAL_EXIT]

    def wait_for(self, predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            while not predicate():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def terminal_config() -> TerminalConfig:
    return TerminalConfig(default_shell="/bin/sh")


@pytest.fixture
def manager(
    sink: RecordingSink,
    terminal_config: TerminalConfig,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[TerminalManager]:
    monkeypatch.setenv("SHELL", "/bin/sh")
    mgr = TerminalManager(sink, config=terminal_config)
    yield mgr
    for session_id in mgr.registry.ids():
        result = mgr.spawn_result(session_id)
        if result is not None and result.proc.poll() is None:
            result.proc.kill()
            result.proc.wait(timeout=5)
