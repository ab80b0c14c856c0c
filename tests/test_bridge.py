"""Tests for agentstation.bridge (commands, registry, StdioBridge)."""

from __future__ import annotations

import io
import json
import os
import signal
import threading
import time
from pathlib import Path
from typing import Any

import pytest

from agentstation.bridge import (
    BridgeError,
    CommandRegistry,
    ResizeArgs,
    SpawnArgs,
    StdioBridge,
)
from agentstation.config import TerminalConfig
from agentstation.events import Wire
from agentstation.pty.manager import TerminalManager
from conftest import posix_only


class LineCollector(io.TextIOBase):
    """Thread-safe stdout stand-in that keeps parsed JSON lines."""

    def __init__(self) -> None:
        self._buf = ""
        self._lock = threading.Lock()
        self.messages: list[dict[str, Any]] = []

    def write(self, s: str) -> int:
        with self._lock:
            self._buf += s
            while "\n" in self._buf:
                line, self._buf = self._buf.split("\n", 1)
                self.messages.append(json.loads(line))
        return len(s)

    def snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self.messages)

    def wait_for(self, predicate, timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate(self.snapshot()):
                return True
            time.sleep(0.02)
        return False


@pytest.fixture
def wire_manager(monkeypatch: pytest.MonkeyPatch) -> tuple[Wire, TerminalManager]:
    monkeypatch.setenv("SHELL", "/bin/sh")
    wire = Wire()
    return wire, TerminalManager(wire, config=TerminalConfig())


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------


class TestArgs:
    def test_camel_case_aliases(self) -> None:
        args = SpawnArgs.model_validate({"projectId": "p1", "cwd": "/tmp"})
        assert args.project_id == "p1"

    def test_resize_bounds(self) -> None:
        with pytest.raises(Exception):
            ResizeArgs.model_validate({"terminalId": "t", "cols": 0, "rows": 24})

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(Exception):
            SpawnArgs.model_validate({"projectId": "p", "cwd": "/", "shell": "zsh"})


# ---------------------------------------------------------------------------
# CommandRegistry
# ---------------------------------------------------------------------------


class TestCommandRegistry:
    def test_default_commands(self) -> None:
        reg = CommandRegistry.default()
        assert set(reg.names()) == {
            "spawn_terminal",
            "write_terminal",
            "resize_terminal",
            "kill_terminal",
            "get_terminal_status",
            "get_terminal_for_project",
            "get_terminals_for_project",
            "list_terminals",
        }
        assert "list_terminals" in reg
        assert len(reg) == 8

    def test_unknown_command(self, wire_manager) -> None:
        _, manager = wire_manager
        with pytest.raises(BridgeError) as exc_info:
            CommandRegistry.default().dispatch(manager, "format_disk", {})
        assert exc_info.value.kind == "UnknownCommand"

    def test_invalid_arguments(self, wire_manager) -> None:
        _, manager = wire_manager
        with pytest.raises(BridgeError):
            CommandRegistry.default().dispatch(manager, "write_terminal", {"terminalId": "x"})


# ---------------------------------------------------------------------------
# StdioBridge.handle_line
# ---------------------------------------------------------------------------


class TestHandleLine:
    def _bridge(self, wire_manager) -> StdioBridge:
        wire, manager = wire_manager
        return StdioBridge(manager, wire, io.StringIO(), io.StringIO())

    def test_invalid_json(self, wire_manager) -> None:
        resp = self._bridge(wire_manager).handle_line("{not json")
        assert resp["ok"] is False
        assert resp["id"] is None
        assert resp["error"]["kind"] == "BadRequest"

    def test_non_object(self, wire_manager) -> None:
        resp = self._bridge(wire_manager).handle_line("[1, 2]")
        assert resp["error"]["kind"] == "BadRequest"

    def test_missing_cmd(self, wire_manager) -> None:
        resp = self._bridge(wire_manager).handle_line('{"id": 3}')
        assert resp == {
            "id": 3,
            "ok": False,
            "error": {"kind": "BadRequest", "message": "Request needs 'cmd' and object 'args'"},
        }

    def test_list_empty(self, wire_manager) -> None:
        resp = self._bridge(wire_manager).handle_line('{"id": 1, "cmd": "list_terminals"}')
        assert resp == {"id": 1, "ok": True, "result": []}

    def test_status_unknown_is_false(self, wire_manager) -> None:
        resp = self._bridge(wire_manager).handle_line(
            '{"id": 2, "cmd": "get_terminal_status", "args": {"terminalId": "nope"}}'
        )
        assert resp == {"id": 2, "ok": True, "result": False}

    def test_kill_unknown_is_ok(self, wire_manager) -> None:
        resp = self._bridge(wire_manager).handle_line(
            '{"id": 2, "cmd": "kill_terminal", "args": {"terminalId": "nope"}}'
        )
        assert resp["ok"] is True

    def test_write_unknown_is_not_found(self, wire_manager) -> None:
        resp = self._bridge(wire_manager).handle_line(
            '{"id": 4, "cmd": "write_terminal", "args": {"terminalId": "nope", "data": "ls\\n"}}'
        )
        assert resp["ok"] is False
        assert resp["error"]["kind"] == "SessionNotFoundError"

    def test_project_lookup_none(self, wire_manager) -> None:
        resp = self._bridge(wire_manager).handle_line(
            '{"id": 5, "cmd": "get_terminal_for_project", "args": {"projectId": "p"}}'
        )
        assert resp == {"id": 5, "ok": True, "result": None}

    @posix_only
    def test_spawn_in_missing_dir(self, wire_manager, tmp_path: Path) -> None:
        request = {
            "id": 6,
            "cmd": "spawn_terminal",
            "args": {"projectId": "p", "cwd": str(tmp_path / "missing")},
        }
        resp = self._bridge(wire_manager).handle_line(json.dumps(request))
        assert resp["ok"] is False
        assert resp["error"]["kind"] == "SpawnError"


# ---------------------------------------------------------------------------
# StdioBridge.serve: full round trip over pipes
# ---------------------------------------------------------------------------


@posix_only
class TestServe:
    def test_session_round_trip(self, wire_manager, tmp_path: Path) -> None:
        wire, manager = wire_manager
        r, w = os.pipe()
        stdin = os.fdopen(r, "r")
        requests = os.fdopen(w, "w")
        stdout = LineCollector()
        bridge = StdioBridge(manager, wire, stdin, stdout)
        server = threading.Thread(target=bridge.serve)
        server.start()

        def send(obj: dict[str, Any]) -> None:
            requests.write(json.dumps(obj) + "\n")
            requests.flush()

        def response(request_id: int) -> dict[str, Any]:
            assert stdout.wait_for(lambda msgs: any(m.get("id") == request_id for m in msgs))
            return next(m for m in stdout.snapshot() if m.get("id") == request_id)

        try:
            send({"id": 1, "cmd": "spawn_terminal", "args": {"projectId": "p1", "cwd": str(tmp_path)}})
            terminal_id = response(1)["result"]

            send({"id": 2, "cmd": "write_terminal",
                  "args": {"terminalId": terminal_id, "data": "echo $((40 + 2))\n"}})
            assert response(2)["ok"] is True

            def output(msgs: list[dict[str, Any]]) -> str:
                return "".join(
                    m["payload"]["data"]
                    for m in msgs
                    if m.get("event") == "terminal-output"
                    and m["payload"]["terminalId"] == terminal_id
                )

            assert stdout.wait_for(lambda msgs: "42" in output(msgs))

            send({"id": 3, "cmd": "resize_terminal",
                  "args": {"terminalId": terminal_id, "cols": 132, "rows": 43}})
            assert response(3)["ok"] is True

            send({"id": 4, "cmd": "get_terminal_for_project", "args": {"projectId": "p1"}})
            assert response(4)["result"] == {
                "id": terminal_id, "projectId": "p1", "isRunning": True,
            }

            send({"id": 5, "cmd": "write_terminal",
                  "args": {"terminalId": terminal_id, "data": "exit\n"}})
            assert stdout.wait_for(
                lambda msgs: any(
                    m.get("event") == "terminal-exit"
                    and m["payload"] == {"terminalId": terminal_id, "data": ""}
                    for m in msgs
                )
            )

            send({"id": 6, "cmd": "get_terminal_status", "args": {"terminalId": terminal_id}})
            assert response(6)["result"] is False
        finally:
            requests.close()
            server.join(10)

        assert not server.is_alive()
        assert wire.closed is True
        assert manager.list() == []

    def test_blocked_write_does_not_stall_other_terminal(
        self, wire_manager, tmp_path: Path
    ) -> None:
        wire, manager = wire_manager
        r, w = os.pipe()
        stdin = os.fdopen(r, "r")
        requests = os.fdopen(w, "w")
        stdout = LineCollector()
        bridge = StdioBridge(manager, wire, stdin, stdout)
        server = threading.Thread(target=bridge.serve)
        server.start()
        pids: list[int] = []

        def send(obj: dict[str, Any]) -> None:
            requests.write(json.dumps(obj) + "\n")
            requests.flush()

        def response(request_id: int, timeout: float = 10.0) -> dict[str, Any] | None:
            if not stdout.wait_for(
                lambda msgs: any(m.get("id") == request_id for m in msgs), timeout
            ):
                return None
            return next(m for m in stdout.snapshot() if m.get("id") == request_id)

        try:
            send({"id": 1, "cmd": "spawn_terminal", "args": {"projectId": "a", "cwd": str(tmp_path)}})
            send({"id": 2, "cmd": "spawn_terminal", "args": {"projectId": "b", "cwd": str(tmp_path)}})
            a = response(1)["result"]
            b = response(2)["result"]
            pids += [manager.registry.get(a).pid, manager.registry.get(b).pid]

            # Once sleep owns A's terminal nobody reads its input, so complete
            # lines fill the line discipline and the next big write blocks.
            send({"id": 3, "cmd": "write_terminal",
                  "args": {"terminalId": a, "data": "echo go-$((1 + 1)); exec sleep 15\n"}})
            assert stdout.wait_for(
                lambda msgs: any(
                    m.get("event") == "terminal-output"
                    and m["payload"]["terminalId"] == a
                    and "go-2" in m["payload"]["data"]
                    for m in msgs
                )
            )
            time.sleep(0.2)

            flood = ("x" * 99 + "\n") * 3000
            send({"id": 4, "cmd": "write_terminal", "args": {"terminalId": a, "data": flood}})
            send({"id": 5, "cmd": "resize_terminal",
                  "args": {"terminalId": b, "cols": 132, "rows": 43}})

            started = time.monotonic()
            resized = response(5, timeout=3.0)
            assert resized is not None, "resize on B waited behind the write to A"
            assert resized["ok"] is True
            assert time.monotonic() - started < 3.0
            assert response(4, timeout=0.1) is None
            assert manager.registry.get(b).control_channel.get_size() == (132, 43)
        finally:
            # Hang up A's terminal so the stuck write fails and its worker exits.
            for pid in pids:
                try:
                    os.kill(pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
            requests.close()
            server.join(10)

        assert not server.is_alive()
        write_a = response(4)
        assert write_a is not None
        assert write_a["ok"] is False

    def test_writes_to_one_terminal_keep_order(self, wire_manager, tmp_path: Path) -> None:
        wire, manager = wire_manager
        r, w = os.pipe()
        stdin = os.fdopen(r, "r")
        requests = os.fdopen(w, "w")
        stdout = LineCollector()
        bridge = StdioBridge(manager, wire, stdin, stdout)
        server = threading.Thread(target=bridge.serve)
        server.start()

        def send(obj: dict[str, Any]) -> None:
            requests.write(json.dumps(obj) + "\n")
            requests.flush()

        try:
            send({"id": 1, "cmd": "spawn_terminal", "args": {"projectId": "p", "cwd": str(tmp_path)}})
            assert stdout.wait_for(lambda msgs: any(m.get("id") == 1 for m in msgs))
            terminal_id = next(m for m in stdout.snapshot() if m.get("id") == 1)["result"]

            for i, chunk in enumerate(["echo ord", "er-$((3 ", "+ 4))\n"], start=2):
                send({"id": i, "cmd": "write_terminal",
                      "args": {"terminalId": terminal_id, "data": chunk}})

            def output(msgs: list[dict[str, Any]]) -> str:
                return "".join(
                    m["payload"]["data"]
                    for m in msgs
                    if m.get("event") == "terminal-output"
                    and m["payload"]["terminalId"] == terminal_id
                )

            assert stdout.wait_for(lambda msgs: "order-7" in output(msgs))

            send({"id": 9, "cmd": "kill_terminal", "args": {"terminalId": terminal_id}})
            assert stdout.wait_for(lambda msgs: any(m.get("id") == 9 for m in msgs))
            deadline = time.monotonic() + 5
            while terminal_id in bridge._lanes and time.monotonic() < deadline:
                time.sleep(0.02)
            assert terminal_id not in bridge._lanes
        finally:
            requests.close()
            server.join(10)

        assert not server.is_alive()
