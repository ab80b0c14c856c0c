"""Stdio bridge: newline-delimited JSON between the host UI and the manager.

Requests arrive on stdin, one JSON object per line::

    {"id": 1, "cmd": "spawn_terminal", "args": {"projectId": "p1", "cwd": "/tmp"}}

Each gets exactly one response line::

    {"id": 1, "ok": true, "result": "<terminal id>"}
    {"id": 1, "ok": false, "error": {"kind": "SessionNotFoundError", "message": "..."}}

Terminal events are interleaved as they happen::

    {"event": "terminal-output", "payload": {"terminalId": "...", "data": "..."}}

Every command declares its arguments as a Pydantic model, like the rest of
the public surface. Output lines are written under one lock so a response
and an event never share a line.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Generic, TextIO, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agentstation.errors import TerminalError
from agentstation.events import Wire, WireEvent
from agentstation.pty.manager import TerminalManager

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class BridgeError(Exception):
    """A request could not be parsed, validated or routed."""

    def __init__(self, message: str, kind: str = "BadRequest") -> None:
        super().__init__(message)
        self.kind = kind
        self.request_id: Any = None


class _Args(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class SpawnArgs(_Args):
    project_id: str = Field(alias="projectId")
    cwd: str


class WriteArgs(_Args):
    terminal_id: str = Field(alias="terminalId")
    data: str


class ResizeArgs(_Args):
    terminal_id: str = Field(alias="terminalId")
    cols: int = Field(ge=1, le=65535)
    rows: int = Field(ge=1, le=65535)


class TerminalIdArgs(_Args):
    terminal_id: str = Field(alias="terminalId")


class ProjectArgs(_Args):
    project_id: str = Field(alias="projectId")


class NoArgs(_Args):
    pass


class BridgeCommand(ABC, Generic[T]):
    """A named operation the host UI can invoke."""

    name: ClassVar[str]
    param_model: ClassVar[type[BaseModel]]

    def __call__(self, manager: TerminalManager, arguments: dict[str, Any]) -> Any:
        try:
            params = self.param_model.model_validate(arguments)
        except ValidationError as e:
            raise BridgeError(f"Invalid arguments for {self.name}: {e}") from e
        return self.execute(manager, params)  # type: ignore[arg-type]

    @abstractmethod
    def execute(self, manager: TerminalManager, params: T) -> Any:
        """Run the command; the return value must be JSON-serializable."""
        ...


class SpawnTerminal(BridgeCommand[SpawnArgs]):
    name = "spawn_terminal"
    param_model = SpawnArgs

    def execute(self, manager: TerminalManager, params: SpawnArgs) -> str:
        return manager.spawn(params.project_id, params.cwd)


class WriteTerminal(BridgeCommand[WriteArgs]):
    name = "write_terminal"
    param_model = WriteArgs

    def execute(self, manager: TerminalManager, params: WriteArgs) -> None:
        manager.write(params.terminal_id, params.data)


class ResizeTerminal(BridgeCommand[ResizeArgs]):
    name = "resize_terminal"
    param_model = ResizeArgs

    def execute(self, manager: TerminalManager, params: ResizeArgs) -> None:
        manager.resize(params.terminal_id, params.cols, params.rows)


class KillTerminal(BridgeCommand[TerminalIdArgs]):
    name = "kill_terminal"
    param_model = TerminalIdArgs

    def execute(self, manager: TerminalManager, params: TerminalIdArgs) -> None:
        manager.kill(params.terminal_id)


class GetTerminalStatus(BridgeCommand[TerminalIdArgs]):
    name = "get_terminal_status"
    param_model = TerminalIdArgs

    def execute(self, manager: TerminalManager, params: TerminalIdArgs) -> bool:
        return manager.status(params.terminal_id)


class GetTerminalForProject(BridgeCommand[ProjectArgs]):
    name = "get_terminal_for_project"
    param_model = ProjectArgs

    def execute(self, manager: TerminalManager, params: ProjectArgs) -> dict[str, Any] | None:
        info = manager.find_by_project(params.project_id)
        return info.model_dump(by_alias=True) if info is not None else None


class GetTerminalsForProject(BridgeCommand[ProjectArgs]):
    name = "get_terminals_for_project"
    param_model = ProjectArgs

    def execute(self, manager: TerminalManager, params: ProjectArgs) -> list[dict[str, Any]]:
        return [i.model_dump(by_alias=True) for i in manager.find_all_by_project(params.project_id)]


class ListTerminals(BridgeCommand[NoArgs]):
    name = "list_terminals"
    param_model = NoArgs

    def execute(self, manager: TerminalManager, params: NoArgs) -> list[dict[str, Any]]:
        return [i.model_dump(by_alias=True) for i in manager.list()]


DEFAULT_COMMANDS: tuple[type[BridgeCommand], ...] = (
    SpawnTerminal,
    WriteTerminal,
    ResizeTerminal,
    KillTerminal,
    GetTerminalStatus,
    GetTerminalForProject,
    GetTerminalsForProject,
    ListTerminals,
)


class CommandRegistry:
    """Registry of bridge commands, looked up by name."""

    def __init__(self) -> None:
        self._commands: dict[str, BridgeCommand] = {}

    @classmethod
    def default(cls) -> CommandRegistry:
        reg = cls()
        for command_cls in DEFAULT_COMMANDS:
            reg.register(command_cls())
        return reg

    def register(self, command: BridgeCommand) -> None:
        if command.name in self._commands:
            logger.warning("Command %s already registered, overwriting", command.name)
        self._commands[command.name] = command

    def get(self, name: str) -> BridgeCommand | None:
        return self._commands.get(name)

    def names(self) -> list[str]:
        return list(self._commands.keys())

    def dispatch(self, manager: TerminalManager, name: str, arguments: dict[str, Any]) -> Any:
        command = self._commands.get(name)
        if command is None:
            raise BridgeError(
                f"Unknown command: {name}. Available commands: {', '.join(self.names())}",
                kind="UnknownCommand",
            )
        return command(manager, arguments)

    def __len__(self) -> int:
        return len(self._commands)

    def __contains__(self, name: str) -> bool:
        return name in self._commands


class StdioBridge:
    """Serves a ``TerminalManager`` over line-delimited JSON streams.

    The stdin thread only parses; commands run on worker lanes. Requests
    naming a ``terminalId`` go to that terminal's single-worker lane, so
    writes to one terminal keep their order while a write blocked on a
    full PTY never holds up another terminal. Everything else runs on a
    shared pool. Responses may therefore arrive out of request order;
    the host matches them by ``id``.
    """

    def __init__(
        self,
        manager: TerminalManager,
        wire: Wire,
        stdin: TextIO,
        stdout: TextIO,
        commands: CommandRegistry | None = None,
        max_workers: int = 8,
    ) -> None:
        self._manager = manager
        self._wire = wire
        self._stdin = stdin
        self._stdout = stdout
        self._commands = commands if commands is not None else CommandRegistry.default()
        self._write_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bridge")
        self._lanes: dict[str, ThreadPoolExecutor] = {}
        self._lanes_lock = threading.Lock()

    def parse_line(self, line: str) -> dict[str, Any]:
        """Decode and shape-check one request line; raises BridgeError."""
        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            raise BridgeError(f"Invalid JSON: {e}") from e

        if not isinstance(request, dict):
            raise BridgeError("Request must be a JSON object")

        arguments = request.get("args") or {}
        if not isinstance(request.get("cmd"), str) or not isinstance(arguments, dict):
            e = BridgeError("Request needs 'cmd' and object 'args'")
            e.request_id = request.get("id")
            raise e
        request["args"] = arguments
        return request

    def handle_request(self, request: dict[str, Any]) -> dict[str, Any]:
        """Run a parsed request and build its response object."""
        request_id = request.get("id")
        try:
            result = self._commands.dispatch(self._manager, request["cmd"], request["args"])
        except BridgeError as e:
            return _error_response(request_id, e.kind, str(e))
        except TerminalError as e:
            return _error_response(request_id, e.kind, str(e))
        except ValueError as e:
            return _error_response(request_id, "ValueError", str(e))

        return {"id": request_id, "ok": True, "result": result}

    def handle_line(self, line: str) -> dict[str, Any]:
        """Turn one request line into its response object, synchronously."""
        try:
            request = self.parse_line(line)
        except BridgeError as e:
            return _error_response(e.request_id, e.kind, str(e))
        return self.handle_request(request)

    def _schedule(self, request: dict[str, Any]) -> Future:
        terminal_id = request["args"].get("terminalId")
        if not isinstance(terminal_id, str):
            return self._pool.submit(self.handle_request, request)
        # Submit under the lock so a lane is never retired in between.
        with self._lanes_lock:
            lane = self._lanes.get(terminal_id)
            if lane is None:
                lane = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix=f"bridge-{terminal_id[:8]}"
                )
                self._lanes[terminal_id] = lane
            return lane.submit(self.handle_request, request)

    def submit(self, line: str) -> Future | None:
        """Schedule one request line; its response is written when done."""
        try:
            request = self.parse_line(line)
        except BridgeError as e:
            self._write(_error_response(e.request_id, e.kind, str(e)))
            return None

        future = self._schedule(request)
        future.add_done_callback(partial(self._on_done, request))
        return future

    def _on_done(self, request: dict[str, Any], future: Future) -> None:
        request_id = request.get("id")
        try:
            response = future.result()
        except Exception as e:
            logger.exception("Bridge request %r failed", request_id)
            response = _error_response(request_id, "InternalError", str(e))
        self._write(response)
        if request["cmd"] == "kill_terminal":
            self._retire_lane(request["args"].get("terminalId"))

    def _retire_lane(self, terminal_id: Any) -> None:
        if not isinstance(terminal_id, str):
            return
        with self._lanes_lock:
            lane = self._lanes.pop(terminal_id, None)
        if lane is not None:
            lane.shutdown(wait=False)

    def _write(self, obj: dict[str, Any]) -> None:
        line = json.dumps(obj, ensure_ascii=False)
        with self._write_lock:
            self._stdout.write(line + "\n")
            self._stdout.flush()

    def _on_event(self, event: WireEvent) -> None:
        self._write(event.to_message())

    def _shutdown_workers(self) -> None:
        # Don't wait: a write stuck on a full PTY would hang shutdown.
        with self._lanes_lock:
            lanes = list(self._lanes.values())
            self._lanes.clear()
        for executor in (self._pool, *lanes):
            executor.shutdown(wait=False)

    def serve(self) -> None:
        """Process requests until stdin closes, then interrupt all terminals."""
        self._wire.add_listener(self._on_event)
        logger.info("Bridge serving %d commands", len(self._commands))
        try:
            for line in self._stdin:
                line = line.strip()
                if not line:
                    continue
                self.submit(line)
        finally:
            self._shutdown_workers()
            self._manager.shutdown()
            self._wire.remove_listener(self._on_event)
            self._wire.close()
            logger.info("Bridge stopped")


def _error_response(request_id: Any, kind: str, message: str) -> dict[str, Any]:
    return {"id": request_id, "ok": False, "error": {"kind": kind, "message": message}}
