"""Spawn orchestrator: allocate a PTY, launch a login shell, wire it up."""

from __future__ import annotations

import fcntl
import logging
import os
import pty
import struct
import subprocess
import termios
from dataclasses import dataclass

from agentstation.config import TerminalConfig
from agentstation.errors import ResourceAllocationError, SpawnError
from agentstation.events import EventSink
from agentstation.pty.channel import PtyChannel
from agentstation.pty.reader import ChildReaper, OutputReaderLoop
from agentstation.pty.registry import SessionRegistry
from agentstation.pty.session import TerminalSession

logger = logging.getLogger(__name__)


def resolve_shell(config: TerminalConfig, environ: dict[str, str] | None = None) -> str:
    """Return the user's ``$SHELL``, or the configured default when unset."""
    env = os.environ if environ is None else environ
    return env.get("SHELL") or config.default_shell


def build_env(
    project_id: str,
    config: TerminalConfig,
    environ: dict[str, str] | None = None,
) -> dict[str, str]:
    """Environment for the spawned shell: the host's plus terminal and project vars."""
    env = dict(os.environ if environ is None else environ)
    env.update(config.extra_env)
    env["TERM"] = config.term
    env["COLORTERM"] = config.colorterm
    env[config.project_env_var] = project_id
    return env


def _make_controlling_tty(ioctl=fcntl.ioctl, request=termios.TIOCSCTTY) -> None:
    """Make the PTY slave (already the child's stdin) its controlling terminal.

    Runs between fork and exec in a process that has reader threads, so it
    must not take locks, import, allocate much or log. It is one C-level
    ioctl with every name bound at definition time. ``setsid()`` has already
    run via ``start_new_session``.
    """
    ioctl(0, request, 0)


@dataclass
class SpawnResult:
    session: TerminalSession
    proc: subprocess.Popen
    reader: OutputReaderLoop
    reaper: ChildReaper


class SpawnOrchestrator:
    """Creates sessions and registers them.

    The session id is returned only once the session is in the registry;
    any earlier failure releases what was allocated and registers nothing.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        sink: EventSink,
        config: TerminalConfig | None = None,
    ) -> None:
        self._registry = registry
        self._sink = sink
        self._config = config or TerminalConfig()

    def spawn(self, project_id: str, cwd: str) -> SpawnResult:
        config = self._config

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise ResourceAllocationError(f"Failed to open PTY: {e}") from e

        try:
            _set_initial_size(master_fd, config.initial_cols, config.initial_rows)
        except OSError as e:
            _close_quietly(master_fd, slave_fd)
            raise ResourceAllocationError(f"Failed to size PTY: {e}") from e

        shell = resolve_shell(config)
        command = [shell, config.login_flag] if config.login_flag else [shell]

        try:
            proc = subprocess.Popen(
                command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=build_env(project_id, config),
                start_new_session=True,
                preexec_fn=_make_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as e:
            _close_quietly(master_fd)
            raise SpawnError(
                f"Failed to spawn command: {e}",
                context={"shell": shell, "cwd": cwd},
            ) from e
        finally:
            # The child holds its own copies of the slave end.
            _close_quietly(slave_fd)

        try:
            read_fd = os.dup(master_fd)
        except OSError as e:
            _close_quietly(master_fd)
            _abandon(proc)
            raise ResourceAllocationError(f"Failed to clone reader: {e}") from e

        try:
            write_fd = os.dup(master_fd)
        except OSError as e:
            _close_quietly(master_fd, read_fd)
            _abandon(proc)
            raise ResourceAllocationError(f"Failed to take writer: {e}") from e

        input_channel = PtyChannel(write_fd, "input channel", config.lock_timeout)
        control_channel = PtyChannel(master_fd, "control channel", config.lock_timeout)
        session = TerminalSession(
            project_id=project_id,
            input_channel=input_channel,
            control_channel=control_channel,
            pid=proc.pid,
        )
        self._registry.insert(session)

        reader = OutputReaderLoop(
            session.id,
            read_fd,
            self._sink,
            session.liveness,
            channels=(input_channel, control_channel),
            chunk_size=config.read_chunk_size,
        )
        reaper = ChildReaper(session.id, proc)
        reader.start()
        reaper.start()

        logger.info(
            "Terminal %s started: project=%s pid=%d shell=%s cwd=%s",
            session.id,
            project_id,
            proc.pid,
            shell,
            cwd,
        )
        return SpawnResult(session=session, proc=proc, reader=reader, reaper=reaper)


def _set_initial_size(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _close_quietly(*fds: int) -> None:
    for fd in fds:
        try:
            os.close(fd)
        except OSError:
            pass


def _abandon(proc: subprocess.Popen) -> None:
    """Reap a shell whose session never got registered.

    Its PTY master is already closed, so the shell receives SIGHUP.
    """
    ChildReaper("unregistered", proc).start()
