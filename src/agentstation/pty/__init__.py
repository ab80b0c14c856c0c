"""PTY session management: login shells in pseudo-terminals.

Each session owns a PTY, a reader thread streaming output to an event sink,
and a reaper thread waiting on the shell process.
"""

from agentstation.pty.channel import PtyChannel
from agentstation.pty.manager import TerminalManager
from agentstation.pty.reader import ChildReaper, OutputReaderLoop
from agentstation.pty.registry import SessionRegistry
from agentstation.pty.session import Liveness, SessionInfo, TerminalSession
from agentstation.pty.spawn import SpawnOrchestrator

__all__ = [
    "ChildReaper",
    "Liveness",
    "OutputReaderLoop",
    "PtyChannel",
    "SessionInfo",
    "SessionRegistry",
    "SpawnOrchestrator",
    "TerminalManager",
    "TerminalSession",
]
