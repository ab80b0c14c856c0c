"""CLI entry point for agent-station."""

from __future__ import annotations

import logging
import os
import sys
import threading

import typer

from agentstation import __version__
from agentstation.config import StationConfig
from agentstation.errors import TerminalError

app = typer.Typer(
    name="agent-station",
    help="Drive interactive login shells for project directories.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    # stderr only: stdout carries terminal output and the bridge protocol.
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


@app.command()
def serve(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Serve the terminal command surface as JSON lines on stdin/stdout."""
    setup_logging(verbose)

    from agentstation.bridge import StdioBridge
    from agentstation.events import Wire
    from agentstation.pty.manager import TerminalManager

    config = StationConfig.load(config_file)
    wire = Wire()
    manager = TerminalManager(wire, config=config.terminal)

    StdioBridge(manager, wire, sys.stdin, sys.stdout).serve()


@app.command()
def run(
    project_id: str = typer.Argument(help="Project id exported to the shell."),
    cwd: str = typer.Option(
        ".", "--cwd", "-d", help="Working directory for the shell."
    ),
    command: str = typer.Option(
        ..., "--command", "-C", help="Command line to type into the shell."
    ),
    timeout: float = typer.Option(
        30.0, "--timeout", "-t", help="Seconds to wait for the shell to exit."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Open a terminal, type a command and ``exit``, and stream the output."""
    setup_logging(verbose)

    from agentstation.events import EventType, Wire, WireEvent
    from agentstation.pty.manager import TerminalManager

    work_dir = os.path.abspath(cwd)
    if not os.path.isdir(work_dir):
        typer.echo(f"Error: Directory not found: {work_dir}", err=True)
        raise typer.Exit(1)

    config = StationConfig.load(config_file)
    wire = Wire()
    manager = TerminalManager(wire, config=config.terminal)

    exited = threading.Event()
    terminal_id = ""

    def _on_event(event: WireEvent) -> None:
        if terminal_id and event.terminal_id != terminal_id:
            return
        if event.type == EventType.TERMINAL_OUTPUT:
            typer.echo(event.data.get("data", ""), nl=False)
        elif event.type == EventType.TERMINAL_EXIT:
            exited.set()

    wire.add_listener(_on_event)

    try:
        terminal_id = manager.spawn(project_id, work_dir)
    except TerminalError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    try:
        manager.write(terminal_id, command.rstrip("\n") + "\nexit\n")
        if not exited.wait(timeout):
            typer.echo(f"\nError: terminal did not exit within {timeout}s", err=True)
            raise typer.Exit(1)
    except TerminalError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        manager.shutdown()
        wire.close()


@app.command()
def version() -> None:
    """Print the agent-station version."""
    typer.echo(f"agent-station v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
