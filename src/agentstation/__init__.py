"""agent-station: pseudo-terminal sessions for project working directories."""

__version__ = "0.1.0"
