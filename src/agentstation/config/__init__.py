"""Configuration: Pydantic models for agent-station settings."""

from __future__ import annotations

import json
import os
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field


class TerminalConfig(BaseModel):
    """How terminals are allocated and what the spawned shell sees."""

    default_shell: str = Field(
        default="/bin/sh", description="Shell used when $SHELL is unset or empty"
    )
    login_flag: str = Field(
        default="-l", description="Argument that makes the shell a login shell"
    )
    term: str = Field(default="xterm-256color")
    colorterm: str = Field(default="truecolor")
    project_env_var: str = Field(
        default="CLAUDE_CODE_TASK_LIST_ID",
        description="Variable carrying the project id into the spawned shell",
    )
    extra_env: dict[str, str] = Field(default_factory=dict)
    initial_cols: int = Field(default=80, ge=1, le=65535)
    initial_rows: int = Field(default=24, ge=1, le=65535)
    read_chunk_size: int = Field(default=4096, ge=1)
    lock_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds to wait for a channel lock before raising LockError",
    )


class StationConfig(BaseModel):
    """Top-level agent-station configuration."""

    terminal: TerminalConfig = Field(default_factory=TerminalConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> StationConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            AGENT_STATION_DEFAULT_SHELL    - Fallback shell when $SHELL is unset
            AGENT_STATION_TERM             - TERM value for spawned shells
            AGENT_STATION_PROJECT_ENV_VAR  - Name of the project correlation variable
            AGENT_STATION_READ_CHUNK_SIZE  - Bytes per terminal read
            AGENT_STATION_LOCK_TIMEOUT     - Channel lock timeout in seconds
        """
        # .env from the invoking directory; real env vars win over it.
        load_dotenv(find_dotenv(usecwd=True))

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        terminal = config_data.get("terminal", {})

        env_shell = os.environ.get("AGENT_STATION_DEFAULT_SHELL")
        if env_shell:
            terminal["default_shell"] = env_shell

        env_term = os.environ.get("AGENT_STATION_TERM")
        if env_term:
            terminal["term"] = env_term

        env_project_var = os.environ.get("AGENT_STATION_PROJECT_ENV_VAR")
        if env_project_var:
            terminal["project_env_var"] = env_project_var

        env_chunk = os.environ.get("AGENT_STATION_READ_CHUNK_SIZE")
        if env_chunk:
            terminal["read_chunk_size"] = int(env_chunk)

        env_lock_timeout = os.environ.get("AGENT_STATION_LOCK_TIMEOUT")
        if env_lock_timeout:
            terminal["lock_timeout"] = float(env_lock_timeout)

        if terminal:
            config_data["terminal"] = terminal

        return cls.model_validate(config_data)
