"""Configuration schema dataclasses for fsixbridge.

Defines the structure of configuration at all levels (system, user, project).
All fields have defaults so that partial configs merge together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DEFAULT_COMMAND = "default"


class TransportMode(Enum):
    """How the client talks to a spawned daemon.

    - STDIO: JSON-RPC over the child's stdin/stdout
    - SOCKET: the child prints ``<prefix>:<host>:<port>`` and the client dials it
    """

    STDIO = "stdio"
    SOCKET = "socket"


@dataclass
class DaemonConfig:
    """How to locate, launch and talk to the evaluation daemon.

    Example config.yaml:
        daemon:
          command: default          # or e.g. "dotnet run --project ../FsiX.Daemon"
          transport: stdio
          init_timeout: 120
    """

    command: str = DEFAULT_COMMAND  # "default" runs tool discovery
    transport: TransportMode = TransportMode.STDIO
    tool_name: str = "fsix-daemon"  # Executable installed by the .NET tool
    package_id: str = "FsiX.Daemon"  # Package passed to `dotnet tool install`
    manifest_key: str = "fsix.daemon"  # Key under "tools" in dotnet-tools.json
    init_timeout: float | None = None  # Seconds to wait for `initialized`
    shutdown_timeout: float = 3.0  # Seconds per shutdown stage before escalating
    max_message_size: int = 10 * 1024 * 1024

    @property
    def uses_discovery(self) -> bool:
        return self.command.strip() == DEFAULT_COMMAND


@dataclass
class EditorConfig:
    """Consumer-side policies."""

    diagnostics_delay: float = 0.3  # Debounce delay in seconds


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, takes precedence over level
    file: str | None = None  # Log file path


@dataclass
class Config:
    """Root configuration object."""

    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    editor: EditorConfig = field(default_factory=EditorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Unknown top-level sections are kept verbatim
    extra: dict[str, Any] = field(default_factory=dict)
