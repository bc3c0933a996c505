"""Daemon transport: process launch, socket discovery and message framing."""

from fsixbridge.transport.bootstrap import (
    INSTALL_CHOICES,
    DaemonLauncher,
    DeclineInstall,
    InstallPrompt,
    ToolKind,
    parse_endpoint,
    parse_init_line,
)
from fsixbridge.transport.framing import (
    FramingError,
    parse_header,
    read_message,
    write_message,
)
from fsixbridge.transport.process import DaemonTransport, graceful_shutdown

__all__ = [
    "INSTALL_CHOICES",
    "DaemonLauncher",
    "DaemonTransport",
    "DeclineInstall",
    "FramingError",
    "InstallPrompt",
    "ToolKind",
    "graceful_shutdown",
    "parse_endpoint",
    "parse_header",
    "parse_init_line",
    "read_message",
    "write_message",
]
