"""Locating, installing and launching the FsiX daemon.

With the ``default`` command the daemon is looked up as a .NET tool:
globally installed first, then in a local tool manifest. If neither is
found the user is asked whether to install it, and lookup is retried once.
An explicit command is split on whitespace and spawned as-is.

The spawned process is connected either through its own stdin/stdout or,
in socket mode, through a TCP connection to the endpoint it announces on
the first line of stdout (``<prefix>:<host>:<port>``).
"""

from __future__ import annotations

import asyncio
import json
import os
import socket
import sys
from collections.abc import Sequence
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from fsixbridge.config.schema import DaemonConfig, TransportMode
from fsixbridge.errors import (
    DaemonLaunchError,
    ProcessExitedError,
    RequestCancelledError,
    TransportError,
)
from fsixbridge.logging import get_logger
from fsixbridge.rpc.cancellation import with_cancellation
from fsixbridge.transport.process import DaemonTransport, graceful_shutdown, pump_lines

if TYPE_CHECKING:
    from collections.abc import Callable

    from fsixbridge.rpc.cancellation import CancellationToken

log = get_logger("bootstrap")

INSTALL_GLOBAL = "Yes (globally)"
INSTALL_LOCAL = "Yes (locally)"
INSTALL_DECLINE = "No"
INSTALL_CHOICES = (INSTALL_GLOBAL, INSTALL_LOCAL, INSTALL_DECLINE)

MANIFEST_NAME = "dotnet-tools.json"
ENDPOINT_LINE_LIMIT = 64 * 1024


class ToolKind(Enum):
    """Where the daemon tool was found."""

    GLOBAL = "global"
    LOCAL = "local"


class InstallPrompt(Protocol):
    """Asks the user to pick one of ``choices``. None means dismissed."""

    async def choose(self, message: str, choices: Sequence[str]) -> str | None: ...


class DeclineInstall:
    """InstallPrompt for non-interactive use: always declines."""

    async def choose(self, message: str, choices: Sequence[str]) -> str | None:
        log.info("%s (no prompt available, declining)", message)
        return None


def parse_init_line(line: str) -> list[str]:
    """Extra daemon arguments from an init line such as ``fsix --proj App.fsproj``.

    The first token names the tool and is dropped.
    """
    return line.split()[1:]


def parse_endpoint(line: str) -> tuple[str, int]:
    """Parse the ``<prefix>:<host>:<port>`` line a socket-mode daemon prints.

    Raises:
        TransportError: If the line does not have that shape.
    """
    parts = line.strip().split(":")
    if len(parts) != 3:
        raise TransportError(f"Malformed daemon endpoint line: {line.strip()!r}")

    _, host, port_text = parts
    try:
        port = int(port_text)
    except ValueError as e:
        raise TransportError(f"Invalid port in daemon endpoint line: {line.strip()!r}") from e
    if not host or not 0 < port < 65536:
        raise TransportError(f"Invalid daemon endpoint: {line.strip()!r}")
    return host, port


def global_tool_path(tool_name: str) -> Path:
    """Where ``dotnet tool install -g`` puts the tool's executable."""
    suffix = ".exe" if sys.platform == "win32" else ""
    return Path.home() / ".dotnet" / "tools" / f"{tool_name}{suffix}"


def local_manifest_paths(cwd: str | Path) -> list[Path]:
    """Tool manifest locations honoured by ``dotnet tool run``."""
    root = Path(cwd)
    return [root / MANIFEST_NAME, root / ".config" / MANIFEST_NAME]


def manifest_has_tool(path: Path, manifest_key: str) -> bool:
    """True if the manifest at ``path`` lists ``manifest_key`` under ``tools``."""
    try:
        with open(path, encoding="utf-8") as f:
            contents = json.load(f)
    except (OSError, json.JSONDecodeError):
        return False

    tools = contents.get("tools") if isinstance(contents, dict) else None
    if not isinstance(tools, dict):
        return False
    return any(key.lower() == manifest_key.lower() for key in tools)


async def run_process(
    args: Sequence[str],
    cwd: str | Path | None = None,
    token: CancellationToken | None = None,
) -> int:
    """Run a command to completion and return its exit code.

    Output is written to the bootstrap log. If ``token`` fires first the
    process is killed and RequestCancelledError is raised.
    """
    log.info("Running %s", " ".join(args))
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise DaemonLaunchError(f"Could not run {args[0]}: {e}") from e

    assert process.stdout is not None
    pump = asyncio.create_task(pump_lines(process.stdout, lambda text: log.info("%s", text)))
    try:
        return await with_cancellation(process.wait(), token, " ".join(args))
    finally:
        if process.returncode is None:
            process.kill()
            await process.wait()
        await pump


class DaemonLauncher:
    """Resolves the daemon command and starts it with a connected transport."""

    def __init__(
        self,
        config: DaemonConfig | None = None,
        prompt: InstallPrompt | None = None,
        *,
        stderr_sink: Callable[[str], None] | None = None,
    ) -> None:
        self.config = config or DaemonConfig()
        self.prompt: InstallPrompt = prompt or DeclineInstall()
        self._stderr_sink = stderr_sink

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def find_tool(self, cwd: str | Path) -> ToolKind | None:
        """Check for a global install, then a local manifest entry."""
        if global_tool_path(self.config.tool_name).exists():
            return ToolKind.GLOBAL
        for manifest in local_manifest_paths(cwd):
            if manifest_has_tool(manifest, self.config.manifest_key):
                return ToolKind.LOCAL
        return None

    def tool_command(self, kind: ToolKind, extra_args: Sequence[str]) -> list[str]:
        if kind is ToolKind.GLOBAL:
            return [str(global_tool_path(self.config.tool_name)), *extra_args]
        return ["dotnet", "tool", "run", self.config.tool_name, *extra_args]

    async def resolve_command(
        self,
        extra_args: Sequence[str],
        cwd: str | Path,
        token: CancellationToken | None = None,
    ) -> list[str] | None:
        """The full command line to spawn, or None if the daemon is unavailable."""
        if not self.config.uses_discovery:
            return [*self.config.command.split(), *extra_args]

        kind = self.find_tool(cwd)
        if kind is None:
            kind = await self.offer_install(cwd, token)
        if kind is None:
            return None
        log.debug("Using %s %s tool", kind.value, self.config.tool_name)
        return self.tool_command(kind, extra_args)

    async def offer_install(
        self,
        cwd: str | Path,
        token: CancellationToken | None = None,
    ) -> ToolKind | None:
        """Ask to install the tool, install it, and look it up once more."""
        message = f"{self.config.package_id} was not found. Download it from NuGet?"
        choice = await with_cancellation(
            self.prompt.choose(message, INSTALL_CHOICES), token, "Install prompt"
        )

        if choice == INSTALL_GLOBAL:
            code = await run_process(
                ["dotnet", "tool", "install", "-g", self.config.package_id], token=token
            )
        elif choice == INSTALL_LOCAL:
            code = await run_process(
                ["dotnet", "tool", "install", self.config.package_id], cwd=cwd, token=token
            )
        else:
            log.info("Installation of %s declined", self.config.package_id)
            return None

        if code != 0:
            log.error("Installing %s failed with exit code %d", self.config.package_id, code)
        return self.find_tool(cwd)

    # -------------------------------------------------------------------------
    # Launch
    # -------------------------------------------------------------------------

    async def launch(
        self,
        extra_args: Sequence[str] = (),
        cwd: str | Path | None = None,
        token: CancellationToken | None = None,
    ) -> DaemonTransport | None:
        """Start the daemon and connect to it.

        Returns:
            The connected transport, or None if the daemon is not installed
            and the user declined to install it.

        Raises:
            DaemonLaunchError: The command could not be started.
            ProcessExitedError: Socket mode only, the daemon exited before
                announcing its endpoint.
            TransportError: The endpoint line was malformed or unreachable.
            RequestCancelledError: ``token`` fired while starting.
        """
        workdir = Path(cwd) if cwd is not None else Path.cwd()
        command = await self.resolve_command(extra_args, workdir, token)
        if command is None:
            return None
        if token is not None and token.cancelled:
            raise RequestCancelledError("Daemon start was cancelled")

        process = await self._spawn(command, workdir)
        try:
            if self.config.transport is TransportMode.SOCKET:
                reader, writer = await with_cancellation(
                    self._dial(process), token, "Daemon connection"
                )
            else:
                assert process.stdout is not None and process.stdin is not None
                reader, writer = process.stdout, process.stdin
        except BaseException:
            await graceful_shutdown(process, timeout=self.config.shutdown_timeout)
            raise

        return DaemonTransport(
            process,
            reader,
            writer,
            self.config.transport,
            stderr_sink=self._stderr_sink,
            shutdown_timeout=self.config.shutdown_timeout,
        )

    async def _spawn(self, command: Sequence[str], cwd: Path) -> asyncio.subprocess.Process:
        log.info("Starting daemon: %s", " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=os.environ.copy(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=ENDPOINT_LINE_LIMIT,
            )
        except FileNotFoundError as e:
            raise DaemonLaunchError(f"Command not found: {command[0]}") from e
        except PermissionError as e:
            raise DaemonLaunchError(f"Permission denied: {command[0]}") from e
        except OSError as e:
            raise DaemonLaunchError(f"Could not start {command[0]}: {e}") from e

        log.debug("Daemon started with pid %s", process.pid)
        return process

    async def _dial(
        self, process: asyncio.subprocess.Process
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        assert process.stdout is not None
        try:
            line = await process.stdout.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            code = await process.wait()
            raise ProcessExitedError(code) from e
        except asyncio.LimitOverrunError as e:
            raise TransportError(
                f"Daemon endpoint line exceeds {ENDPOINT_LINE_LIMIT} bytes"
            ) from e

        host, port = parse_endpoint(line.decode("utf-8", errors="replace"))
        log.debug("Connecting to daemon at %s:%d", host, port)
        try:
            reader, writer = await asyncio.open_connection(host, port)
        except OSError as e:
            raise TransportError(f"Could not connect to daemon at {host}:{port}: {e}") from e

        sock = writer.get_extra_info("socket")
        if sock is not None:
            try:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            except OSError:
                log.debug("TCP_NODELAY toggle failed", exc_info=True)
        return reader, writer
