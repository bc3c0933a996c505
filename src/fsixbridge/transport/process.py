"""Handle for a running daemon process and the streams used to talk to it."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
from typing import TYPE_CHECKING

from fsixbridge.config.schema import TransportMode
from fsixbridge.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

log = get_logger("transport")
daemon_log = get_logger("daemon")


async def graceful_shutdown(
    process: asyncio.subprocess.Process,
    timeout: float = 3.0,
) -> None:
    """Stop a process: close stdin → interrupt → terminate → kill.

    The daemon exits by itself once its stdin closes, so signals are only
    sent when it does not. Each stage waits up to ``timeout`` seconds.
    """
    if process.returncode is not None:
        return

    if process.stdin is not None and not process.stdin.is_closing():
        process.stdin.close()
    if await _wait(process, timeout):
        return

    _send_interrupt(process)
    if await _wait(process, timeout):
        return

    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    if await _wait(process, timeout):
        return

    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()


async def _wait(process: asyncio.subprocess.Process, timeout: float) -> bool:
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


def _send_interrupt(process: asyncio.subprocess.Process) -> None:
    """Send Ctrl-Break on Windows, SIGINT elsewhere."""
    sig = signal.CTRL_BREAK_EVENT if sys.platform == "win32" else signal.SIGINT  # type: ignore[attr-defined]
    try:
        process.send_signal(sig)
    except ProcessLookupError:
        pass
    except OSError:
        process.terminate()


async def pump_lines(
    stream: asyncio.StreamReader,
    sink: Callable[[str], None],
) -> None:
    """Forward each line of ``stream`` to ``sink`` until EOF."""
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            # Line longer than the stream limit; drop what is buffered.
            continue
        except (ConnectionError, OSError):
            return
        if not line:
            return
        text = line.decode("utf-8", errors="replace").rstrip("\r\n")
        if text:
            sink(text)


class DaemonTransport:
    """A spawned daemon plus the duplex byte stream connected to it.

    In stdio mode ``reader``/``writer`` are the child's stdout/stdin. In
    socket mode they belong to a TCP connection, the child's stdout is
    drained into the debug log, and the socket is closed when the process
    exits. Stderr is always forwarded to the daemon log.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        mode: TransportMode = TransportMode.STDIO,
        *,
        stderr_sink: Callable[[str], None] | None = None,
        shutdown_timeout: float = 3.0,
    ) -> None:
        self.process = process
        self.reader = reader
        self.writer = writer
        self.mode = mode
        self._shutdown_timeout = shutdown_timeout
        self._closed = False
        self._close_task: asyncio.Future[None] | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._exit_task: asyncio.Task[int] = asyncio.create_task(self._watch_exit())

        if process.stderr is not None:
            sink = stderr_sink or (lambda text: daemon_log.error("%s", text))
            self._tasks.append(asyncio.create_task(pump_lines(process.stderr, sink)))
        if mode is TransportMode.SOCKET and process.stdout is not None:
            self._tasks.append(
                asyncio.create_task(
                    pump_lines(process.stdout, lambda text: daemon_log.debug("stdout: %s", text))
                )
            )

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def closed(self) -> bool:
        return self._closed

    async def wait_exit(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await asyncio.shield(self._exit_task)

    def exit_task(self) -> asyncio.Task[int]:
        return self._exit_task

    async def _watch_exit(self) -> int:
        code = await self.process.wait()
        log.debug("Daemon pid %s exited with code %s", self.process.pid, code)
        if self.mode is TransportMode.SOCKET and not self.writer.is_closing():
            self.writer.close()
        return code

    async def close(self) -> None:
        """Close the stream and stop the process.

        Safe to call repeatedly and concurrently; every caller returns once
        the process has been reaped.
        """
        if self._close_task is None:
            self._closed = True
            self._close_task = asyncio.ensure_future(self._close())
        await asyncio.shield(self._close_task)

    async def _close(self) -> None:
        if self.mode is TransportMode.SOCKET and not self.writer.is_closing():
            self.writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await self.writer.wait_closed()

        await graceful_shutdown(self.process, timeout=self._shutdown_timeout)

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, self._exit_task, return_exceptions=True)
        log.debug("Daemon transport for pid %s closed", self.process.pid)
