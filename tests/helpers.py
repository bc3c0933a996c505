"""Test utilities: an in-process fake daemon on the other end of a socket pair."""

from __future__ import annotations

import asyncio
import socket
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fsixbridge.rpc import MessageChannel
from fsixbridge.transport.framing import read_message, write_message

CANCEL_METHOD = "$/cancelRequest"


async def stream_pair() -> tuple[
    tuple[asyncio.StreamReader, asyncio.StreamWriter],
    tuple[asyncio.StreamReader, asyncio.StreamWriter],
]:
    """Two connected reader/writer pairs backed by ``socket.socketpair()``."""
    left, right = socket.socketpair()
    left_streams = await asyncio.open_connection(sock=left)
    right_streams = await asyncio.open_connection(sock=right)
    return left_streams, right_streams


def exception_payload(
    class_name: str = "System.Exception",
    message: str = "boom",
    inner: dict[str, Any] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """A daemon exception object as serialized on the wire."""
    payload: dict[str, Any] = {"ClassName": class_name, "Message": message, **extra}
    if inner is not None:
        payload["InnerException"] = inner
    return payload


def eval_ok(data: str, **metadata: Any) -> dict[str, Any]:
    return {
        "evaluationResult": {"case": "ok", "data": data},
        "evaluatedCode": "",
        "metadata": metadata,
        "diagnostics": [],
    }


@dataclass
class FakeDaemon:
    """Daemon side of a channel, driven by the test.

    Messages are read inline; cancellation notices are recorded and skipped
    unless a test asks for them explicitly.
    """

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    cancelled: list[int] = field(default_factory=list, init=False)

    async def receive(self, timeout: float = 2.0, *, skip_cancels: bool = True) -> dict[str, Any]:
        """Read the next message the client sent."""
        while True:
            msg = await asyncio.wait_for(read_message(self.reader), timeout=timeout)
            if msg is None:
                raise ConnectionError("Client closed connection")
            if msg.get("method") == CANCEL_METHOD:
                self.cancelled.append(msg["params"]["id"])
                if skip_cancels:
                    continue
            return msg

    async def send(self, message: dict[str, Any]) -> None:
        await write_message(self.writer, message)

    async def notify(self, method: str, params: Any = None) -> None:
        await self.send({"jsonrpc": "2.0", "method": method, "params": params})

    async def respond(self, request_id: int, result: Any) -> None:
        await self.send({"jsonrpc": "2.0", "id": request_id, "result": result})

    async def respond_error(
        self,
        request_id: int | None,
        code: int = -32603,
        message: str = "Internal error",
        data: Any = None,
    ) -> None:
        error: dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        await self.send({"jsonrpc": "2.0", "id": request_id, "error": error})

    async def log(self, level: str, message: str) -> None:
        await self.notify("logging", {"level": level, "message": message})

    async def initialized_ok(self) -> None:
        await self.notify("initialized", {"case": "ok", "data": None})

    async def initialized_error(self, exception: dict[str, Any]) -> None:
        await self.notify("initialized", {"case": "error", "error": exception})

    async def close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def channel_with_daemon(**kwargs: Any) -> tuple[MessageChannel, FakeDaemon]:
    """A MessageChannel connected to a FakeDaemon. The channel is not started."""
    (client_reader, client_writer), (daemon_reader, daemon_writer) = await stream_pair()
    channel = MessageChannel(client_reader, client_writer, **kwargs)
    return channel, FakeDaemon(daemon_reader, daemon_writer)


FAKE_DAEMON = Path(__file__).parent / "fixtures" / "fake_daemon.py"


def fake_daemon_command(*args: str) -> str:
    """Command line that runs the fake daemon script with this interpreter."""
    return " ".join([sys.executable, str(FAKE_DAEMON), *args])
