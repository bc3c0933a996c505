"""JSON-RPC message channel over a framed duplex byte stream.

The channel owns the read loop. Outgoing requests are correlated with
their responses by id, inbound notifications are dispatched by method
name, and any transport failure fails every pending request and closes
the channel exactly once.

Example:
    channel = MessageChannel(reader, writer)
    channel.on_notification("logging", print)
    channel.start()
    result = await channel.request("diagnostics", ["let x = 1"])
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from fsixbridge.errors import (
    ProtocolViolation,
    RequestCancelledError,
    ResponseError,
    TransportClosedError,
    TransportError,
)
from fsixbridge.logging import TRACE, get_logger
from fsixbridge.transport.framing import (
    DEFAULT_MAX_MESSAGE_SIZE,
    FramingError,
    encode_message,
    read_message,
)

if TYPE_CHECKING:
    from collections.abc import Coroutine

    from fsixbridge.rpc.cancellation import CancellationToken

log = get_logger("rpc")

CANCEL_METHOD = "$/cancelRequest"
METHOD_NOT_FOUND = -32601

# Cancelled ids remembered so late responses can be dropped quietly
MAX_CANCELLED_IDS = 1024

NotificationHandler = Callable[[Any], Any]
CloseHandler = Callable[[BaseException], None]


class MessageChannel:
    """Bidirectional JSON-RPC messaging on one reader/writer pair.

    Sends from concurrent callers are serialized under a lock; each message
    is written with a single ``write`` call. The read loop runs as its own
    task and never waits on outstanding requests.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        name: str = "daemon",
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._name = name
        self._max_message_size = max_message_size

        self._next_id = 0
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._cancelled_ids: set[int] = set()
        self._cancelled_order: deque[int] = deque()
        self._handlers: dict[str, NotificationHandler] = {}
        self._close_handlers: list[CloseHandler] = []
        self._write_lock = asyncio.Lock()
        self._read_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

        self._closed = False
        self._close_error: BaseException | None = None
        self._closed_event = asyncio.Event()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_error(self) -> BaseException | None:
        """Why the channel closed, or None while it is open."""
        return self._close_error

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def wait_closed(self) -> BaseException:
        await self._closed_event.wait()
        assert self._close_error is not None
        return self._close_error

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def on_notification(self, method: str, handler: NotificationHandler) -> None:
        """Route notifications for ``method`` to ``handler(params)``.

        The handler may be a plain function or return an awaitable, which is
        run as a background task so the read loop is not blocked.
        """
        self._handlers[method] = handler

    def on_close(self, handler: CloseHandler) -> None:
        """Call ``handler(error)`` once when the channel closes."""
        if self._closed:
            assert self._close_error is not None
            handler(self._close_error)
            return
        self._close_handlers.append(handler)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the read loop. Calling it again has no effect."""
        if self._read_task is None and not self._closed:
            self._read_task = asyncio.create_task(self._read_loop(), name=f"{self._name}-reader")

    def abort(self, error: BaseException) -> None:
        """Close from synchronous code: fail pending requests and stop reading."""
        self._shutdown(error)
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()

    async def close(self, error: BaseException | None = None) -> None:
        """Close the channel, failing pending requests with ``error``."""
        self._shutdown(error or TransportClosedError(f"Connection to {self._name} closed"))

        current = asyncio.current_task()
        tasks = [t for t in (self._read_task, *self._background) if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Outgoing
    # -------------------------------------------------------------------------

    async def request(
        self,
        method: str,
        params: Any = None,
        *,
        token: CancellationToken | None = None,
    ) -> Any:
        """Send a request and wait for its result.

        Raises:
            RequestCancelledError: ``token`` fired before the response arrived.
            ResponseError: The daemon answered with an error object.
            TransportError: The channel closed before the response arrived.
        """
        if self._closed:
            raise self._closed_error()
        if token is not None and token.cancelled:
            raise RequestCancelledError(f"Request {method} was cancelled before it was sent")

        request_id = self._next_id
        self._next_id += 1
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        data = encode_message(message)

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        unregister = token.register(lambda: self._cancel(request_id, method)) if token else None

        log.log(TRACE, "-> %s #%d", method, request_id)
        try:
            try:
                await self._write(data)
            except TransportError:
                pass  # the channel is shut down and ``future`` carries the failure
            return await future
        except asyncio.CancelledError:
            if self._pending.pop(request_id, None) is not None:
                self._remember_cancelled(request_id)
                self._send_cancel_notice(request_id)
            raise
        finally:
            if unregister is not None:
                unregister()
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a notification. No response is expected."""
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        log.log(TRACE, "-> %s (notification)", method)
        await self._write(encode_message(message))

    async def _write(self, data: bytes) -> None:
        if self._closed:
            raise self._closed_error()
        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                error = TransportError(f"Failed to write to {self._name}: {e}")
                error.__cause__ = e
                self._shutdown(error)
                raise error from e

    def _cancel(self, request_id: int, method: str) -> None:
        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            return
        self._remember_cancelled(request_id)
        future.set_exception(RequestCancelledError(f"Request {method} #{request_id} was cancelled"))
        self._send_cancel_notice(request_id)

    def _remember_cancelled(self, request_id: int) -> None:
        self._cancelled_ids.add(request_id)
        self._cancelled_order.append(request_id)
        while len(self._cancelled_order) > MAX_CANCELLED_IDS:
            self._cancelled_ids.discard(self._cancelled_order.popleft())

    def _send_cancel_notice(self, request_id: int) -> None:
        if not self._closed:
            self._spawn(self._notify_cancel(request_id))

    async def _notify_cancel(self, request_id: int) -> None:
        try:
            await self.notify(CANCEL_METHOD, {"id": request_id})
        except TransportError as e:
            log.debug("Could not send cancellation for #%d: %s", request_id, e)

    def _closed_error(self) -> BaseException:
        return self._close_error or TransportClosedError(f"Connection to {self._name} closed")

    # -------------------------------------------------------------------------
    # Incoming
    # -------------------------------------------------------------------------

    async def _read_loop(self) -> None:
        error: BaseException
        try:
            while True:
                message = await read_message(self._reader, max_message_size=self._max_message_size)
                if message is None:
                    error = TransportClosedError(f"{self._name} closed the connection")
                    break
                self._dispatch(message)
        except FramingError as e:
            error = ProtocolViolation(f"Malformed message from {self._name}: {e}")
            error.__cause__ = e
        except ProtocolViolation as e:
            error = e
        except (ConnectionError, OSError) as e:
            error = TransportError(f"Reading from {self._name} failed: {e}")
            error.__cause__ = e
        except Exception as e:
            log.exception("Read loop for %s crashed", self._name)
            error = TransportError(f"Read loop for {self._name} crashed: {e}")
            error.__cause__ = e

        if isinstance(error, ProtocolViolation):
            log.error("%s", error)
        else:
            log.debug("%s", error)
        self._shutdown(error)

    def _dispatch(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        if method is not None:
            if message.get("id") is not None:
                log.warning("Daemon sent unsupported request %s", method)
                self._spawn(self._reply_method_not_found(message["id"], method))
            else:
                self._handle_notification(method, message.get("params"))
            return

        if "id" not in message:
            raise ProtocolViolation(f"Message is neither request, notification nor response: {message!r}")
        self._handle_response(message)

    def _handle_notification(self, method: str, params: Any) -> None:
        log.log(TRACE, "<- %s (notification)", method)
        handler = self._handlers.get(method)
        if handler is None:
            log.debug("No handler for notification %s", method)
            return

        try:
            result = handler(params)
        except Exception:
            log.exception("Handler for notification %s failed", method)
            return
        if inspect.isawaitable(result):
            self._spawn(result)

    def _handle_response(self, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        if request_id is None:
            log.error("Daemon reported an error without a request id: %s", message.get("error"))
            return

        log.log(TRACE, "<- response #%s", request_id)
        future = self._pending.pop(request_id, None)
        if future is None:
            if request_id in self._cancelled_ids:
                self._cancelled_ids.discard(request_id)
                log.debug("Dropping late response for cancelled request #%s", request_id)
                return
            raise ProtocolViolation(f"Received response with unknown id {request_id!r}")

        if future.done():
            return
        if message.get("error") is not None:
            future.set_exception(ResponseError.from_payload(message["error"]))
        else:
            future.set_result(message.get("result"))

    async def _reply_method_not_found(self, request_id: Any, method: str) -> None:
        reply = {
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": METHOD_NOT_FOUND, "message": f"Unhandled method {method}"},
        }
        try:
            await self._write(encode_message(reply))
        except TransportError as e:
            log.debug("Could not reply to %s: %s", method, e)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _spawn(self, awaitable: Coroutine[Any, Any, Any] | Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Background task failed: %s", task.exception(), exc_info=task.exception())

    def _shutdown(self, error: BaseException) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_error = error

        pending, self._pending = self._pending, {}
        self._cancelled_ids.clear()
        self._cancelled_order.clear()
        for future in pending.values():
            if not future.done():
                future.set_exception(error)
        self._closed_event.set()

        handlers, self._close_handlers = self._close_handlers, []
        for handler in handlers:
            try:
                handler(error)
            except Exception:
                log.exception("Close handler failed")
