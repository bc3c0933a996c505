"""Sessions: handshake-completed connections to one daemon process.

Lifecycle:

    STARTING --initialized ok--> RUNNING --transport lost--> DEAD
        \\--error / exit / timeout--> FAILED

A dead session is never revived; a new one is started from scratch.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError

from fsixbridge.errors import (
    FsixError,
    InitFailure,
    ProcessExitedError,
    ProtocolViolation,
    RequestCancelledError,
    SessionNotRunningError,
)
from fsixbridge.logging import forward_daemon_log, get_logger
from fsixbridge.rpc.channel import MessageChannel
from fsixbridge.transport.bootstrap import parse_init_line
from fsixbridge.transport.framing import DEFAULT_MAX_MESSAGE_SIZE
from fsixbridge.types import (
    CompletionItem,
    Diagnostic,
    EvalResult,
    InitializedError,
    InitializedOk,
    LogLevel,
    LogNotification,
    completion_list_adapter,
    diagnostic_list_adapter,
    initialized_adapter,
)

if TYPE_CHECKING:
    from pathlib import Path

    from fsixbridge.logging import LogSink
    from fsixbridge.rpc.cancellation import CancellationToken
    from fsixbridge.transport.bootstrap import DaemonLauncher
    from fsixbridge.transport.process import DaemonTransport

log = get_logger("session")

T = TypeVar("T")

EVAL_METHOD = "eval"
AUTOCOMPLETE_METHOD = "autocomplete"
DIAGNOSTICS_METHOD = "diagnostics"
LOGGING_NOTIFICATION = "logging"
INITIALIZED_NOTIFICATION = "initialized"

# How long to wait for an exit code after the stream drops during startup
EXIT_GRACE_PERIOD = 0.5


class SessionState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    DEAD = "dead"


def merge_args(
    metadata: Mapping[str, Any] | None,
    args: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Cell metadata overlaid with call arguments; call arguments win."""
    combined: dict[str, Any] = dict(metadata or {})
    combined.update(args or {})
    return combined


class Session:
    """A connection to one daemon process.

    Typed operations are only legal after ``initialize()`` succeeded and
    while ``is_running()`` is true. The liveness flag starts true and is
    cleared exactly once, when the channel closes for any reason. A session
    that dies that way stops its daemon in the background.
    """

    def __init__(
        self,
        channel: MessageChannel,
        transport: DaemonTransport | None = None,
        *,
        on_log: Callable[[LogNotification], None] | None = None,
    ) -> None:
        self._channel = channel
        self._transport = transport
        self._on_log = on_log
        self._echo: LogSink | None = None

        self._alive = True
        self._initialized = False
        self._init_started = False
        self._failed = False
        self._disposed = False
        self._handshaking = False
        self._release_task: asyncio.Future[None] | None = None
        self._initialized_future: asyncio.Future[InitializedOk | InitializedError] = (
            asyncio.get_running_loop().create_future()
        )

        # Registered before the read loop starts so early logs are not lost.
        channel.on_notification(LOGGING_NOTIFICATION, self._handle_log)
        channel.on_notification(INITIALIZED_NOTIFICATION, self._handle_initialized)
        channel.on_close(self._handle_closed)
        if transport is not None:
            transport.exit_task().add_done_callback(self._handle_exit)

    @classmethod
    def from_transport(
        cls,
        transport: DaemonTransport,
        *,
        on_log: Callable[[LogNotification], None] | None = None,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    ) -> Session:
        channel = MessageChannel(
            transport.reader,
            transport.writer,
            name=f"fsix-daemon[{transport.pid}]",
            max_message_size=max_message_size,
        )
        return cls(channel, transport, on_log=on_log)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def is_running(self) -> bool:
        return self._alive

    @property
    def state(self) -> SessionState:
        if not self._alive:
            return SessionState.DEAD
        if self._failed:
            return SessionState.FAILED
        if self._initialized:
            return SessionState.RUNNING
        return SessionState.STARTING

    @property
    def channel(self) -> MessageChannel:
        return self._channel

    @property
    def transport(self) -> DaemonTransport | None:
        return self._transport

    @property
    def pid(self) -> int | None:
        return self._transport.pid if self._transport is not None else None

    # -------------------------------------------------------------------------
    # Handshake
    # -------------------------------------------------------------------------

    async def initialize(
        self,
        *,
        echo: LogSink | None = None,
        timeout: float | None = None,
        token: CancellationToken | None = None,
    ) -> InitFailure | None:
        """Wait for the daemon's ``initialized`` notification.

        Daemon log messages are echoed to ``echo`` until initialization
        succeeds. The first of these events decides the outcome: the
        notification, the process exiting, the stream failing, ``token``
        firing or ``timeout`` elapsing.

        Returns:
            None on success, otherwise the tagged failure. The daemon is
            stopped if the stream already closed; otherwise a failed session
            is left for the caller to dispose.
        """
        if self._init_started:
            raise RuntimeError("Session.initialize() may only be called once")
        self._init_started = True
        self._echo = echo

        self._handshaking = True
        try:
            return await self._handshake(timeout, token)
        finally:
            self._handshaking = False
            if self._channel.closed and not self._disposed:
                self._release()

    async def _handshake(
        self, timeout: float | None, token: CancellationToken | None
    ) -> InitFailure | None:
        transport = self._transport
        if transport is not None and transport.returncode is not None:
            return self._fail(InitFailure.process_exited(transport.returncode))

        self._channel.start()

        closed = asyncio.ensure_future(self._channel.wait_closed())
        waiters: set[asyncio.Future[Any]] = {self._initialized_future, closed}
        exit_task = transport.exit_task() if transport is not None else None
        if exit_task is not None:
            waiters.add(exit_task)
        cancelled = asyncio.ensure_future(token.wait()) if token is not None else None
        if cancelled is not None:
            waiters.add(cancelled)

        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if cancelled is not None:
                cancelled.cancel()

        if self._initialized_future.done():
            return self._finish_handshake()
        if exit_task is not None and exit_task.done():
            return self._fail(InitFailure.process_exited(exit_task.result()))
        if self._channel.closed:
            error = self._channel.close_error
            if exit_task is not None:
                try:
                    code = await asyncio.wait_for(asyncio.shield(exit_task), EXIT_GRACE_PERIOD)
                    return self._fail(InitFailure.process_exited(code))
                except asyncio.TimeoutError:
                    pass
            return self._fail(InitFailure.other(error or FsixError("Connection closed")))
        if token is not None and token.cancelled:
            return self._fail(InitFailure.other(RequestCancelledError("Initialization was cancelled")))
        return self._fail(
            InitFailure.other(TimeoutError(f"Daemon did not initialize within {timeout}s"))
        )

    def _finish_handshake(self) -> InitFailure | None:
        try:
            outcome = self._initialized_future.result()
        except ProtocolViolation as e:
            return self._fail(InitFailure.other(e))

        if isinstance(outcome, InitializedError):
            return self._fail(InitFailure.remote_exception(outcome.error))

        self._initialized = True
        self._echo = None
        log.info("Daemon session initialized (pid %s)", self.pid)
        return None

    def _fail(self, failure: InitFailure) -> InitFailure:
        self._failed = True
        log.debug("Daemon initialization failed: %s", failure.describe())
        return failure

    # -------------------------------------------------------------------------
    # Typed operations
    # -------------------------------------------------------------------------

    async def evaluate(
        self,
        code: str,
        args: Mapping[str, Any] | None = None,
        *,
        metadata: Mapping[str, Any] | None = None,
        token: CancellationToken | None = None,
    ) -> EvalResult:
        """Evaluate ``code``.

        Args:
            code: Source text to evaluate.
            args: Per-call arguments such as ``{"hotReload": True}``.
            metadata: Cell-level metadata; ``args`` take precedence on collision.
            token: Cancels the request locally and notifies the daemon.
        """
        self._ensure_ready(EVAL_METHOD)
        params = {"code": code, "args": merge_args(metadata, args)}
        result = await self._channel.request(EVAL_METHOD, params, token=token)
        return _parse(EvalResult.model_validate, result, EVAL_METHOD)

    async def get_completions(
        self,
        text: str,
        caret: int,
        word: str,
        *,
        token: CancellationToken | None = None,
    ) -> list[CompletionItem]:
        """Completion candidates at absolute offset ``caret``, filtered by ``word``."""
        self._ensure_ready(AUTOCOMPLETE_METHOD)
        result = await self._channel.request(AUTOCOMPLETE_METHOD, [text, caret, word], token=token)
        return _parse(completion_list_adapter.validate_python, result, AUTOCOMPLETE_METHOD)

    async def get_diagnostics(
        self,
        text: str,
        *,
        token: CancellationToken | None = None,
    ) -> list[Diagnostic]:
        """Diagnostics for the whole document ``text``."""
        self._ensure_ready(DIAGNOSTICS_METHOD)
        result = await self._channel.request(DIAGNOSTICS_METHOD, [text], token=token)
        return _parse(diagnostic_list_adapter.validate_python, result, DIAGNOSTICS_METHOD)

    def _ensure_ready(self, method: str) -> None:
        if not self._alive:
            raise SessionNotRunningError(f"Cannot call {method}: the daemon session is not running")
        if not self._initialized:
            raise SessionNotRunningError(f"Cannot call {method}: the daemon session is not initialized")

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def dispose(self) -> None:
        """Close the channel and stop the daemon. Safe to call repeatedly."""
        if self._disposed:
            return
        self._disposed = True
        await self._channel.close()
        if self._transport is not None:
            await self._transport.close()

    async def __aenter__(self) -> Session:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.dispose()

    # -------------------------------------------------------------------------
    # Channel callbacks
    # -------------------------------------------------------------------------

    def _handle_log(self, params: Any) -> None:
        try:
            notification = LogNotification.model_validate(params)
        except ValidationError:
            message = params.get("message") if isinstance(params, dict) else None
            notification = LogNotification(level=LogLevel.INFO, message=str(message or params))

        forward_daemon_log(notification)
        if self._echo is not None and not self._initialized:
            if notification.level is LogLevel.ERROR:
                self._echo.error(notification.message)
            else:
                self._echo.info(notification.message)
        if self._on_log is not None:
            self._on_log(notification)

    def _handle_initialized(self, params: Any) -> None:
        if self._initialized_future.done():
            log.warning("Ignoring repeated initialized notification")
            return
        try:
            outcome = initialized_adapter.validate_python(params)
        except ValidationError as e:
            error = ProtocolViolation(f"Malformed initialized notification: {e}")
            self._initialized_future.set_exception(error)
            return
        self._initialized_future.set_result(outcome)

    def _handle_closed(self, error: BaseException) -> None:
        self._alive = False
        if self._disposed:
            return
        if self._initialized:
            log.warning("Daemon session lost: %s", error)
        # initialize() still waits on the exit code; it releases afterwards.
        if not self._handshaking:
            self._release()

    def _release(self) -> None:
        """Stop the daemon behind a dead session without waiting for dispose()."""
        if self._transport is None or self._release_task is not None:
            return
        self._release_task = asyncio.ensure_future(self._transport.close())
        self._release_task.add_done_callback(self._on_released)

    def _on_released(self, task: asyncio.Future[None]) -> None:
        if not task.cancelled() and task.exception() is not None:
            log.error("Stopping daemon pid %s failed: %s", self.pid, task.exception())

    def _handle_exit(self, task: asyncio.Task[int]) -> None:
        if task.cancelled():
            return
        self._channel.abort(ProcessExitedError(task.result()))


def _parse(parser: Callable[[Any], T], result: Any, method: str) -> T:
    try:
        return parser(result)
    except ValidationError as e:
        raise ProtocolViolation(f"Malformed {method} result: {e}") from e


async def start_session(
    launcher: DaemonLauncher,
    init_line: str | Sequence[str] = "",
    *,
    cwd: str | Path | None = None,
    echo: LogSink | None = None,
    on_log: Callable[[LogNotification], None] | None = None,
    token: CancellationToken | None = None,
) -> Session | InitFailure:
    """Launch a daemon, connect, and complete the handshake.

    Never raises for launch or handshake failures: the partially built
    session is disposed and the tagged failure is returned instead.

    Args:
        launcher: Resolves and starts the daemon.
        init_line: The notebook's init line (e.g. ``fsix --proj App.fsproj``)
            or the extra daemon arguments themselves.
        cwd: Working directory for the daemon and tool discovery.
        echo: Receives daemon log output until initialization succeeds.
        on_log: Receives every daemon log notification.
        token: Cancels the start.
    """
    extra_args = parse_init_line(init_line) if isinstance(init_line, str) else list(init_line)

    try:
        transport = await launcher.launch(extra_args, cwd, token)
    except ProcessExitedError as e:
        return InitFailure.process_exited(e.code)
    except (FsixError, OSError) as e:
        log.error("Could not start daemon: %s", e)
        return InitFailure.other(e)

    if transport is None:
        return InitFailure.not_installed()

    session = Session.from_transport(
        transport,
        on_log=on_log,
        max_message_size=launcher.config.max_message_size,
    )
    try:
        failure = await session.initialize(
            echo=echo,
            timeout=launcher.config.init_timeout,
            token=token,
        )
    except BaseException:
        await session.dispose()
        raise

    if failure is not None:
        await session.dispose()
        return failure
    return session
