"""Top-level owner of daemon sessions for a set of open documents.

The coordinator resolves a document to its identity, starts a daemon
session on demand, keeps it in the registry, and starts a replacement
when the registered one has died.

Example:
    async with SessionCoordinator(get_config()) as coordinator:
        result = await coordinator.evaluate(
            "file:///work/Notebook.fsixnb", "1 + 1", init_line="fsix"
        )
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from fsixbridge.config import Config, get_config
from fsixbridge.errors import IdentityResolutionError, InitFailure
from fsixbridge.logging import LoggerSink, LogSink, get_logger
from fsixbridge.session.connection import Session, start_session
from fsixbridge.session.identity import document_identity
from fsixbridge.session.registry import SessionRegistry
from fsixbridge.transport.bootstrap import DaemonLauncher

if TYPE_CHECKING:
    from fsixbridge.rpc.cancellation import CancellationToken
    from fsixbridge.transport.bootstrap import InstallPrompt
    from fsixbridge.types import EvalResult

log = get_logger("coordinator")


def report_init_failure(failure: InitFailure, log_sink: LogSink, echo: LogSink | None = None) -> None:
    """Show a failed start in the persistent log and, where useful, inline."""
    if not failure.is_error:
        log.info("Daemon not started: %s", failure.describe())
        return

    message = failure.describe()
    log_sink.error(message)
    if echo is not None:
        echo.error(message)


def report_evaluation(result: EvalResult, echo: LogSink) -> None:
    """Write the side output of an evaluation: diagnostics, stdout, reloads."""
    for diagnostic in result.diagnostics:
        if diagnostic.is_error:
            echo.error(diagnostic.message)
        else:
            echo.info(diagnostic.message)

    if result.stdout:
        if result.ok:
            echo.info(result.stdout)
        else:
            echo.error(result.stdout)

    for method in result.reloaded_methods:
        echo.info(f"Method {method} was updated")


class SessionCoordinator:
    """Starts, tracks and replaces daemon sessions per document identity.

    At most one start runs per identity at a time; concurrent callers for
    the same identity wait for it and share its session. The per-identity
    locks live as long as the coordinator, so a closed document never has
    two locks.
    """

    def __init__(
        self,
        config: Config | None = None,
        registry: SessionRegistry | None = None,
        launcher: DaemonLauncher | None = None,
        log_sink: LogSink | None = None,
        *,
        prompt: InstallPrompt | None = None,
    ) -> None:
        self.config = config or get_config()
        self.registry = registry if registry is not None else SessionRegistry()
        self.launcher = launcher or DaemonLauncher(self.config.daemon, prompt)
        self.log_sink: LogSink = log_sink or LoggerSink(log)
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, identity: str) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = self._locks[identity] = asyncio.Lock()
        return lock

    # -------------------------------------------------------------------------
    # Starting sessions
    # -------------------------------------------------------------------------

    async def initialize(
        self,
        document_uri: str,
        init_line: str | Sequence[str] = "",
        *,
        cwd: str | Path | None = None,
        echo: LogSink | None = None,
        token: CancellationToken | None = None,
    ) -> Session | InitFailure:
        """Start a new session for the document and register it.

        A live session already registered for the same identity is
        disposed once the new one is in place.
        """
        try:
            identity = document_identity(document_uri)
        except IdentityResolutionError as e:
            self.log_sink.error(str(e))
            return InitFailure.other(e)

        async with self._lock_for(identity):
            return await self._start(identity, init_line, cwd, echo, token)

    async def ensure_session(
        self,
        document_uri: str,
        init_line: str | Sequence[str] = "",
        *,
        cwd: str | Path | None = None,
        echo: LogSink | None = None,
        token: CancellationToken | None = None,
    ) -> Session | InitFailure:
        """The document's running session, starting a new one if needed."""
        try:
            identity = document_identity(document_uri)
        except IdentityResolutionError as e:
            self.log_sink.error(str(e))
            return InitFailure.other(e)

        async with self._lock_for(identity):
            session = self.registry.lookup(identity)
            if session is not None:
                if session.is_running():
                    return session
                log.debug("Replacing dead session for %s", identity)
                self.registry.evict(identity)
                await session.dispose()
            if echo is not None:
                echo.info("Initializing FsiX first...")
            result = await self._start(identity, init_line, cwd, echo, token)
            if isinstance(result, InitFailure) and echo is not None and result.is_error:
                echo.error("Failed to initialize FsiX!")
            return result

    async def _start(
        self,
        identity: str,
        init_line: str | Sequence[str],
        cwd: str | Path | None,
        echo: LogSink | None,
        token: CancellationToken | None,
    ) -> Session | InitFailure:
        log.info("Starting daemon session for %s", identity)
        result = await start_session(
            self.launcher,
            init_line,
            cwd=cwd or self._default_cwd(identity),
            echo=echo,
            token=token,
        )
        if isinstance(result, InitFailure):
            report_init_failure(result, self.log_sink, echo)
            return result

        if echo is not None:
            echo.info("Done!")
        previous = self.registry.assign(identity, result)
        if previous is not None:
            log.debug("Disposing superseded session for %s", identity)
            await previous.dispose()
        return result

    @staticmethod
    def _default_cwd(identity: str) -> Path | None:
        # Persisted notebooks run next to the notebook file.
        path = Path(identity)
        if path.is_absolute() and path.parent.is_dir():
            return path.parent
        return None

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def session_for(self, document_uri: str) -> Session | None:
        """The session registered for a notebook, REPL or REPL input document."""
        try:
            identity = document_identity(document_uri)
        except IdentityResolutionError as e:
            log.error("%s", e)
            return None
        return self.registry.lookup(identity)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def evaluate(
        self,
        document_uri: str,
        code: str,
        init_line: str | Sequence[str] = "",
        metadata: Mapping[str, Any] | None = None,
        args: Mapping[str, Any] | None = None,
        echo: LogSink | None = None,
        token: CancellationToken | None = None,
        *,
        cwd: str | Path | None = None,
    ) -> EvalResult:
        """Evaluate ``code`` in the document's session, starting it if needed.

        Raises:
            The failure's exception if the session could not be started,
            otherwise whatever ``Session.evaluate`` raises.
        """
        session = await self.ensure_session(
            document_uri, init_line, cwd=cwd, echo=echo, token=token
        )
        if isinstance(session, InitFailure):
            raise session.to_exception()
        return await session.evaluate(code, args, metadata=metadata, token=token)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def close_document(self, document_uri: str) -> None:
        """Forget the document's session and stop its daemon."""
        try:
            identity = document_identity(document_uri)
        except IdentityResolutionError as e:
            log.debug("%s", e)
            return
        session = self.registry.evict(identity)
        if session is not None:
            await session.dispose()

    async def aclose(self) -> None:
        """Dispose every registered session."""
        sessions = self.registry.clear()
        await asyncio.gather(*(s.dispose() for s in sessions), return_exceptions=True)

    async def __aenter__(self) -> SessionCoordinator:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()
