"""Editor-facing helpers for completions and diagnostics."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from fsixbridge.errors import FsixError
from fsixbridge.logging import get_logger

if TYPE_CHECKING:
    from fsixbridge.config import Config
    from fsixbridge.rpc.cancellation import CancellationToken
    from fsixbridge.session.coordinator import SessionCoordinator
    from fsixbridge.types import CompletionItem, Diagnostic

log = get_logger("language")

DiagnosticsCallback = Callable[[str, str], Awaitable[None]]


def completion_context(text: str, line: int, column: int) -> tuple[int, str]:
    """Caret offset and the word being typed at a zero-based line/column.

    The word is the last space-separated token between the start of the
    line and the caret.
    """
    lines = text.split("\n")
    line = max(0, min(line, len(lines) - 1))
    current = lines[line].rstrip("\r")
    column = max(0, min(column, len(current)))

    caret = sum(len(previous) + 1 for previous in lines[:line]) + column
    word = current[:column].split(" ")[-1]
    return caret, word


async def complete(
    coordinator: SessionCoordinator,
    document_uri: str,
    text: str,
    line: int,
    column: int,
    token: CancellationToken | None = None,
) -> list[CompletionItem]:
    """Completions for a document position; empty when it has no running session."""
    session = coordinator.session_for(document_uri)
    if session is None or not session.is_running():
        return []
    caret, word = completion_context(text, line, column)
    return await session.get_completions(text, caret, word, token=token)


async def diagnose(
    coordinator: SessionCoordinator,
    document_uri: str,
    text: str,
    token: CancellationToken | None = None,
) -> list[Diagnostic]:
    """Diagnostics for a document; empty when it has no running session."""
    session = coordinator.session_for(document_uri)
    if session is None or not session.is_running():
        return []
    return await session.get_diagnostics(text, token=token)


class DiagnosticsDebouncer:
    """Delays diagnostics requests until typing pauses.

    Each ``schedule()`` call for a document restarts its timer, so only the
    last text scheduled within ``delay`` seconds reaches ``callback``.

    Example:
        async def publish(uri: str, text: str) -> None:
            show(uri, await diagnose(coordinator, uri, text))

        debouncer = DiagnosticsDebouncer.from_config(publish, get_config())
        debouncer.schedule(uri, document_text)
    """

    def __init__(self, callback: DiagnosticsCallback, delay: float = 0.3) -> None:
        self._callback = callback
        self._delay = delay
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @classmethod
    def from_config(cls, callback: DiagnosticsCallback, config: Config) -> DiagnosticsDebouncer:
        """A debouncer using ``editor.diagnostics_delay``."""
        return cls(callback, delay=config.editor.diagnostics_delay)

    @property
    def delay(self) -> float:
        return self._delay

    def pending(self) -> list[str]:
        return [uri for uri, task in self._tasks.items() if not task.done()]

    def schedule(self, document_uri: str, text: str) -> None:
        previous = self._tasks.pop(document_uri, None)
        if previous is not None:
            previous.cancel()
        self._tasks[document_uri] = asyncio.create_task(self._fire(document_uri, text))

    async def _fire(self, document_uri: str, text: str) -> None:
        await asyncio.sleep(self._delay)
        # Past this point a new schedule() no longer interrupts the request.
        if self._tasks.get(document_uri) is asyncio.current_task():
            del self._tasks[document_uri]
        try:
            await self._callback(document_uri, text)
        except FsixError as e:
            log.debug("Diagnostics for %s failed: %s", document_uri, e)

    def cancel(self, document_uri: str | None = None) -> None:
        """Drop pending work for one document, or for all of them."""
        if document_uri is not None:
            task = self._tasks.pop(document_uri, None)
            if task is not None:
                task.cancel()
            return
        tasks, self._tasks = self._tasks, {}
        for task in tasks.values():
            task.cancel()

    async def aclose(self) -> None:
        tasks = list(self._tasks.values())
        self.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
