"""Tests for completion context and diagnostics debouncing."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from fsixbridge.config import Config
from fsixbridge.config.loader import dict_to_config
from fsixbridge.errors import TransportClosedError
from fsixbridge.session.language import (
    DiagnosticsDebouncer,
    complete,
    completion_context,
    diagnose,
)


class TestCompletionContext:
    """Caret offset and word under the caret."""

    def test_single_line(self) -> None:
        assert completion_context("List.ma", 0, 7) == (7, "List.ma")

    def test_word_is_last_space_separated_token(self) -> None:
        assert completion_context("let xs = List.ma", 0, 16) == (16, "List.ma")

    def test_caret_counts_previous_lines(self) -> None:
        text = "let a = 1\nlet b = Seq.it"
        caret, word = completion_context(text, 1, 14)

        assert caret == len("let a = 1\n") + 14
        assert text[:caret].endswith("Seq.it")
        assert word == "Seq.it"

    def test_crlf_line_endings(self) -> None:
        text = "open System\r\nConsole.Wri"
        caret, word = completion_context(text, 1, 11)

        assert text[:caret] == text
        assert word == "Console.Wri"

    def test_after_space_word_is_empty(self) -> None:
        assert completion_context("let x = ", 0, 8) == (8, "")

    def test_middle_of_line(self) -> None:
        assert completion_context("foo bar baz", 0, 7) == (7, "bar")

    def test_position_is_clamped(self) -> None:
        assert completion_context("abc", 5, 99) == (3, "abc")


class TestDiagnosticsDebouncer:
    """Only the last text in a burst is checked."""

    @pytest.mark.asyncio
    async def test_burst_delivers_last_text_once(self) -> None:
        callback = AsyncMock()
        debouncer = DiagnosticsDebouncer(callback, delay=0.05)

        for text in ("l", "le", "let"):
            debouncer.schedule("file:///a.fsx", text)
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.15)

        callback.assert_awaited_once_with("file:///a.fsx", "let")
        assert debouncer.pending() == []

    @pytest.mark.asyncio
    async def test_documents_are_independent(self) -> None:
        callback = AsyncMock()
        debouncer = DiagnosticsDebouncer(callback, delay=0.05)

        debouncer.schedule("file:///a.fsx", "a")
        debouncer.schedule("file:///b.fsx", "b")
        await asyncio.sleep(0.15)

        assert callback.await_count == 2

    @pytest.mark.asyncio
    async def test_cancel_drops_pending_work(self) -> None:
        callback = AsyncMock()
        debouncer = DiagnosticsDebouncer(callback, delay=0.05)

        debouncer.schedule("file:///a.fsx", "a")
        debouncer.cancel()
        await asyncio.sleep(0.1)

        callback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_one_document(self) -> None:
        callback = AsyncMock()
        debouncer = DiagnosticsDebouncer(callback, delay=0.05)

        debouncer.schedule("file:///a.fsx", "a")
        debouncer.schedule("file:///b.fsx", "b")
        debouncer.cancel("file:///a.fsx")
        await asyncio.sleep(0.15)

        callback.assert_awaited_once_with("file:///b.fsx", "b")

    @pytest.mark.asyncio
    async def test_callback_failure_is_contained(self) -> None:
        callback = AsyncMock(side_effect=TransportClosedError("gone"))
        debouncer = DiagnosticsDebouncer(callback, delay=0.01)

        debouncer.schedule("file:///a.fsx", "a")
        await asyncio.sleep(0.1)
        debouncer.schedule("file:///a.fsx", "b")
        await asyncio.sleep(0.1)

        assert callback.await_count == 2

    @pytest.mark.asyncio
    async def test_delay_from_config(self) -> None:
        callback = AsyncMock()
        config = dict_to_config({"editor": {"diagnostics_delay": 0.05}})
        debouncer = DiagnosticsDebouncer.from_config(callback, config)

        debouncer.schedule("file:///a.fsx", "a")
        await asyncio.sleep(0.15)

        assert debouncer.delay == 0.05
        callback.assert_awaited_once_with("file:///a.fsx", "a")

    def test_default_config_delay(self) -> None:
        debouncer = DiagnosticsDebouncer.from_config(AsyncMock(), Config())
        assert debouncer.delay == 0.3

    @pytest.mark.asyncio
    async def test_aclose(self) -> None:
        callback = AsyncMock()
        debouncer = DiagnosticsDebouncer(callback, delay=10)

        debouncer.schedule("file:///a.fsx", "a")
        await debouncer.aclose()

        assert debouncer.pending() == []
        callback.assert_not_awaited()


class TestProviders:
    """complete() and diagnose() against the coordinator's registry."""

    @pytest.mark.asyncio
    async def test_no_session_means_no_results(self) -> None:
        coordinator = Mock()
        coordinator.session_for.return_value = None

        assert await complete(coordinator, "file:///a.fsx", "x", 0, 1) == []
        assert await diagnose(coordinator, "file:///a.fsx", "x") == []

    @pytest.mark.asyncio
    async def test_dead_session_means_no_results(self) -> None:
        session = Mock()
        session.is_running.return_value = False
        coordinator = Mock()
        coordinator.session_for.return_value = session

        assert await diagnose(coordinator, "file:///a.fsx", "x") == []
        session.get_diagnostics.assert_not_called()

    @pytest.mark.asyncio
    async def test_complete_passes_caret_and_word(self) -> None:
        session = Mock()
        session.is_running.return_value = True
        session.get_completions = AsyncMock(return_value=["item"])
        coordinator = Mock()
        coordinator.session_for.return_value = session

        items = await complete(coordinator, "untitled:/Interactive-1.interactive", "a\nList.ma", 1, 7)

        assert items == ["item"]
        session.get_completions.assert_awaited_once_with("a\nList.ma", 9, "List.ma", token=None)
