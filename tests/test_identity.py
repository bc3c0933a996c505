"""Tests for document identity resolution."""

from __future__ import annotations

import pytest

from fsixbridge.errors import IdentityResolutionError
from fsixbridge.session.identity import (
    document_identity,
    input_document_identity,
    is_interactive,
    notebook_identity,
)


class TestNotebookIdentity:
    """Persisted and REPL notebooks."""

    def test_persisted_notebook_uses_path(self) -> None:
        assert notebook_identity("file:///home/me/Analysis.fsixnb") == "/home/me/Analysis.fsixnb"

    def test_plain_path_is_kept(self) -> None:
        assert notebook_identity("/work/Notebook.fsixnb") == "/work/Notebook.fsixnb"

    def test_percent_escapes_are_decoded(self) -> None:
        assert notebook_identity("file:///my%20work/a.fsixnb") == "/my work/a.fsixnb"

    def test_windows_drive_is_not_a_scheme(self) -> None:
        assert notebook_identity("C:/work/a.fsixnb") == "C:/work/a.fsixnb"

    @pytest.mark.parametrize(
        ("uri", "expected"),
        [
            ("untitled:/Interactive-1.interactive", "interactive-1"),
            ("vscode-interactive:/c%3A/work/Interactive-12.interactive", "interactive-12"),
            ("untitled:/Interactive-7.INTERACTIVE", "interactive-7"),
        ],
    )
    def test_repl_notebook_uses_instance_number(self, uri: str, expected: str) -> None:
        assert notebook_identity(uri) == expected

    def test_repl_notebook_without_number_fails(self) -> None:
        with pytest.raises(IdentityResolutionError, match="Cannot parse interactive notebook"):
            notebook_identity("untitled:/Interactive.interactive")

    def test_same_uri_same_identity(self) -> None:
        uri = "untitled:/Interactive-4.interactive"
        assert notebook_identity(uri) == notebook_identity(uri)

    def test_distinct_instances_do_not_collide(self) -> None:
        first = notebook_identity("untitled:/Interactive-1.interactive")
        eleventh = notebook_identity("untitled:/Interactive-11.interactive")
        assert first != eleventh


class TestInputIdentity:
    """The input box attached to a REPL."""

    def test_input_maps_to_repl_identity(self) -> None:
        assert input_document_identity("vscode-interactive-input:/InteractiveInput-3") == "interactive-3"

    def test_input_without_number_fails(self) -> None:
        with pytest.raises(IdentityResolutionError):
            input_document_identity("vscode-interactive-input:/InteractiveInput")

    def test_input_and_notebook_share_identity(self) -> None:
        notebook = document_identity("untitled:/Interactive-5.interactive")
        input_box = document_identity("vscode-interactive-input:/InteractiveInput-5")
        assert notebook == input_box == "interactive-5"


def test_document_identity_for_regular_document() -> None:
    assert document_identity("file:///src/Script.fsx") == "/src/Script.fsx"


def test_is_interactive() -> None:
    assert is_interactive("untitled:/Interactive-1.interactive")
    assert is_interactive("vscode-interactive-input:/InteractiveInput-1")
    assert not is_interactive("file:///a.fsixnb")
