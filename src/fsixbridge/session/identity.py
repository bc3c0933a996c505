"""Mapping document URIs to the key their daemon session is registered under.

Persisted notebooks are keyed by their path. REPL notebooks get a fresh
URI on every reopen, so they are keyed by the instance number at the end
of the path instead (``.../Interactive-3.interactive`` -> ``interactive-3``).
The input box attached to a REPL has its own URI scheme and ends with the
same instance number.
"""

from __future__ import annotations

import re
from urllib.parse import unquote, urlsplit

from fsixbridge.errors import IdentityResolutionError

INTERACTIVE_SUFFIX = ".interactive"
INTERACTIVE_INPUT_SCHEME = "vscode-interactive-input"

_INTERACTIVE_RE = re.compile(r"-(\d+)\.interactive$", re.IGNORECASE)
_INPUT_RE = re.compile(r"-(\d+)$")


def _split(uri: str) -> tuple[str, str]:
    parts = urlsplit(uri)
    # A single-letter scheme is a Windows drive, not a URI scheme.
    if len(parts.scheme) <= 1:
        return "", uri
    return parts.scheme, unquote(parts.path)


def interactive_identity(number: str | int) -> str:
    return f"interactive-{number}"


def notebook_identity(uri: str) -> str:
    """Registry key for a notebook document.

    Raises:
        IdentityResolutionError: A REPL notebook path without an instance number.
    """
    _, path = _split(uri)
    if not path.lower().endswith(INTERACTIVE_SUFFIX):
        return path

    match = _INTERACTIVE_RE.search(path)
    if match is None:
        raise IdentityResolutionError(f"Cannot parse interactive notebook with path {path}")
    return interactive_identity(match.group(1))


def input_document_identity(uri: str) -> str:
    """Registry key for a REPL input box URI.

    Raises:
        IdentityResolutionError: The URI does not end with an instance number.
    """
    _, path = _split(uri)
    match = _INPUT_RE.search(path)
    if match is None:
        raise IdentityResolutionError(f"Cannot parse interactive input with path {path}")
    return interactive_identity(match.group(1))


def document_identity(uri: str) -> str:
    """Registry key for any document: notebook, REPL notebook or REPL input."""
    scheme, _ = _split(uri)
    if scheme == INTERACTIVE_INPUT_SCHEME:
        return input_document_identity(uri)
    return notebook_identity(uri)


def is_interactive(uri: str) -> bool:
    scheme, path = _split(uri)
    return scheme == INTERACTIVE_INPUT_SCHEME or path.lower().endswith(INTERACTIVE_SUFFIX)
