"""Daemon sessions, their registry and the coordinator that owns them."""

from fsixbridge.session.connection import (
    Session,
    SessionState,
    merge_args,
    start_session,
)
from fsixbridge.session.coordinator import (
    SessionCoordinator,
    report_evaluation,
    report_init_failure,
)
from fsixbridge.session.identity import (
    INTERACTIVE_INPUT_SCHEME,
    document_identity,
    input_document_identity,
    notebook_identity,
)
from fsixbridge.session.language import (
    DiagnosticsDebouncer,
    complete,
    completion_context,
    diagnose,
)
from fsixbridge.session.registry import SessionRegistry

__all__ = [
    # Sessions
    "Session",
    "SessionState",
    "merge_args",
    "start_session",
    # Registry
    "SessionRegistry",
    "SessionCoordinator",
    "report_evaluation",
    "report_init_failure",
    # Identity
    "INTERACTIVE_INPUT_SCHEME",
    "document_identity",
    "input_document_identity",
    "notebook_identity",
    # Language features
    "DiagnosticsDebouncer",
    "complete",
    "completion_context",
    "diagnose",
]
