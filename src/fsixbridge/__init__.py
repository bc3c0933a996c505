"""fsixbridge: session and RPC layer for the FsiX evaluation daemon."""

__version__ = "0.1.0"

# Public API
from fsixbridge.config import Config, get_config, load_config
from fsixbridge.errors import (
    FsixError,
    InitFailure,
    InitFailureReason,
    ProcessExitedError,
    ProtocolViolation,
    RemoteError,
    RequestCancelledError,
    ResponseError,
    SessionNotRunningError,
    TransportError,
    translate_exception,
)
from fsixbridge.rpc import CancellationToken, CancellationTokenSource, MessageChannel
from fsixbridge.session import (
    DiagnosticsDebouncer,
    Session,
    SessionCoordinator,
    SessionRegistry,
    completion_context,
    document_identity,
    start_session,
)
from fsixbridge.transport import DaemonLauncher, DaemonTransport
from fsixbridge.types import (
    CompletionItem,
    Diagnostic,
    EvalResult,
    LogNotification,
)

__all__ = [
    # Main entry points
    "SessionCoordinator",
    "Session",
    "start_session",
    "DaemonLauncher",
    # Configuration
    "Config",
    "get_config",
    "load_config",
    # Plumbing
    "DaemonTransport",
    "MessageChannel",
    "SessionRegistry",
    "CancellationToken",
    "CancellationTokenSource",
    "document_identity",
    "completion_context",
    "DiagnosticsDebouncer",
    # Results
    "CompletionItem",
    "Diagnostic",
    "EvalResult",
    "LogNotification",
    # Errors
    "FsixError",
    "TransportError",
    "ProtocolViolation",
    "ProcessExitedError",
    "RequestCancelledError",
    "ResponseError",
    "SessionNotRunningError",
    "RemoteError",
    "InitFailure",
    "InitFailureReason",
    "translate_exception",
]
