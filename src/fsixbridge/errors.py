"""Error taxonomy for fsixbridge and translation of daemon exceptions.

Failures are split by what they mean for the connection:

- RemoteError: the daemon raised a structured exception. The session is
  usually still alive.
- TransportError and subclasses: the process or socket is gone or the byte
  stream is corrupt. The session is dead and must be rebuilt.
- RequestCancelledError: the caller cancelled a request.
- ResponseError: the daemon answered a request with a JSON-RPC error object.

``translate_exception`` is the only place daemon exceptions are converted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fsixbridge.types import DaemonException


class FsixError(Exception):
    """Base class for fsixbridge errors."""


class TransportError(FsixError):
    """The transport to the daemon failed. Fatal to the session."""


class TransportClosedError(TransportError):
    """The transport reached end-of-stream or was closed locally."""


class ProtocolViolation(TransportError):
    """A frame or message could not be understood (malformed or unmatched)."""


class ProcessExitedError(TransportError):
    """The daemon process exited."""

    def __init__(self, code: int) -> None:
        super().__init__(f"FsiX process exited with code {code}")
        self.code = code


class DaemonLaunchError(TransportError):
    """The daemon binary was found but could not be started."""


class RequestCancelledError(FsixError):
    """A request was cancelled before its response arrived."""


class SessionNotRunningError(FsixError):
    """An operation was attempted on a session that is no longer running."""


class IdentityResolutionError(FsixError):
    """A document URI could not be mapped to a session identity."""


class ResponseError(FsixError):
    """The daemon answered a request with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.message = message
        self.data = data

    @property
    def remote(self) -> RemoteError | None:
        """The translated daemon exception carried in ``data``, if any."""
        cause = self.__cause__
        return cause if isinstance(cause, RemoteError) else None

    @classmethod
    def from_payload(cls, payload: Any) -> ResponseError:
        """Build from a JSON-RPC ``error`` member, chaining any daemon exception."""
        from fsixbridge.types import DaemonException

        if not isinstance(payload, dict):
            return cls(-32603, f"Malformed error response: {payload!r}")

        error = cls(
            int(payload.get("code", -32603)),
            str(payload.get("message", "")),
            payload.get("data"),
        )
        data = payload.get("data")
        if isinstance(data, dict) and "ClassName" in data:
            try:
                error.__cause__ = translate_exception(DaemonException.model_validate(data))
            except ValueError:
                pass
        return error


class RemoteError(Exception):
    """A daemon exception translated into a Python exception.

    Attributes:
        name: The remote exception class name (e.g. ``System.Exception``).
        message: The remote message, verbatim.
        trace: The remote stack trace text, if any.
        source: The remote ``Source`` field, if any.
        assembly: The assembly that raised the exception.
        hresult: The remote HResult code.

    The inner exception chain is exposed through ``__cause__``.
    """

    def __init__(
        self,
        name: str,
        message: str,
        trace: str | None = None,
        source: str | None = None,
        assembly: str | None = None,
        hresult: int | None = None,
    ) -> None:
        super().__init__(message)
        self.name = name
        self.message = message
        self.trace = trace
        self.source = source
        self.assembly = assembly
        self.hresult = hresult

    def __str__(self) -> str:
        return f"{self.name}: {self.message}"

    def chain(self) -> list[RemoteError]:
        """This error followed by its translated inner exceptions."""
        errors: list[RemoteError] = []
        current: BaseException | None = self
        while isinstance(current, RemoteError):
            errors.append(current)
            current = current.__cause__
        return errors

    def format(self) -> str:
        """Human readable rendering of the whole chain, outermost first."""
        parts = []
        for error in self.chain():
            parts.append(str(error))
            if error.trace:
                parts.append(error.trace)
        return "\n".join(parts)


def translate_exception(exception: DaemonException) -> RemoteError:
    """Convert a daemon exception into a RemoteError with a cause chain.

    Translation is iterative so arbitrarily deep inner chains are safe.
    """
    nodes: list[DaemonException] = []
    current: DaemonException | None = exception
    while current is not None:
        nodes.append(current)
        current = current.inner_exception

    translated: RemoteError | None = None
    for node in reversed(nodes):
        error = RemoteError(
            name=node.class_name,
            message=node.message,
            trace=node.stack_trace,
            source=node.source,
            assembly=node.assembly_name,
            hresult=node.hresult,
        )
        error.__cause__ = translated
        translated = error

    assert translated is not None
    return translated


class InitFailureReason(Enum):
    """Why a session handshake failed."""

    REMOTE_EXCEPTION = "remoteException"
    PROCESS_EXITED = "processExited"
    OTHER = "other"
    NOT_INSTALLED = "notInstalled"  # user declined install, not an error


@dataclass
class InitFailure:
    """Tagged outcome of a failed session start."""

    reason: InitFailureReason
    exception: DaemonException | None = None
    code: int | None = None
    error: BaseException | None = None

    @classmethod
    def remote_exception(cls, exception: DaemonException) -> InitFailure:
        return cls(InitFailureReason.REMOTE_EXCEPTION, exception=exception)

    @classmethod
    def process_exited(cls, code: int) -> InitFailure:
        return cls(InitFailureReason.PROCESS_EXITED, code=code)

    @classmethod
    def other(cls, error: BaseException) -> InitFailure:
        return cls(InitFailureReason.OTHER, error=error)

    @classmethod
    def not_installed(cls) -> InitFailure:
        return cls(InitFailureReason.NOT_INSTALLED)

    @property
    def is_error(self) -> bool:
        """False for outcomes that should be treated as a silent no-op."""
        return self.reason is not InitFailureReason.NOT_INSTALLED

    def to_exception(self) -> BaseException:
        """The failure as a raisable exception."""
        if self.reason is InitFailureReason.REMOTE_EXCEPTION and self.exception is not None:
            return translate_exception(self.exception)
        if self.reason is InitFailureReason.PROCESS_EXITED:
            return ProcessExitedError(self.code if self.code is not None else -1)
        if self.error is not None:
            return self.error
        return FsixError("Not able to locate fsix-daemon")

    def describe(self) -> str:
        if self.reason is InitFailureReason.REMOTE_EXCEPTION and self.exception is not None:
            return translate_exception(self.exception).format()
        if self.reason is InitFailureReason.PROCESS_EXITED:
            return f"FsiX process exited with code {self.code}"
        if self.reason is InitFailureReason.NOT_INSTALLED:
            return "fsix-daemon is not installed"
        return str(self.error)
