"""Wire types exchanged with the FsiX daemon.

Payloads are validated on the way in but otherwise passed through
unchanged; unknown fields are kept. Field names follow Python style and
the daemon's camelCase / PascalCase names are accepted as aliases.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from fsixbridge.errors import RemoteError, translate_exception


class WireModel(BaseModel):
    """Base model for daemon payloads."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class LogLevel(str, Enum):
    ERROR = "Error"
    DEBUG = "Debug"
    INFO = "Info"
    WARNING = "Warning"


class DiagnosticSeverity(str, Enum):
    ERROR = "Error"
    HIDDEN = "Hidden"
    INFO = "Info"
    WARNING = "Warning"


class LogNotification(WireModel):
    """Params of the ``logging`` notification."""

    level: LogLevel = LogLevel.INFO
    message: str = ""


class DaemonException(WireModel):
    """A .NET exception as serialized by the daemon."""

    class_name: str = Field(alias="ClassName")
    message: str = Field(default="", alias="Message")
    inner_exception: DaemonException | None = Field(default=None, alias="InnerException")
    stack_trace: str | None = Field(default=None, alias="StackTraceString")
    assembly_name: str | None = Field(default=None, alias="AssemblyName")
    source: str | None = Field(default=None, alias="Source")
    hresult: int | None = Field(default=None, alias="HResult")

    def to_error(self) -> RemoteError:
        return translate_exception(self)


class Range(WireModel):
    """Source range. Lines are 1-based."""

    start_line: int = Field(alias="startLine")
    start_column: int = Field(alias="startColumn")
    end_line: int = Field(alias="endLine")
    end_column: int = Field(alias="endColumn")


class Diagnostic(WireModel):
    message: str
    subcategory: str = ""
    severity: DiagnosticSeverity = DiagnosticSeverity.ERROR
    range: Range

    @property
    def is_error(self) -> bool:
        return self.severity is DiagnosticSeverity.ERROR


class CompletionItem(WireModel):
    display_text: str = Field(alias="displayText")
    replacement_text: str = Field(alias="replacementText")
    kind: str = ""
    description: str | None = None


# Result<T, E> is serialized as {"case": "ok", "data": T} | {"case": "error", "error": E}


class EvalSuccess(WireModel):
    case: Literal["ok"] = "ok"
    data: str = ""

    @property
    def ok(self) -> bool:
        return True


class EvalFailure(WireModel):
    case: Literal["error"] = "error"
    error: DaemonException

    @property
    def ok(self) -> bool:
        return False

    def to_error(self) -> RemoteError:
        return translate_exception(self.error)


EvaluationOutcome = Annotated[Union[EvalSuccess, EvalFailure], Field(discriminator="case")]


class EvalResult(WireModel):
    """Response of the ``eval`` request."""

    evaluation_result: EvaluationOutcome = Field(alias="evaluationResult")
    evaluated_code: str = Field(default="", alias="evaluatedCode")
    metadata: dict[str, Any] = Field(default_factory=dict)
    diagnostics: list[Diagnostic] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.evaluation_result.ok

    @property
    def value(self) -> str | None:
        """The formatted value on success, None on failure."""
        outcome = self.evaluation_result
        return outcome.data if isinstance(outcome, EvalSuccess) else None

    @property
    def error(self) -> RemoteError | None:
        """The translated daemon exception on failure, None on success."""
        outcome = self.evaluation_result
        return outcome.to_error() if isinstance(outcome, EvalFailure) else None

    @property
    def stdout(self) -> str:
        value = self.metadata.get("stdout")
        return value if isinstance(value, str) else ""

    @property
    def reloaded_methods(self) -> list[str]:
        """Names of methods replaced by hot reload during this evaluation."""
        methods = self.metadata.get("reloadedMethods")
        if isinstance(methods, dict):
            return list(methods)
        if isinstance(methods, list):
            return [str(m) for m in methods]
        return []


class InitializedOk(WireModel):
    case: Literal["ok"] = "ok"
    data: Any = None


class InitializedError(WireModel):
    case: Literal["error"] = "error"
    error: DaemonException


InitializedParams = Annotated[
    Union[InitializedOk, InitializedError], Field(discriminator="case")
]

initialized_adapter: TypeAdapter[InitializedOk | InitializedError] = TypeAdapter(
    InitializedParams
)
completion_list_adapter = TypeAdapter(list[CompletionItem])
diagnostic_list_adapter = TypeAdapter(list[Diagnostic])
