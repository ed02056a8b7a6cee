"""Typed failures raised by the completion engine.

Every failure that escapes :meth:`CompletionEngine.run` is a
:class:`CompletionError` subclass carrying a machine-readable ``kind`` and a
short human-readable message. Tool failures are the exception: they are
converted into tool-role transcript content and never leave a run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

__all__ = [
    "ErrorKind",
    "CompletionError",
    "TransientTransportError",
    "FatalAPIError",
    "RateLimitExceeded",
    "RetriesExhausted",
    "ToolExecutionError",
    "ProtocolViolation",
    "CompactionFailure",
    "describe_error",
]


class ErrorKind:
    """Constants for the ``kind`` attribute of engine errors."""

    TRANSIENT_TRANSPORT = "transient_transport"
    FATAL_API = "fatal_api"
    RATE_LIMITED = "rate_limited"
    RETRIES_EXHAUSTED = "retries_exhausted"
    TOOL_EXECUTION = "tool_execution"
    PROTOCOL_VIOLATION = "protocol_violation"
    COMPACTION_FAILED = "compaction_failed"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class CompletionError(Exception):
    """Base class for all engine failures.

    Attributes:
        message: Human-readable error description.
        details: Additional structured error information.
    """

    message: str
    details: dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[str] = "completion_error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for logs and telemetry."""
        result: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.kind}] {self.message}"


# -----------------------------------------------------------------------------
# Transport / API Errors
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class TransientTransportError(CompletionError):
    """A failure worth retrying: timeouts, dropped connections, 5xx gateways."""

    kind: ClassVar[str] = ErrorKind.TRANSIENT_TRANSPORT


@dataclass(eq=False)
class FatalAPIError(CompletionError):
    """A non-retryable API failure (bad request, auth, validation)."""

    status_code: int | None = None

    kind: ClassVar[str] = ErrorKind.FATAL_API

    def to_dict(self) -> dict[str, Any]:
        result = CompletionError.to_dict(self)
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


@dataclass(eq=False)
class RateLimitExceeded(FatalAPIError):
    """The remote API throttled the request (HTTP 429)."""

    status_code: int | None = 429

    kind: ClassVar[str] = ErrorKind.RATE_LIMITED


@dataclass(eq=False)
class RetriesExhausted(FatalAPIError):
    """A retryable failure kept recurring until the attempt limit was reached."""

    attempts: int = 0

    kind: ClassVar[str] = ErrorKind.RETRIES_EXHAUSTED


# -----------------------------------------------------------------------------
# Engine Errors
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class ToolExecutionError(CompletionError):
    """A single tool unit failed; converted to tool output, never raised out of a run."""

    tool_name: str = ""

    kind: ClassVar[str] = ErrorKind.TOOL_EXECUTION


@dataclass(eq=False)
class ProtocolViolation(CompletionError):
    """The model or the caller broke the conversation protocol."""

    kind: ClassVar[str] = ErrorKind.PROTOCOL_VIOLATION


@dataclass(eq=False)
class CompactionFailure(CompletionError):
    """The transcript could not be shrunk enough to send."""

    reason: str = "compaction_failed"

    kind: ClassVar[str] = ErrorKind.COMPACTION_FAILED


def describe_error(exc: BaseException) -> str:
    """Render a short diagnostic suitable for showing to an end user."""

    lines = ["I encountered an error while processing your request.", ""]
    if isinstance(exc, CompletionError):
        lines.append(f"- Kind: {exc.kind}")
        status = getattr(exc, "status_code", None)
        if status is not None:
            lines.append(f"- HTTP Status: {status}")
        lines.append(f"- Message: {exc.message}")
    else:
        lines.append(f"- Message: {str(exc) or type(exc).__name__}")
    return "\n".join(lines)
