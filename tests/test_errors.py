"""Tests for engine error types."""

from __future__ import annotations

import pytest

from colloquy.ai.orchestration.errors import (
    CompactionFailure,
    CompletionError,
    ErrorKind,
    FatalAPIError,
    ProtocolViolation,
    RateLimitExceeded,
    RetriesExhausted,
    ToolExecutionError,
    TransientTransportError,
    describe_error,
)


@pytest.mark.parametrize(
    ("error", "kind"),
    [
        (TransientTransportError("dropped"), ErrorKind.TRANSIENT_TRANSPORT),
        (FatalAPIError("bad request", status_code=400), ErrorKind.FATAL_API),
        (RateLimitExceeded("slow down"), ErrorKind.RATE_LIMITED),
        (RetriesExhausted("gave up", attempts=3), ErrorKind.RETRIES_EXHAUSTED),
        (ToolExecutionError("boom", tool_name="lookup"), ErrorKind.TOOL_EXECUTION),
        (ProtocolViolation("orphan tool message"), ErrorKind.PROTOCOL_VIOLATION),
        (CompactionFailure("too big", reason="over_budget"), ErrorKind.COMPACTION_FAILED),
    ],
)
def test_every_error_has_a_kind(error: CompletionError, kind: str) -> None:
    assert isinstance(error, CompletionError)
    assert error.kind == kind
    assert str(error) == f"[{kind}] {error.message}"


def test_rate_limit_and_exhaustion_are_fatal_api_errors() -> None:
    assert issubclass(RateLimitExceeded, FatalAPIError)
    assert issubclass(RetriesExhausted, FatalAPIError)
    assert RateLimitExceeded("x").status_code == 429


def test_to_dict_includes_details_and_status() -> None:
    error = FatalAPIError("denied", details={"cause": "AuthenticationError"}, status_code=401)

    assert error.to_dict() == {
        "error": ErrorKind.FATAL_API,
        "message": "denied",
        "details": {"cause": "AuthenticationError"},
        "status_code": 401,
    }


def test_errors_are_raisable_and_hashable() -> None:
    with pytest.raises(ProtocolViolation) as excinfo:
        raise ProtocolViolation("broken", details={"position": 2})

    assert excinfo.value.details == {"position": 2}
    assert len({excinfo.value, ProtocolViolation("broken")}) == 2


def test_describe_error_for_engine_and_foreign_errors() -> None:
    described = describe_error(FatalAPIError("invalid api key", status_code=401))

    assert "- Kind: fatal_api" in described
    assert "- HTTP Status: 401" in described
    assert "- Message: invalid api key" in described
    assert describe_error(KeyError()).endswith("- Message: KeyError")
