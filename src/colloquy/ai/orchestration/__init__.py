"""Completion orchestration: message model, retry, dispatch, compaction and the engine."""

# Core types
from .types import (
    COMPACTION_MARKER,
    CompletionOptions,
    CompletionRequest,
    CompletionResult,
    ContextUsage,
    Message,
    ToolCall,
    Usage,
    check_tool_correlation,
    context_usage,
    is_compaction_summary,
    serialize_messages,
    serialized_size,
    tools_used,
)

# Errors
from .errors import (
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

# Building blocks
from .dispatch_pool import DispatchPool, UnitResult
from .ledger import LedgerSnapshot, UsageLedger
from .progress import ProgressCallback, ProgressEvent, ProgressKind
from .retry_policy import RetryDecision, RetryPolicy
from .streaming import ModelTransport, StreamAccumulator, StreamEvent, ToolCallFragment, TurnResponse
from .tool_dispatch import DispatchOutcome, DispatchUnit

# Compaction and the engine
from .compaction import CompactionOutcome, CompactionTier, Compactor
from .engine import CompletionEngine, EngineState, create_completion_engine, request_from_settings

__all__ = [
    # Types
    "COMPACTION_MARKER",
    "CompletionOptions",
    "CompletionRequest",
    "CompletionResult",
    "ContextUsage",
    "Message",
    "ToolCall",
    "Usage",
    "check_tool_correlation",
    "context_usage",
    "is_compaction_summary",
    "serialize_messages",
    "serialized_size",
    "tools_used",
    # Errors
    "CompactionFailure",
    "CompletionError",
    "ErrorKind",
    "FatalAPIError",
    "ProtocolViolation",
    "RateLimitExceeded",
    "RetriesExhausted",
    "ToolExecutionError",
    "TransientTransportError",
    "describe_error",
    # Building blocks
    "DispatchPool",
    "UnitResult",
    "LedgerSnapshot",
    "UsageLedger",
    "ProgressCallback",
    "ProgressEvent",
    "ProgressKind",
    "RetryDecision",
    "RetryPolicy",
    "ModelTransport",
    "StreamAccumulator",
    "StreamEvent",
    "ToolCallFragment",
    "TurnResponse",
    "DispatchOutcome",
    "DispatchUnit",
    # Compaction / engine
    "CompactionOutcome",
    "CompactionTier",
    "Compactor",
    "CompletionEngine",
    "EngineState",
    "create_completion_engine",
    "request_from_settings",
]
