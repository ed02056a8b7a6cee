"""Core type definitions for the completion engine.

This module defines the immutable dataclasses that flow through a run: the
conversation message model, tool-call entries, and the request/result values
exchanged with callers. All types are frozen so that a transcript can be
shared with worker tasks without risk of mutation.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Literal, Mapping, Sequence

from openai.types.chat import ChatCompletionMessageParam

from .errors import ProtocolViolation

if TYPE_CHECKING:
    from ..ai_types import TokenCounterProtocol
    from ..tools.types import Tool, ToolSpec

__all__ = [
    # Message model
    "MessageRole",
    "Message",
    "ToolCall",
    "COMPACTION_MARKER",
    "THINK_OPEN",
    "THINK_CLOSE",
    "is_compaction_summary",
    "serialize_messages",
    "serialized_size",
    "ContextUsage",
    "context_usage",
    "check_tool_correlation",
    "tools_used",
    # Request / result
    "CompletionOptions",
    "CompletionRequest",
    "CompletionResult",
    "Usage",
]

MessageRole = Literal["system", "developer", "user", "assistant", "tool"]

COMPACTION_MARKER = "[[compaction-summary]]"
THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

_INSTRUCTION_ROLES = frozenset({"system", "developer"})


# -----------------------------------------------------------------------------
# Message Model
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A finished tool-call entry on an assistant message.

    Attributes:
        id: Call identifier echoed back by the matching tool message.
        name: Function name requested by the model.
        arguments: Raw JSON argument string as produced by the model.
    """

    id: str
    name: str
    arguments: str = "{}"

    def to_chat_param(self) -> dict[str, Any]:
        """Convert to the OpenAI ``tool_calls`` entry format."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> ToolCall:
        function = param.get("function") or {}
        return cls(
            id=str(param.get("id", "")),
            name=str(function.get("name", "")),
            arguments=str(function.get("arguments") or "{}"),
        )


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message.

    Attributes:
        role: The role of the message sender.
        content: Text content; ``None`` for assistant messages that only
            request tool calls.
        name: Function name on tool messages.
        tool_call_id: ID linking a tool result to its call.
        tool_calls: Tool calls requested by the assistant.
        metadata: Additional metadata (never sent to the model).
    """

    role: MessageRole
    content: str | None = None
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_instruction(self) -> bool:
        """``system``/``developer`` messages carry instructions, not dialogue."""
        return self.role in _INSTRUCTION_ROLES

    @property
    def is_thought(self) -> bool:
        """True when the content is internal reasoning wrapped in think tags."""
        text = (self.content or "").strip()
        return text.startswith(THINK_OPEN) and text.endswith(THINK_CLOSE)

    def with_content(self, content: str | None) -> Message:
        """Return a copy of this message with replaced content."""
        return replace(self, content=content)

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name is not None:
            payload["name"] = self.name
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        return payload  # type: ignore[return-value]

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> Message:
        """Create a Message from OpenAI's ChatCompletionMessageParam format."""
        raw_calls = param.get("tool_calls")
        tool_calls = tuple(ToolCall.from_chat_param(c) for c in raw_calls) if raw_calls else None
        content = param.get("content")
        return cls(
            role=param.get("role", "user"),  # type: ignore[arg-type]
            content=None if content is None else str(content),
            name=param.get("name"),
            tool_call_id=param.get("tool_call_id"),
            tool_calls=tool_calls,
        )

    @classmethod
    def system(cls, content: str, **metadata: Any) -> Message:
        return cls(role="system", content=content, metadata=metadata)

    @classmethod
    def developer(cls, content: str, **metadata: Any) -> Message:
        return cls(role="developer", content=content, metadata=metadata)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> Message:
        return cls(role="user", content=content, metadata=metadata)

    @classmethod
    def assistant(
        cls,
        content: str | None,
        tool_calls: Sequence[ToolCall] | None = None,
        **metadata: Any,
    ) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
            metadata=metadata,
        )

    @classmethod
    def tool(
        cls,
        content: str,
        tool_call_id: str,
        name: str | None = None,
        **metadata: Any,
    ) -> Message:
        return cls(
            role="tool",
            content=content,
            tool_call_id=tool_call_id,
            name=name,
            metadata=metadata,
        )


def is_compaction_summary(message: Message) -> bool:
    """Return True for synthetic messages produced by the compactor."""

    return (message.content or "").startswith(COMPACTION_MARKER)


def serialize_messages(messages: Sequence[Message]) -> str:
    """Serialize a transcript the way it is measured against context budgets."""

    return json.dumps(
        [message.to_chat_param() for message in messages],
        ensure_ascii=False,
        separators=(",", ":"),
    )


def serialized_size(messages: Sequence[Message]) -> int:
    """Size in UTF-8 bytes of :func:`serialize_messages`."""

    return len(serialize_messages(messages).encode("utf-8"))


@dataclass(slots=True, frozen=True)
class ContextUsage:
    """Tokens a transcript occupies against a model's context window."""

    tokens: int
    max_tokens: int

    @property
    def ratio(self) -> float:
        if self.max_tokens <= 0:
            return 0.0
        return self.tokens / self.max_tokens

    def describe(self) -> str:
        return f"{self.ratio * 100:.1f}% | {self.tokens:,} / {self.max_tokens:,}"


def context_usage(
    messages: Sequence[Message],
    counter: TokenCounterProtocol,
    max_tokens: int,
) -> ContextUsage:
    """Count the serialized transcript with ``counter``."""

    return ContextUsage(tokens=counter.count(serialize_messages(messages)), max_tokens=max_tokens)


def check_tool_correlation(messages: Sequence[Message]) -> None:
    """Ensure every tool message answers an earlier assistant tool call.

    Raises:
        ProtocolViolation: If a tool message references an unknown call id.
    """
    requested: set[str] = set()
    for position, message in enumerate(messages):
        if message.role == "assistant" and message.tool_calls:
            requested.update(call.id for call in message.tool_calls)
        elif message.role == "tool" and message.tool_call_id not in requested:
            raise ProtocolViolation(
                f"Tool message at position {position} has no matching tool call "
                f"(tool_call_id={message.tool_call_id!r})",
                details={"position": position, "tool_call_id": message.tool_call_id},
            )


def tools_used(messages: Sequence[Message]) -> dict[str, int]:
    """Count tool-call requests per function name across a transcript."""

    counts: Counter[str] = Counter()
    for message in messages:
        for call in message.tool_calls or ():
            counts[call.name] += 1
    return dict(counts)


# -----------------------------------------------------------------------------
# Request / Result
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CompletionOptions:
    """Per-request knobs.

    Attributes:
        stream: Request a streamed response from the transport.
        temperature: Sampling temperature (``None`` keeps the API default).
        max_completion_tokens: Optional cap on generated tokens.
        request_timeout: Seconds allowed for one send/stream cycle.
        context_budget_bytes: Overrides the engine's compaction trigger.
    """

    stream: bool = True
    temperature: float | None = None
    max_completion_tokens: int | None = None
    request_timeout: float | None = 90.0
    context_budget_bytes: int | None = None


@dataclass(slots=True, frozen=True)
class CompletionRequest:
    """Immutable input to :meth:`CompletionEngine.run`."""

    model: str
    messages: tuple[Message, ...]
    tools: tuple[Tool, ...] = ()
    options: CompletionOptions = field(default_factory=CompletionOptions)

    def __post_init__(self) -> None:
        if not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))
        if not isinstance(self.tools, tuple):
            object.__setattr__(self, "tools", tuple(self.tools))

    @property
    def tool_specs(self) -> tuple[ToolSpec, ...]:
        return tuple(tool.spec for tool in self.tools)


@dataclass(slots=True, frozen=True)
class Usage:
    """Token usage accumulated across every send of a run."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass(slots=True, frozen=True)
class CompletionResult:
    """Terminal value of a run.

    Attributes:
        final_text: Text of the final assistant message.
        updated_messages: The full transcript including every appended message.
        usage: Token usage summed over all sends.
        run_id: Identifier used in logs and progress events.
        finish_reason: Finish reason of the last response.
        tool_rounds: Number of dispatch rounds performed.
        retries: Number of transport retries performed.
        compactions: Number of compactions applied.
    """

    final_text: str
    updated_messages: tuple[Message, ...]
    usage: Usage = field(default_factory=Usage)
    run_id: str = ""
    finish_reason: str = "stop"
    tool_rounds: int = 0
    retries: int = 0
    compactions: int = 0

    @property
    def usage_tokens(self) -> int:
        return self.usage.total_tokens
