"""Transport contract and delta accumulation.

The transport produces a lazy, finite, non-restartable sequence of normalized
events for one send. :class:`StreamAccumulator` folds that sequence into a
:class:`TurnResponse`: content text and tool-call fragments are accumulated
independently, keyed by call index (or id when the transport omits indexes).
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Protocol, Sequence, runtime_checkable

from .types import Message, ToolCall, Usage

if TYPE_CHECKING:
    from .retry_policy import RetryCallback, RetryPolicy

__all__ = [
    "StreamEvent",
    "ModelTransport",
    "ToolCallFragment",
    "StreamAccumulator",
    "TurnResponse",
    "coerce_usage",
    "complete_text",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class StreamEvent(Protocol):
    """Normalized delta produced by a transport.

    Attributes:
        type: ``content.delta``, ``tool_call.delta``, ``usage`` or ``finish``.
        content: Text fragment for content events.
        tool_index: Position of the call within the response.
        tool_call_id: Call id (usually only on the first fragment).
        tool_name: Function name fragment.
        arguments_delta: Argument JSON fragment.
        finish_reason: Terminal signal on ``finish`` events.
        usage: Token usage on ``usage`` events.
    """

    type: str
    content: str | None
    tool_index: int | None
    tool_call_id: str | None
    tool_name: str | None
    arguments_delta: str | None
    finish_reason: str | None
    usage: Any | None


@runtime_checkable
class ModelTransport(Protocol):
    """Remote completion API boundary. :class:`colloquy.ai.client.AIClient` conforms."""

    def stream_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Sequence[Mapping[str, Any]] | None = None,
        stream: bool = True,
        temperature: float | None = None,
        max_completion_tokens: int | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[StreamEvent]:
        """Send one request and yield its normalized events."""
        ...


# -----------------------------------------------------------------------------
# Accumulation
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolCallFragment:
    """Partial tool call collected while a response is still arriving."""

    index: int
    id: str = ""
    name: str = ""
    arguments_parts: list[str] = field(default_factory=list)

    def add_name(self, fragment: str) -> None:
        # Some providers resend the full name on every delta instead of a suffix.
        if self.name and fragment.startswith(self.name):
            self.name = fragment
        else:
            self.name += fragment

    def resolve(self) -> ToolCall:
        arguments = "".join(self.arguments_parts).strip() or "{}"
        call_id = self.id or f"call_{uuid.uuid4().hex[:12]}"
        return ToolCall(id=call_id, name=self.name.strip(), arguments=arguments)


@dataclass(slots=True, frozen=True)
class TurnResponse:
    """Everything one send produced."""

    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None
    usage: Usage = field(default_factory=Usage)

    def assistant_message(self) -> Message:
        return Message.assistant(self.content or None, tool_calls=self.tool_calls or None)


def coerce_usage(raw: Any) -> Usage:
    """Normalize SDK usage objects or plain mappings into :class:`Usage`."""

    if raw is None:
        return Usage()
    if isinstance(raw, Usage):
        return raw
    if isinstance(raw, Mapping):
        getter = raw.get
    else:
        def getter(key: str, default: Any = None) -> Any:
            return getattr(raw, key, default)
    prompt = int(getter("prompt_tokens", 0) or 0)
    completion = int(getter("completion_tokens", 0) or 0)
    total = int(getter("total_tokens", 0) or 0) or prompt + completion
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


class StreamAccumulator:
    """Fold transport events into a :class:`TurnResponse`.

    Owned by a single in-flight send; a retried send starts a fresh one.
    """

    def __init__(self) -> None:
        self._content: list[str] = []
        self._fragments: dict[int, ToolCallFragment] = {}
        self._ids: dict[str, int] = {}
        self._last_index: int | None = None
        self._finish_reason: str | None = None
        self._usage = Usage()

    @property
    def content(self) -> str:
        return "".join(self._content)

    def feed(self, event: StreamEvent) -> None:
        event_type = getattr(event, "type", None)
        if event_type == "content.delta":
            text = getattr(event, "content", None)
            if text:
                self._content.append(text)
        elif event_type == "tool_call.delta":
            self._feed_tool_fragment(event)
        elif event_type == "usage":
            self._usage = self._usage + coerce_usage(getattr(event, "usage", None))
        elif event_type == "finish":
            reason = getattr(event, "finish_reason", None)
            if reason:
                self._finish_reason = str(reason)
        else:
            LOGGER.debug("Ignoring unknown stream event type: %s", event_type)

    def finish(self) -> TurnResponse:
        calls = tuple(self._fragments[index].resolve() for index in sorted(self._fragments))
        return TurnResponse(
            content=self.content,
            tool_calls=calls,
            finish_reason=self._finish_reason,
            usage=self._usage,
        )

    def _feed_tool_fragment(self, event: StreamEvent) -> None:
        fragment = self._locate_fragment(
            getattr(event, "tool_index", None),
            getattr(event, "tool_call_id", None),
        )
        call_id = getattr(event, "tool_call_id", None)
        if call_id and not fragment.id:
            fragment.id = call_id
            self._ids[call_id] = fragment.index
        name = getattr(event, "tool_name", None)
        if name:
            fragment.add_name(name)
        arguments = getattr(event, "arguments_delta", None)
        if arguments:
            fragment.arguments_parts.append(arguments)

    def _locate_fragment(self, index: int | None, call_id: str | None) -> ToolCallFragment:
        if index is None and call_id and call_id in self._ids:
            index = self._ids[call_id]
        if index is None:
            if call_id or self._last_index is None:
                index = max(self._fragments, default=-1) + 1
            else:
                index = self._last_index
        fragment = self._fragments.get(index)
        if fragment is None:
            fragment = ToolCallFragment(index=index)
            self._fragments[index] = fragment
        self._last_index = index
        return fragment


# -----------------------------------------------------------------------------
# Nested completions
# -----------------------------------------------------------------------------


async def complete_text(
    transport: ModelTransport,
    *,
    model: str | None,
    messages: Sequence[Message],
    retry_policy: RetryPolicy,
    on_retry: RetryCallback | None = None,
    temperature: float | None = None,
) -> str:
    """Issue a tool-less completion and return its text.

    Used by the compaction services. Failures are translated by the retry
    policy into engine errors.
    """

    payload = [message.to_chat_param() for message in messages]

    async def _send() -> str:
        accumulator = StreamAccumulator()
        async for event in transport.stream_chat(
            payload,
            model=model,
            stream=False,
            temperature=temperature,
        ):
            accumulator.feed(event)
        return accumulator.content

    text = await retry_policy.call(_send, on_retry=on_retry)
    return text.strip()
