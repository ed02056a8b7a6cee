"""Shared test helpers and stub classes.

Import from here instead of duplicating fakes in individual test files::

    from helpers import ScriptedTransport, text_turn, tool_turn
"""

from __future__ import annotations

import inspect
from collections import deque
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Callable, Iterable, Mapping, Sequence

import httpx
from openai import APIStatusError, APITimeoutError

from colloquy.ai.orchestration.types import Usage

_REQUEST = httpx.Request("POST", "https://api.test/v1/chat/completions")


@dataclass
class FakeEvent:
    """Normalized transport event, shaped like ``AIStreamEvent``."""

    type: str
    content: str | None = None
    tool_index: int | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments_delta: str | None = None
    finish_reason: str | None = None
    usage: Usage | None = None


def text_turn(text: str, *, finish_reason: str = "stop", chunk_size: int = 4, tokens: int = 0) -> list[FakeEvent]:
    """Events for a plain text answer delivered in small deltas."""

    events = [
        FakeEvent(type="content.delta", content=text[start : start + chunk_size])
        for start in range(0, len(text), chunk_size)
    ]
    events.append(FakeEvent(type="finish", finish_reason=finish_reason))
    if tokens:
        events.append(FakeEvent(type="usage", usage=Usage(prompt_tokens=tokens, completion_tokens=tokens, total_tokens=2 * tokens)))
    return events


def tool_turn(*calls: tuple[str, str, str], content: str | None = None) -> list[FakeEvent]:
    """Events for a response requesting ``(call_id, name, arguments)`` tool calls.

    Arguments are split across two fragments to exercise accumulation.
    """
    events: list[FakeEvent] = []
    if content:
        events.append(FakeEvent(type="content.delta", content=content))
    for index, (call_id, name, arguments) in enumerate(calls):
        middle = len(arguments) // 2
        events.append(
            FakeEvent(
                type="tool_call.delta",
                tool_index=index,
                tool_call_id=call_id,
                tool_name=name,
                arguments_delta=arguments[:middle],
            )
        )
        events.append(FakeEvent(type="tool_call.delta", tool_index=index, arguments_delta=arguments[middle:]))
    events.append(FakeEvent(type="finish", finish_reason="tool_calls"))
    return events


class ScriptedTransport:
    """Replays one scripted entry per send.

    An entry is a sequence of events (an exception inside it is raised at
    that point of the stream) or an exception raised before any event.
    """

    def __init__(self, script: Iterable[Sequence[Any] | BaseException]) -> None:
        self._script = deque(script)
        self.calls: list[SimpleNamespace] = []

    @property
    def remaining(self) -> int:
        return len(self._script)

    async def stream_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Sequence[Mapping[str, Any]] | None = None,
        stream: bool = True,
        temperature: float | None = None,
        max_completion_tokens: int | None = None,
        **kwargs: Any,
    ):
        self.calls.append(
            SimpleNamespace(messages=list(messages), model=model, tools=tools, stream=stream, temperature=temperature)
        )
        if not self._script:
            raise AssertionError("transport called more often than scripted")
        entry = self._script.popleft()
        if isinstance(entry, BaseException):
            raise entry
        for event in entry:
            if isinstance(event, BaseException):
                raise event
            yield event


class ResponderTransport:
    """Answers every send with text computed from the request messages."""

    def __init__(self, responder: Callable[[list[Mapping[str, Any]]], Any]) -> None:
        self._responder = responder
        self.calls: list[SimpleNamespace] = []

    async def stream_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Sequence[Mapping[str, Any]] | None = None,
        stream: bool = True,
        **kwargs: Any,
    ):
        payload = list(messages)
        self.calls.append(SimpleNamespace(messages=payload, model=model, tools=tools, stream=stream))
        reply = self._responder(payload)
        if inspect.isawaitable(reply):
            reply = await reply
        if isinstance(reply, BaseException):
            raise reply
        yield FakeEvent(type="content.delta", content=reply)
        yield FakeEvent(type="finish", finish_reason="stop")


async def no_sleep(_seconds: float) -> None:
    return None


class RecordingSleep:
    """Sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def api_timeout() -> APITimeoutError:
    return APITimeoutError(request=_REQUEST)


def api_status_error(status: int, message: str = "request failed") -> APIStatusError:
    response = httpx.Response(status, request=_REQUEST)
    return APIStatusError(message, response=response, body=None)
