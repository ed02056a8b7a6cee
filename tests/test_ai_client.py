"""Tests for the OpenAI-compatible AI client."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Iterable, cast

import pytest

from openai import AsyncOpenAI

from colloquy.ai.client import (
    AIClient,
    AIStreamEvent,
    ApproxByteCounter,
    ClientSettings,
    TokenCounterRegistry,
)
from colloquy.ai.orchestration.streaming import ModelTransport, StreamAccumulator
from colloquy.ai.orchestration.types import Usage


def _chunk(*, content=None, tool_calls=None, finish_reason=None, usage=None) -> SimpleNamespace:
    choices = []
    if content is not None or tool_calls is not None or finish_reason is not None:
        delta = SimpleNamespace(content=content, tool_calls=tool_calls)
        choices.append(SimpleNamespace(delta=delta, finish_reason=finish_reason))
    return SimpleNamespace(choices=choices, usage=usage)


def _tool_delta(index: int, *, call_id=None, name=None, arguments=None) -> SimpleNamespace:
    return SimpleNamespace(index=index, id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


class _FakeStream:
    def __init__(self, chunks: Iterable[SimpleNamespace]):
        self._iterator = iter(list(chunks))
        self.closed = False

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> SimpleNamespace:
        try:
            return next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc

    async def close(self) -> None:
        self.closed = True


class _FakeCompletions:
    def __init__(self, reply: Any):
        self._reply = reply
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        return self._reply


def _make_client(reply: Any) -> tuple[AIClient, _FakeCompletions]:
    completions = _FakeCompletions(reply)
    fake_client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    registry = TokenCounterRegistry()
    registry.register("stub", ApproxByteCounter(model_name="stub"))
    client = AIClient(
        ClientSettings(base_url="http://local", api_key="test", model="stub", metadata={"app": "colloquy"}),
        client=cast(AsyncOpenAI, fake_client),
        token_registry=registry,
    )
    return client, completions


async def _collect(client: AIClient, **kwargs: Any) -> list[AIStreamEvent]:
    messages = kwargs.pop("messages", [{"role": "user", "content": "hi"}])
    return [event async for event in client.stream_chat(messages, **kwargs)]


@pytest.mark.asyncio
async def test_stream_chat_normalizes_content_and_tool_deltas() -> None:
    stream = _FakeStream(
        [
            _chunk(content="Hel"),
            _chunk(content="lo"),
            _chunk(tool_calls=[_tool_delta(0, call_id="call_1", name="lookup", arguments='{"q"')]),
            _chunk(tool_calls=[_tool_delta(0, arguments=': "x"}')]),
            _chunk(finish_reason="tool_calls"),
            _chunk(usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15)),
        ]
    )
    client, completions = _make_client(stream)

    events = await _collect(client, tools=[{"type": "function", "function": {"name": "lookup"}}])

    assert [event.type for event in events] == [
        "content.delta",
        "content.delta",
        "tool_call.delta",
        "tool_call.delta",
        "finish",
        "usage",
    ]
    accumulator = StreamAccumulator()
    for event in events:
        accumulator.feed(event)
    response = accumulator.finish()
    assert response.content == "Hello"
    assert response.tool_calls[0].arguments == '{"q": "x"}'
    assert response.usage == Usage(10, 5, 15)
    assert stream.closed

    (call,) = completions.calls
    assert call["stream"] is True
    assert call["stream_options"] == {"include_usage": True}
    assert call["model"] == "stub"
    assert call["metadata"] == {"app": "colloquy"}
    assert call["tools"][0]["function"]["name"] == "lookup"


@pytest.mark.asyncio
async def test_non_streaming_response_is_normalized() -> None:
    response = SimpleNamespace(
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(
                    content="Checking",
                    tool_calls=[
                        SimpleNamespace(id="a", function=SimpleNamespace(name="one", arguments="{}")),
                        SimpleNamespace(id="b", function=SimpleNamespace(name="two", arguments='{"x": 1}')),
                    ],
                ),
                finish_reason="tool_calls",
            )
        ],
        usage={"prompt_tokens": 3, "completion_tokens": 2},
    )
    client, completions = _make_client(response)

    events = await _collect(client, stream=False, model="other", temperature=0.2, max_completion_tokens=64)

    assert [(event.type, event.tool_index) for event in events] == [
        ("content.delta", None),
        ("tool_call.delta", 0),
        ("tool_call.delta", 1),
        ("finish", None),
        ("usage", None),
    ]
    assert events[-1].usage == Usage(prompt_tokens=3, completion_tokens=2, total_tokens=5)
    (call,) = completions.calls
    assert "stream" not in call
    assert call["model"] == "other"
    assert call["temperature"] == 0.2
    assert call["max_completion_tokens"] == 64
    assert "tools" not in call


@pytest.mark.asyncio
async def test_stream_chat_requires_messages() -> None:
    client, _ = _make_client(_FakeStream([]))

    with pytest.raises(ValueError):
        await _collect(client, messages=[])


@pytest.mark.asyncio
async def test_stream_is_closed_when_consumer_stops_early() -> None:
    stream = _FakeStream([_chunk(content="a"), _chunk(content="b")])
    client, _ = _make_client(stream)

    events = client.stream_chat([{"role": "user", "content": "hi"}])
    first = await events.__anext__()
    await events.aclose()

    assert first.content == "a"
    assert stream.closed


def test_client_conforms_to_transport_protocol() -> None:
    client, _ = _make_client(_FakeStream([]))

    assert isinstance(client, ModelTransport)


def test_token_counting_uses_registered_counter() -> None:
    client, _ = _make_client(_FakeStream([]))

    assert client.count_tokens("") == 0
    assert client.count_tokens("abcdefgh") == 2
    assert client.get_token_counter().model_name == "stub"


def test_registry_falls_back_for_unknown_models() -> None:
    fallback = ApproxByteCounter(bytes_per_token=2)
    registry = TokenCounterRegistry(fallback=fallback)
    registry.register("Known", ApproxByteCounter(model_name="known"))

    assert registry.has("known")
    assert registry.get("mystery") is fallback
    assert registry.count("mystery", "abcd") == 2
    registry.unregister("KNOWN")
    assert not registry.has("known")


def test_registry_rejects_blank_model_names() -> None:
    with pytest.raises(ValueError):
        TokenCounterRegistry().register("  ", ApproxByteCounter())


def test_approx_counter_rounds_up() -> None:
    counter = ApproxByteCounter()

    assert counter.estimate("abcde") == 2
    assert counter.count("é") == 1
