"""Tests for delta accumulation and nested text completions."""

from __future__ import annotations

import pytest

from colloquy.ai.orchestration.errors import RetriesExhausted
from colloquy.ai.orchestration.retry_policy import RetryPolicy
from colloquy.ai.orchestration.streaming import StreamAccumulator, coerce_usage, complete_text
from colloquy.ai.orchestration.types import Message, Usage
from helpers import FakeEvent, ScriptedTransport, api_timeout, no_sleep, text_turn, tool_turn


def _fold(events) -> StreamAccumulator:
    accumulator = StreamAccumulator()
    for event in events:
        accumulator.feed(event)
    return accumulator


def test_content_deltas_are_concatenated() -> None:
    response = _fold(text_turn("Hello there, world", chunk_size=3)).finish()

    assert response.content == "Hello there, world"
    assert response.finish_reason == "stop"
    assert response.tool_calls == ()


def test_tool_fragments_are_joined_per_index() -> None:
    events = tool_turn(
        ("call_a", "search", '{"query": "retry policy"}'),
        ("call_b", "read_file", '{"path": "src/app.py"}'),
        content="Let me look.",
    )

    response = _fold(events).finish()

    assert response.content == "Let me look."
    assert response.finish_reason == "tool_calls"
    assert [(call.id, call.name, call.arguments) for call in response.tool_calls] == [
        ("call_a", "search", '{"query": "retry policy"}'),
        ("call_b", "read_file", '{"path": "src/app.py"}'),
    ]


def test_interleaved_fragments_keep_call_order_by_index() -> None:
    events = [
        FakeEvent(type="tool_call.delta", tool_index=1, tool_call_id="second", tool_name="b", arguments_delta='{"x"'),
        FakeEvent(type="tool_call.delta", tool_index=0, tool_call_id="first", tool_name="a", arguments_delta="{"),
        FakeEvent(type="tool_call.delta", tool_index=1, arguments_delta=": 1}"),
        FakeEvent(type="tool_call.delta", tool_index=0, arguments_delta="}"),
        FakeEvent(type="finish", finish_reason="tool_calls"),
    ]

    calls = _fold(events).finish().tool_calls

    assert [call.id for call in calls] == ["first", "second"]
    assert calls[0].arguments == "{}"
    assert calls[1].arguments == '{"x": 1}'


def test_name_fragments_concatenate_and_repeats_collapse() -> None:
    events = [
        FakeEvent(type="tool_call.delta", tool_index=0, tool_call_id="c1", tool_name="read_"),
        FakeEvent(type="tool_call.delta", tool_index=0, tool_name="file"),
        FakeEvent(type="tool_call.delta", tool_index=1, tool_call_id="c2", tool_name="search"),
        FakeEvent(type="tool_call.delta", tool_index=1, tool_name="search"),
    ]

    calls = _fold(events).finish().tool_calls

    assert [call.name for call in calls] == ["read_file", "search"]


def test_fragments_without_index_are_keyed_by_id_or_continue_last_call() -> None:
    events = [
        FakeEvent(type="tool_call.delta", tool_call_id="c1", tool_name="first", arguments_delta='{"a":'),
        FakeEvent(type="tool_call.delta", arguments_delta=" 1}"),
        FakeEvent(type="tool_call.delta", tool_call_id="c2", tool_name="second", arguments_delta="{}"),
    ]

    calls = _fold(events).finish().tool_calls

    assert [(call.id, call.arguments) for call in calls] == [("c1", '{"a": 1}'), ("c2", "{}")]


def test_missing_call_id_is_generated() -> None:
    events = [FakeEvent(type="tool_call.delta", tool_index=0, tool_name="lookup")]

    (call,) = _fold(events).finish().tool_calls

    assert call.id.startswith("call_")
    assert call.arguments == "{}"


def test_usage_events_are_summed() -> None:
    events = [
        FakeEvent(type="usage", usage=Usage(1, 2, 3)),
        FakeEvent(type="usage", usage={"prompt_tokens": 4, "completion_tokens": 5}),
    ]

    assert _fold(events).finish().usage == Usage(prompt_tokens=5, completion_tokens=7, total_tokens=12)


def test_unknown_events_are_ignored() -> None:
    response = _fold([FakeEvent(type="refusal.delta", content="no"), *text_turn("ok")]).finish()

    assert response.content == "ok"


def test_coerce_usage_accepts_objects_and_none() -> None:
    class _SdkUsage:
        prompt_tokens = 3
        completion_tokens = 4
        total_tokens = 7

    assert coerce_usage(None) == Usage()
    assert coerce_usage(_SdkUsage()) == Usage(3, 4, 7)


def test_assistant_message_from_turn_response() -> None:
    response = _fold(tool_turn(("c1", "lookup", "{}"))).finish()

    message = response.assistant_message()

    assert message.role == "assistant"
    assert message.content is None
    assert message.tool_calls is not None and message.tool_calls[0].id == "c1"


@pytest.mark.asyncio
async def test_complete_text_sends_without_tools_and_strips() -> None:
    transport = ScriptedTransport([text_turn("  terse answer \n")])

    text = await complete_text(
        transport,
        model="fast-model",
        messages=[Message.system("rules"), Message.user("hi")],
        retry_policy=RetryPolicy(sleep=no_sleep),
    )

    assert text == "terse answer"
    (call,) = transport.calls
    assert call.model == "fast-model"
    assert call.tools is None
    assert call.stream is False
    assert call.messages[0] == {"role": "system", "content": "rules"}


@pytest.mark.asyncio
async def test_complete_text_retries_transient_failures() -> None:
    transport = ScriptedTransport([api_timeout(), text_turn("second try")])

    text = await complete_text(
        transport,
        model=None,
        messages=[Message.user("hi")],
        retry_policy=RetryPolicy(sleep=no_sleep),
    )

    assert text == "second try"
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_complete_text_raises_when_retries_run_out() -> None:
    transport = ScriptedTransport([api_timeout(), api_timeout()])

    with pytest.raises(RetriesExhausted):
        await complete_text(
            transport,
            model=None,
            messages=[Message.user("hi")],
            retry_policy=RetryPolicy(max_attempts=2, sleep=no_sleep),
        )
