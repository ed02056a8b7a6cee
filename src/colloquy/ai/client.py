"""Async transport for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import inspect
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, MutableMapping, Sequence, cast

import tiktoken
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam

from .ai_types import TokenCounterProtocol
from .orchestration.streaming import coerce_usage
from .orchestration.types import Usage

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _load_encoding(model_name: str, encoding_name: str | None) -> tiktoken.Encoding:
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            return tiktoken.get_encoding("cl100k_base")


class TokenCounterRegistry:
    """Tokenizer implementations per model, owned by whoever creates it."""

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def unregister(self, model_name: str) -> None:
        self._counters.pop(self._normalize_key(model_name), None)

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of one response delta."""

    type: str
    content: str | None = None
    tool_index: int | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments_delta: str | None = None
    finish_reason: str | None = None
    usage: Usage | None = None


class AIClient:
    """Async client yielding normalized events for streamed and non-streamed responses.

    The client never retries on its own; callers wrap sends in a
    :class:`~colloquy.ai.orchestration.retry_policy.RetryPolicy`.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._token_registry = token_registry or TokenCounterRegistry()
        self._register_default_token_counter()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def token_registry(self) -> TokenCounterRegistry:
        return self._token_registry

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        model: str | None = None,
        tools: Iterable[ChatCompletionToolParam] | None = None,
        stream: bool = True,
        temperature: float | None = None,
        max_completion_tokens: int | None = None,
        metadata: Mapping[str, str] | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Send one chat completion request and yield its normalized events."""

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            model=model,
            tools=tools,
            temperature=temperature,
            max_completion_tokens=max_completion_tokens,
            metadata=metadata,
            extra_params=extra_params,
        )
        LOGGER.debug(
            "Starting %s chat completion via %s with %s message(s)",
            "streamed" if stream else "single-shot",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        if not stream:
            response = await self._client.chat.completions.create(**payload)
            for event in self._normalize_response(response):
                yield event
            return

        response_stream = await self._client.chat.completions.create(
            **payload,
            stream=True,
            stream_options={"include_usage": True},
        )
        try:
            async for chunk in response_stream:
                for event in self._normalize_chunk(chunk):
                    yield event
        finally:
            await _close_quietly(response_stream)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    def get_token_counter(self, model: str | None = None) -> TokenCounterProtocol:
        return self._token_registry.get(model or self._settings.model)

    def count_tokens(self, text: str, *, model: str | None = None, estimate_only: bool = False) -> int:
        if not text:
            return 0
        counter = self.get_token_counter(model)
        return counter.estimate(text) if estimate_only else counter.count(text)

    def _register_default_token_counter(self) -> None:
        model_name = (self._settings.model or "").strip()
        if not model_name or self._token_registry.has(model_name):
            return
        self._token_registry.register(model_name, TiktokenCounter(model_name))

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if not isinstance(message, (Mapping, MutableMapping)):
                raise TypeError("Messages must be mapping-like objects")
            normalized.append(cast(ChatCompletionMessageParam, dict(message)))
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        model: str | None,
        tools: Iterable[ChatCompletionToolParam] | None,
        temperature: float | None,
        max_completion_tokens: int | None,
        metadata: Mapping[str, str] | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self._settings.model,
            "messages": list(messages),
        }

        merged_metadata = self._merge_metadata(metadata)
        if merged_metadata:
            payload["metadata"] = merged_metadata
        tool_list = list(tools or ())
        if tool_list:
            payload["tools"] = tool_list
        if temperature is not None:
            payload["temperature"] = temperature
        if max_completion_tokens is not None:
            payload["max_completion_tokens"] = max_completion_tokens
        if extra_params:
            payload.update(extra_params)

        return payload

    def _merge_metadata(self, runtime_metadata: Mapping[str, str] | None) -> Dict[str, str] | None:
        combined: Dict[str, str] = {}
        if self._settings.metadata:
            combined.update(self._settings.metadata)
        if runtime_metadata:
            combined.update(runtime_metadata)
        return combined or None

    @staticmethod
    def _normalize_chunk(chunk: Any) -> List[AIStreamEvent]:
        events: List[AIStreamEvent] = []
        for choice in getattr(chunk, "choices", None) or ():
            delta = getattr(choice, "delta", None)
            if delta is not None:
                text = getattr(delta, "content", None)
                if text:
                    events.append(AIStreamEvent(type="content.delta", content=str(text)))
                for call in getattr(delta, "tool_calls", None) or ():
                    function = getattr(call, "function", None)
                    events.append(
                        AIStreamEvent(
                            type="tool_call.delta",
                            tool_index=getattr(call, "index", None),
                            tool_call_id=getattr(call, "id", None),
                            tool_name=getattr(function, "name", None),
                            arguments_delta=getattr(function, "arguments", None),
                        )
                    )
            finish_reason = getattr(choice, "finish_reason", None)
            if finish_reason:
                events.append(AIStreamEvent(type="finish", finish_reason=str(finish_reason)))
        usage = getattr(chunk, "usage", None)
        if usage is not None:
            events.append(AIStreamEvent(type="usage", usage=coerce_usage(usage)))
        return events

    @staticmethod
    def _normalize_response(response: Any) -> List[AIStreamEvent]:
        events: List[AIStreamEvent] = []
        choices = getattr(response, "choices", None) or ()
        if choices:
            choice = choices[0]
            message = getattr(choice, "message", None)
            text = getattr(message, "content", None)
            if text:
                events.append(AIStreamEvent(type="content.delta", content=str(text)))
            for index, call in enumerate(getattr(message, "tool_calls", None) or ()):
                function = getattr(call, "function", None)
                events.append(
                    AIStreamEvent(
                        type="tool_call.delta",
                        tool_index=index,
                        tool_call_id=getattr(call, "id", None),
                        tool_name=getattr(function, "name", None),
                        arguments_delta=getattr(function, "arguments", None),
                    )
                )
            finish_reason = getattr(choice, "finish_reason", None)
            if finish_reason:
                events.append(AIStreamEvent(type="finish", finish_reason=str(finish_reason)))
        usage = getattr(response, "usage", None)
        if usage is not None:
            events.append(AIStreamEvent(type="usage", usage=coerce_usage(usage)))
        return events

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        await _close_quietly(self._client)


async def _close_quietly(resource: Any) -> None:
    close = getattr(resource, "close", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception as exc:  # pragma: no cover - close failures are not actionable
        LOGGER.debug("Closing %s failed: %s", type(resource).__name__, exc)


__all__ = [
    "AIClient",
    "AIStreamEvent",
    "ApproxByteCounter",
    "ClientSettings",
    "TiktokenCounter",
    "TokenCounterRegistry",
]
