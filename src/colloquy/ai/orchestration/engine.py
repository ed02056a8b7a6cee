"""Completion engine: the state machine driving one conversation run.

A run loops through ``compacting -> sending -> streaming`` and then either
stops or dispatches the requested tool calls and sends again::

    engine = create_completion_engine(settings)
    result = await engine.run(CompletionRequest(model="gpt-4o-mini", messages=messages, tools=tools))

The transcript is owned by the run and only appended to (or prefix-replaced
by compaction) between phases; pool workers never touch it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from ..tools.registry import DuplicateToolError, ToolRegistry
from ..tools.types import Tool
from .compaction import Compactor
from .dispatch_pool import DEFAULT_CONCURRENCY, DispatchPool
from .errors import CompactionFailure, ProtocolViolation, TransientTransportError
from .ledger import UsageLedger
from .progress import ProgressCallback, ProgressKind, emit
from .retry_policy import RetryPolicy
from .streaming import ModelTransport, StreamAccumulator, TurnResponse
from .tool_dispatch import DispatchOutcome, DispatchUnit, execute_unit
from .types import (
    CompletionOptions,
    CompletionRequest,
    CompletionResult,
    Message,
    Usage,
    check_tool_correlation,
    context_usage,
    serialized_size,
)

if TYPE_CHECKING:
    from ...services.settings import Settings
    from ..ai_types import TokenCounterProtocol

__all__ = [
    "EngineState",
    "CompletionEngine",
    "create_completion_engine",
    "request_from_settings",
]

LOGGER = logging.getLogger(__name__)

_STOP_LIKE_FINISH_REASONS = frozenset({"length", "content_filter"})


class EngineState(str, enum.Enum):
    COMPACTING = "compacting"
    SENDING = "sending"
    STREAMING = "streaming"
    RETRYING = "retrying"
    TOOL_CALLS_REQUESTED = "tool_calls_requested"
    DISPATCHING = "dispatching"
    STOPPED = "stopped"


@dataclass(slots=True)
class _Run:
    """Mutable bookkeeping owned by one :meth:`CompletionEngine.run` call."""

    run_id: str
    messages: list[Message]
    on_progress: ProgressCallback | None
    state: EngineState | None = None
    usage: Usage = field(default_factory=Usage)
    retries: int = 0
    compactions: int = 0
    tool_rounds: int = 0


class CompletionEngine:
    """Drive a conversation until the model stops asking for tools."""

    def __init__(
        self,
        transport: ModelTransport,
        *,
        retry_policy: RetryPolicy | None = None,
        compactor: Compactor | None = None,
        context_budget_bytes: int | None = None,
        dispatch_concurrency: int = DEFAULT_CONCURRENCY,
        ledger: UsageLedger | None = None,
        tool_timeout: float | None = None,
        max_tool_rounds: int | None = None,
        token_counter: TokenCounterProtocol | None = None,
        context_window_tokens: int | None = None,
    ) -> None:
        if dispatch_concurrency < 1:
            raise ValueError("dispatch_concurrency must be a positive integer")
        self._transport = transport
        self._retry_policy = retry_policy or RetryPolicy()
        self._compactor = compactor
        self._context_budget = context_budget_bytes
        self._concurrency = dispatch_concurrency
        self._ledger = ledger or UsageLedger()
        self._tool_timeout = tool_timeout
        self._max_tool_rounds = max_tool_rounds
        self._token_counter = token_counter
        self._context_window = context_window_tokens

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def transport(self) -> ModelTransport:
        return self._transport

    async def run(
        self,
        request: CompletionRequest,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> CompletionResult:
        """Run the conversation to completion.

        Raises:
            ProtocolViolation: Broken transcript, tool calls without tools, or
                too many tool rounds.
            CompactionFailure: The transcript could not be brought under budget.
            FatalAPIError: Non-retryable API failure, including
                ``RateLimitExceeded`` and ``RetriesExhausted``.
        """
        run = _Run(
            run_id=uuid.uuid4().hex[:12],
            messages=list(request.messages),
            on_progress=on_progress,
        )
        self._ledger.record_run()
        check_tool_correlation(run.messages)
        registry = self._build_registry(request.tools)
        tool_params = registry.openai_tools()
        budget = request.options.context_budget_bytes or self._context_budget
        LOGGER.debug(
            "Run %s starting with %s message(s) and %s tool(s)",
            run.run_id,
            len(run.messages),
            len(registry),
        )

        async with DispatchPool(self._concurrency) as pool:
            while True:
                await self._maybe_compact(run, budget)
                response = await self._send(run, request, tool_params)
                run.usage = run.usage + response.usage

                if response.tool_calls:
                    if not registry:
                        raise ProtocolViolation(
                            "Model requested tool calls but no tools were supplied",
                            details={"tools": [call.name for call in response.tool_calls]},
                        )
                    await self._dispatch_round(run, registry, pool, response)
                    continue

                return self._finish(run, response)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    async def _maybe_compact(self, run: _Run, budget: int | None) -> None:
        if self._compactor is None or budget is None:
            return
        size = serialized_size(run.messages)
        if size <= budget:
            return
        self._transition(run, EngineState.COMPACTING)
        payload: dict[str, Any] = {"size": size, "budget": budget}
        if self._token_counter is not None and self._context_window:
            usage = context_usage(run.messages, self._token_counter, self._context_window)
            payload.update(tokens=usage.tokens, max_tokens=usage.max_tokens)
            LOGGER.info("Run %s context window usage: %s", run.run_id, usage.describe())
        emit(run.on_progress, ProgressKind.COMPACTION_STARTED, run.run_id, **payload)
        outcome = await self._compactor.compact(run.messages)
        if outcome.changed:
            run.messages = list(outcome.messages)
            run.compactions += 1
            self._ledger.record_compaction(outcome.tier)
        emit(
            run.on_progress,
            ProgressKind.COMPACTION_FINISHED,
            run.run_id,
            tier=outcome.tier,
            attempts=outcome.attempts,
            original_size=outcome.original_size,
            compacted_size=outcome.compacted_size,
        )
        if outcome.compacted_size > budget:
            raise CompactionFailure(
                "Transcript still exceeds the context budget after compaction",
                details={"size": outcome.compacted_size, "budget": budget, "tier": outcome.tier},
                reason="over_budget",
            )

    async def _send(
        self,
        run: _Run,
        request: CompletionRequest,
        tool_params: Sequence[Mapping[str, Any]],
    ) -> TurnResponse:
        payload = [message.to_chat_param() for message in run.messages]
        options = request.options
        timeout = options.request_timeout

        async def _consume() -> TurnResponse:
            accumulator = StreamAccumulator()
            streaming = False
            events = self._transport.stream_chat(
                payload,
                model=request.model,
                tools=list(tool_params) or None,
                stream=options.stream,
                temperature=options.temperature,
                max_completion_tokens=options.max_completion_tokens,
            )
            async for event in events:
                if not streaming:
                    self._transition(run, EngineState.STREAMING)
                    streaming = True
                accumulator.feed(event)
                if event.type == "content.delta" and event.content:
                    emit(run.on_progress, ProgressKind.CONTENT_DELTA, run.run_id, text=event.content)
            return accumulator.finish()

        async def _attempt() -> TurnResponse:
            self._transition(run, EngineState.SENDING)
            if timeout is None or timeout <= 0:
                return await _consume()
            try:
                return await asyncio.wait_for(_consume(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise TransientTransportError(
                    f"Request timed out after {timeout}s",
                    details={"timeout": timeout},
                ) from exc

        def _on_retry(attempt: int, delay: float, exc: BaseException) -> None:
            run.retries += 1
            self._ledger.record_retry()
            self._transition(run, EngineState.RETRYING)
            emit(
                run.on_progress,
                ProgressKind.RETRY,
                run.run_id,
                attempt=attempt,
                delay=delay,
                error=str(exc) or type(exc).__name__,
            )

        return await self._retry_policy.call(_attempt, on_retry=_on_retry)

    async def _dispatch_round(
        self,
        run: _Run,
        registry: ToolRegistry,
        pool: DispatchPool,
        response: TurnResponse,
    ) -> None:
        if self._max_tool_rounds is not None and run.tool_rounds >= self._max_tool_rounds:
            raise ProtocolViolation(
                f"Exceeded the maximum of {self._max_tool_rounds} tool round(s)",
                details={"max_tool_rounds": self._max_tool_rounds},
            )
        self._transition(run, EngineState.TOOL_CALLS_REQUESTED)
        for call in response.tool_calls:
            emit(run.on_progress, ProgressKind.TOOL_CALL_IDENTIFIED, run.run_id, id=call.id, name=call.name)
        if response.content:
            run.messages.append(Message.assistant(response.content))

        self._transition(run, EngineState.DISPATCHING)
        units = [DispatchUnit.from_call(call) for call in response.tool_calls]
        work = partial(execute_unit, registry=registry, timeout_seconds=self._tool_timeout)
        results = await pool.submit(units, work)
        for unit, result in zip(units, results):
            if result.ok and result.value is not None:
                outcome: DispatchOutcome = result.value
            else:
                outcome = DispatchOutcome.build(unit, f"Error: {result.reason}", ok=False)
            run.messages.append(outcome.request_echo_message)
            run.messages.append(outcome.tool_response_message)
            self._ledger.record_tool_call(unit.function_name, ok=outcome.ok)
            emit(
                run.on_progress,
                ProgressKind.TOOL_CALL_COMPLETED,
                run.run_id,
                id=unit.tool_call_id,
                name=unit.function_name,
                ok=outcome.ok,
            )
        run.tool_rounds += 1
        LOGGER.debug("Run %s finished tool round %s with %s call(s)", run.run_id, run.tool_rounds, len(units))

    def _finish(self, run: _Run, response: TurnResponse) -> CompletionResult:
        finish_reason = response.finish_reason or "stop"
        if finish_reason in _STOP_LIKE_FINISH_REASONS:
            LOGGER.warning("Run %s ended with finish_reason=%s; treating as stop", run.run_id, finish_reason)
        run.messages.append(Message.assistant(response.content))
        self._transition(run, EngineState.STOPPED)
        return CompletionResult(
            final_text=response.content,
            updated_messages=tuple(run.messages),
            usage=run.usage,
            run_id=run.run_id,
            finish_reason=finish_reason,
            tool_rounds=run.tool_rounds,
            retries=run.retries,
            compactions=run.compactions,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _transition(self, run: _Run, state: EngineState) -> None:
        if run.state is state:
            return
        LOGGER.debug("Run %s: %s -> %s", run.run_id, run.state.value if run.state else "start", state.value)
        run.state = state
        emit(run.on_progress, ProgressKind.STATE_CHANGED, run.run_id, state=state.value)

    @staticmethod
    def _build_registry(tools: Sequence[Tool]) -> ToolRegistry:
        try:
            return ToolRegistry(tools)
        except DuplicateToolError as exc:
            raise ProtocolViolation(str(exc), details={"tool": exc.name}) from exc


# -----------------------------------------------------------------------------
# Factories
# -----------------------------------------------------------------------------


def create_completion_engine(
    settings: Settings,
    *,
    ledger: UsageLedger | None = None,
    client: ModelTransport | None = None,
) -> CompletionEngine:
    """Wire a transport, retry policy and compactor from one :class:`Settings`."""

    from ..client import AIClient, ApproxByteCounter, ClientSettings
    from ..services.summarizer import TranscriptSummarizer
    from ..services.tersifier import Tersifier

    transport = client or AIClient(
        ClientSettings(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            organization=settings.organization,
            request_timeout=settings.request_timeout,
            default_headers=settings.default_headers or None,
            metadata=settings.metadata or None,
            debug_logging=settings.debug_logging,
        )
    )
    retry_policy = RetryPolicy(
        max_attempts=settings.max_retries,
        base_delay=settings.retry_min_seconds,
        max_delay=settings.retry_max_seconds,
        retry_rate_limits=settings.retry_rate_limits,
    )

    compactor: Compactor | None = None
    token_counter: TokenCounterProtocol | None = None
    budget: int | None = None
    compaction = settings.compaction
    if compaction.enabled:
        if isinstance(transport, AIClient):
            token_counter = transport.get_token_counter(settings.summary_model)
        else:
            token_counter = ApproxByteCounter(model_name=settings.summary_model)
        compactor = Compactor(
            settings=compaction,
            tersifier=Tersifier(transport, model=settings.tersify_model, retry_policy=retry_policy),
            summarizer=TranscriptSummarizer(
                transport,
                model=settings.summary_model,
                retry_policy=retry_policy,
                token_counter=token_counter,
                chunk_tokens=compaction.summary_chunk_tokens,
            ),
            token_counter=token_counter,
            concurrency=settings.dispatch_concurrency,
        )
        budget = compaction.budget_bytes

    return CompletionEngine(
        transport,
        retry_policy=retry_policy,
        compactor=compactor,
        context_budget_bytes=budget,
        dispatch_concurrency=settings.dispatch_concurrency,
        ledger=ledger,
        tool_timeout=settings.tool_timeout,
        max_tool_rounds=settings.max_tool_rounds,
        token_counter=token_counter,
        context_window_tokens=settings.context_window_tokens,
    )


def request_from_settings(
    settings: Settings,
    messages: Sequence[Message],
    *,
    tools: Sequence[Tool] = (),
    model: str | None = None,
) -> CompletionRequest:
    """Build a request whose options mirror ``settings``."""

    return CompletionRequest(
        model=model or settings.model,
        messages=tuple(messages),
        tools=tuple(tools),
        options=CompletionOptions(
            stream=settings.stream,
            temperature=settings.temperature,
            request_timeout=settings.request_timeout,
        ),
    )
