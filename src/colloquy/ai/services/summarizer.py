"""Whole-transcript summarizer used by the second compaction tier.

Transcripts that fit in one request are summarized with a single call. Larger
transcripts are processed chunk by chunk: each call receives the response
accumulated so far plus the next slice of the transcript, and a final pass
consolidates the accumulated notes into the summary.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from ..ai_types import TokenCounterProtocol
from ..orchestration.errors import CompactionFailure
from ..orchestration.retry_policy import RetryPolicy
from ..orchestration.streaming import ModelTransport, complete_text
from ..orchestration.types import Message

LOGGER = logging.getLogger(__name__)

_CHARS_PER_TOKEN = 4
_SKIPPED_TOOL_NAMES = frozenset({"notify_tool"})

SUMMARY_HEADER = "Summary of conversation and research thus far:"

SUMMARY_QUESTION = (
    "Review this conversation transcript and extract what the user originally asked for, "
    "the key findings so far, and the status of the work in progress."
)

SUMMARY_PROMPT = """\
You are condensing part of a conversation between a user and an AI assistant
so that the assistant can carry on without the original messages.

Treat user messages as context and concentrate on what the assistant and its
tools did since then. Keep concrete details: file names, functions, bugs,
commands and technical decisions. Write plain text.

Use exactly these sections:

# Synopsis
The topic, the original request and how this part fits into it.

# Evolution
How the direction or the user's intent changed along the way.

# Key Findings
Everything learned: locations, names, patterns, defects.

# Current Status
What was being done when the transcript ends, precise enough to resume.
"""

ACCUMULATE_PROMPT = """\
The input is too large for one request and arrives in chunks. Each request
contains the goal, the response accumulated from earlier chunks and the next
chunk, separated by a line of dashes.

Update the accumulated response with what the new chunk adds. Keep its
structure, extend it rather than restarting, and mark anything cut off at a
chunk boundary with <partial>. Reply with the updated accumulated response only.
-----
"""

FINALIZE_PROMPT = """\
All chunks have been processed. Below are the goal and the accumulated notes.
Turn the notes into one coherent, consistent response. Reply with the
response only, without the "# Accumulated Response" heading.
-----
"""


def build_transcript(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Reduce messages to the dialogue the summarizer should see.

    Instruction messages, assistant messages without text, internal reasoning
    and notification tool output are dropped; tool messages keep only their
    role, name and content.
    """
    entries: list[dict[str, Any]] = []
    for message in messages:
        if message.is_instruction:
            continue
        if message.role == "tool":
            if message.name in _SKIPPED_TOOL_NAMES:
                continue
            entries.append({"role": "tool", "name": message.name, "content": message.content})
        elif message.role == "assistant":
            if message.content is None or message.is_thought:
                continue
            entries.append({"role": "assistant", "content": message.content})
        else:
            entries.append({"role": message.role, "content": message.content})
    return entries


class TranscriptSummarizer:
    """Produce one dense summary for a list of messages."""

    def __init__(
        self,
        transport: ModelTransport,
        *,
        model: str | None,
        retry_policy: RetryPolicy,
        token_counter: TokenCounterProtocol,
        chunk_tokens: int = 100_000,
    ) -> None:
        self._transport = transport
        self._model = model
        self._retry_policy = retry_policy
        self._token_counter = token_counter
        self._chunk_tokens = max(1, int(chunk_tokens))

    async def summarize(self, messages: Sequence[Message]) -> str:
        """Return the summary body (without the compaction marker).

        Raises:
            CompactionFailure: If nothing summarizable remains after filtering
                or the accumulator no longer fits in a request.
        """
        entries = build_transcript(messages)
        if not entries or all(entry["role"] == "user" for entry in entries):
            raise CompactionFailure(
                "Nothing to summarize after filtering the transcript",
                reason="empty_after_filtering",
            )
        transcript = json.dumps(entries, ensure_ascii=False, indent=2)
        if self._token_counter.estimate(transcript) <= self._chunk_tokens:
            return await self._ask(
                SUMMARY_PROMPT,
                f"{SUMMARY_QUESTION}\n\n{transcript}",
            )
        return await self._accumulate(transcript)

    async def _accumulate(self, transcript: str) -> str:
        buffer = ""
        remaining = transcript
        chunks = 0
        while remaining:
            header = self._goal_block(buffer)
            room = self._chunk_tokens - self._token_counter.estimate(header)
            if room <= 0:
                raise CompactionFailure(
                    "Accumulated summary no longer leaves room for transcript chunks",
                    reason="accumulator_overflow",
                )
            size = room * _CHARS_PER_TOKEN
            chunk, remaining = remaining[:size], remaining[size:]
            chunks += 1
            buffer = await self._ask(
                f"{ACCUMULATE_PROMPT}\n{SUMMARY_PROMPT}",
                f"{header}\n-----\n{chunk}",
            )
        LOGGER.debug("Accumulated transcript summary across %s chunk(s)", chunks)
        return await self._ask(f"{FINALIZE_PROMPT}\n{SUMMARY_PROMPT}", self._goal_block(buffer))

    async def _ask(self, system_prompt: str, user_prompt: str) -> str:
        return await complete_text(
            self._transport,
            model=self._model,
            messages=(Message.system(system_prompt), Message.user(user_prompt)),
            retry_policy=self._retry_policy,
        )

    @staticmethod
    def _goal_block(buffer: str) -> str:
        return f"# Question / Goal\n{SUMMARY_QUESTION}\n\n# Accumulated Response\n{buffer}\n"


__all__ = [
    "SUMMARY_HEADER",
    "SUMMARY_PROMPT",
    "TranscriptSummarizer",
    "build_transcript",
]
