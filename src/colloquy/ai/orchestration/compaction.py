"""Context-budget compaction.

The transcript is split at the most recent ``user`` message. Everything from
that message onward is retained verbatim; the prefix before it is shrunk in
two tiers:

1. *Tersify*: every rewritable message is restated by a fast model in
   parallel. The result is accepted when it saves at least
   ``min_savings_ratio`` of the prefix size.
2. *Summarize*: otherwise the prefix is replaced with one synthetic summary
   message. Summaries below ``min_summary_tokens`` are rejected.

Attempts repeat until an accepted candidate brings the prefix to at most
``target_ratio`` of its original size, or ``max_attempts`` is reached. A
tersify result short of ``min_savings_ratio``, or one left after a failed
summary, only serves as a fallback: once attempts run out the smallest
candidate is used if it is smaller than the original.

Instruction messages and earlier summaries are pinned: they are kept verbatim
ahead of any new summary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from ...services.settings import CompactionSettings
from ..ai_types import TokenCounterProtocol
from ..services.summarizer import SUMMARY_HEADER, TranscriptSummarizer
from ..services.tersifier import Tersifier
from .dispatch_pool import DEFAULT_CONCURRENCY, DispatchPool
from .errors import CompactionFailure, CompletionError
from .types import COMPACTION_MARKER, Message, is_compaction_summary, serialized_size

__all__ = [
    "CompactionTier",
    "CompactionOutcome",
    "Compactor",
    "split_for_compaction",
    "summary_message",
]

LOGGER = logging.getLogger(__name__)


class CompactionTier:
    SKIPPED = "skipped"
    TERSIFY = "tersify"
    SUMMARIZE = "summarize"


@dataclass(slots=True, frozen=True)
class CompactionOutcome:
    """Result of :meth:`Compactor.compact`."""

    messages: tuple[Message, ...]
    tier: str
    attempts: int
    original_size: int
    compacted_size: int

    @property
    def changed(self) -> bool:
        return self.tier != CompactionTier.SKIPPED

    @property
    def savings(self) -> float:
        if not self.original_size:
            return 0.0
        return (self.original_size - self.compacted_size) / self.original_size


@dataclass(slots=True, frozen=True)
class _Candidate:
    prefix: tuple[Message, ...]
    tier: str
    size: int
    # False for a tersify result below ``min_savings_ratio``; usable only as a fallback.
    accepted: bool = True


def split_for_compaction(messages: Sequence[Message]) -> tuple[tuple[Message, ...], tuple[Message, ...]]:
    """Return ``(to_compact, to_retain)`` split at the most recent user message.

    Without any user message everything is retained.
    """
    for position in range(len(messages) - 1, -1, -1):
        if messages[position].role == "user":
            return tuple(messages[:position]), tuple(messages[position:])
    return (), tuple(messages)


def summary_message(text: str) -> Message:
    return Message.system(f"{COMPACTION_MARKER}\n{SUMMARY_HEADER}\n{text.strip()}")


def _is_pinned(message: Message) -> bool:
    return message.is_instruction or is_compaction_summary(message)


class Compactor:
    """Shrink an over-budget transcript while preserving its latest turn."""

    def __init__(
        self,
        *,
        settings: CompactionSettings,
        tersifier: Tersifier,
        summarizer: TranscriptSummarizer,
        token_counter: TokenCounterProtocol,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self._settings = settings
        self._tersifier = tersifier
        self._summarizer = summarizer
        self._token_counter = token_counter
        self._concurrency = max(1, int(concurrency))

    @property
    def settings(self) -> CompactionSettings:
        return self._settings

    async def compact(self, messages: Sequence[Message]) -> CompactionOutcome:
        """Return a smaller transcript.

        Raises:
            CompactionFailure: When no attempt produced a smaller prefix.
        """
        transcript = tuple(messages)
        original_size = serialized_size(transcript)
        if original_size < self._settings.min_length:
            LOGGER.debug("Skipping compaction; transcript is only %s bytes", original_size)
            return self._unchanged(transcript, original_size)
        to_compact, to_retain = split_for_compaction(transcript)
        if not to_compact or all(_is_pinned(message) for message in to_compact):
            LOGGER.debug("Skipping compaction; nothing precedes the latest user message")
            return self._unchanged(transcript, original_size)

        prefix_size = serialized_size(to_compact)
        target = prefix_size * self._settings.target_ratio
        best: _Candidate | None = None
        last_error: CompletionError | None = None
        attempts = 0
        max_attempts = max(1, self._settings.max_attempts)
        while attempts < max_attempts:
            attempts += 1
            try:
                candidates, error = await self._attempt(to_compact, prefix_size)
            except CompletionError as exc:
                candidates, error = [], exc
            if error is not None:
                LOGGER.warning("Compaction attempt %s/%s failed: %s", attempts, max_attempts, error)
                last_error = error
            for candidate in candidates:
                if best is None or candidate.size < best.size:
                    best = candidate
            if any(candidate.accepted and candidate.size <= target for candidate in candidates):
                break
            LOGGER.warning(
                "Compaction insufficient (attempt %s/%s, best %s of %s bytes)",
                attempts,
                max_attempts,
                best.size if best else "n/a",
                prefix_size,
            )

        if best is None or best.size >= prefix_size:
            failure = CompactionFailure(
                "Compaction could not shrink the transcript",
                details={"attempts": attempts, "original_size": original_size},
            )
            if last_error is not None:
                raise failure from last_error
            raise failure

        compacted = best.prefix + to_retain
        compacted_size = serialized_size(compacted)
        LOGGER.info(
            "Compacted transcript via %s: %s -> %s bytes after %s attempt(s)",
            best.tier,
            original_size,
            compacted_size,
            attempts,
        )
        return CompactionOutcome(
            messages=compacted,
            tier=best.tier,
            attempts=attempts,
            original_size=original_size,
            compacted_size=compacted_size,
        )

    async def _attempt(
        self, to_compact: tuple[Message, ...], prefix_size: int
    ) -> tuple[list[_Candidate], CompletionError | None]:
        """Return this attempt's candidates and the summarizer error, if any.

        The tersify candidate survives a failed summary so the caller can
        still fall back to it.
        """
        tersified = await self._tersify(to_compact)
        tersified_size = serialized_size(tersified)
        savings = (prefix_size - tersified_size) / prefix_size if prefix_size else 0.0
        LOGGER.debug("Tersify saved %.1f%% of %s bytes", savings * 100, prefix_size)
        sufficient = savings >= self._settings.min_savings_ratio
        candidates = [
            _Candidate(prefix=tersified, tier=CompactionTier.TERSIFY, size=tersified_size, accepted=sufficient)
        ]
        if sufficient:
            return candidates, None

        try:
            summary = await self._summarizer.summarize(to_compact)
        except CompletionError as exc:
            LOGGER.warning("Summarization unavailable: %s", exc)
            return candidates, exc
        summary_tokens = self._token_counter.count(summary)
        if summary_tokens < self._settings.min_summary_tokens:
            LOGGER.warning(
                "Rejecting summary of %s tokens (minimum %s)",
                summary_tokens,
                self._settings.min_summary_tokens,
            )
            return candidates, None
        pinned = tuple(message for message in to_compact if _is_pinned(message))
        prefix = pinned + (summary_message(summary),)
        candidates.append(_Candidate(prefix=prefix, tier=CompactionTier.SUMMARIZE, size=serialized_size(prefix)))
        return candidates, None

    async def _tersify(self, to_compact: tuple[Message, ...]) -> tuple[Message, ...]:
        positions = [i for i, message in enumerate(to_compact) if self._tersifier.should_rewrite(message)]
        if not positions:
            return to_compact
        rewritten = list(to_compact)
        async with DispatchPool(min(self._concurrency, len(positions))) as pool:
            results = await pool.submit([to_compact[i] for i in positions], self._tersifier.rewrite)
        for position, result in zip(positions, results):
            if result.ok and result.value is not None:
                rewritten[position] = result.value
            else:
                LOGGER.warning("Keeping original message %s after failed rewrite: %s", position, result.reason)
        return tuple(rewritten)

    @staticmethod
    def _unchanged(transcript: tuple[Message, ...], size: int) -> CompactionOutcome:
        return CompactionOutcome(
            messages=transcript,
            tier=CompactionTier.SKIPPED,
            attempts=0,
            original_size=size,
            compacted_size=size,
        )
