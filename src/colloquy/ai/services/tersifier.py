"""Per-message rewrite agent used by the first compaction tier."""

from __future__ import annotations

import logging

from ..orchestration.errors import CompletionError
from ..orchestration.retry_policy import RetryPolicy
from ..orchestration.streaming import ModelTransport, complete_text
from ..orchestration.types import THINK_CLOSE, THINK_OPEN, Message, is_compaction_summary

LOGGER = logging.getLogger(__name__)

TERSIFY_PROMPT = """\
Rewrite one chat message so it is as short as possible without losing
technical or contextual substance.

- Keep file paths, identifiers (functions, modules, classes), error messages
  and decisions exactly as written.
- Keep numbered and bulleted lists as lists.
- Drop pleasantries, repetition and hedging.
- Never add information or change the meaning.
- Reply with the rewritten message text only.
"""


class Tersifier:
    """Restate a single message tersely using a fast model.

    A failed or unhelpful rewrite returns the original message unchanged.
    """

    def __init__(
        self,
        transport: ModelTransport,
        *,
        model: str | None,
        retry_policy: RetryPolicy,
    ) -> None:
        self._transport = transport
        self._model = model
        self._retry_policy = retry_policy

    @staticmethod
    def should_rewrite(message: Message) -> bool:
        if not message.content or not message.content.strip():
            return False
        return not (message.is_instruction or is_compaction_summary(message))

    async def rewrite(self, message: Message) -> Message:
        if not self.should_rewrite(message):
            return message
        thought = message.is_thought
        text = (message.content or "").strip()
        if thought:
            text = text[len(THINK_OPEN) : -len(THINK_CLOSE)].strip()
        prompt = f"Rewrite this {message.role} message tersely:\n\n{text}"
        try:
            rewritten = await complete_text(
                self._transport,
                model=self._model,
                messages=(Message.system(TERSIFY_PROMPT), Message.user(prompt)),
                retry_policy=self._retry_policy,
            )
        except CompletionError as exc:
            LOGGER.warning("Tersify rewrite failed; keeping original %s message: %s", message.role, exc)
            return message
        if not rewritten:
            return message
        if thought:
            rewritten = f"{THINK_OPEN}\n{rewritten}\n{THINK_CLOSE}"
        if len(rewritten) >= len(message.content or ""):
            LOGGER.debug("Tersify rewrite did not shrink %s message; keeping original", message.role)
            return message
        return message.with_content(rewritten)


__all__ = ["TERSIFY_PROMPT", "Tersifier"]
