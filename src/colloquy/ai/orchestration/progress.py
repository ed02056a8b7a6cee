"""Progress notifications for the surrounding CLI/UI."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

__all__ = ["ProgressKind", "ProgressEvent", "ProgressCallback", "emit"]

LOGGER = logging.getLogger(__name__)


class ProgressKind:
    """Kinds of notable transitions reported to progress callbacks."""

    STATE_CHANGED = "state_changed"
    CONTENT_DELTA = "content_delta"
    TOOL_CALL_IDENTIFIED = "tool_call_identified"
    TOOL_CALL_COMPLETED = "tool_call_completed"
    RETRY = "retry"
    COMPACTION_STARTED = "compaction_started"
    COMPACTION_FINISHED = "compaction_finished"


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    """One notification emitted by a run."""

    kind: str
    run_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)


ProgressCallback = Callable[[ProgressEvent], None]


def emit(
    callback: ProgressCallback | None,
    kind: str,
    run_id: str,
    **payload: Any,
) -> None:
    """Deliver an event; a missing or failing callback never affects the run."""

    if callback is None:
        return
    try:
        callback(ProgressEvent(kind=kind, run_id=run_id, payload=payload))
    except Exception:
        LOGGER.debug("Progress callback failed for %s", kind, exc_info=True)
