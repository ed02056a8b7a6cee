"""Shared counters owned explicitly by whoever creates the engines."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from threading import Lock


@dataclass(slots=True, frozen=True)
class LedgerSnapshot:
    """Point-in-time copy of a :class:`UsageLedger`."""

    runs: int = 0
    retries: int = 0
    tool_failures: int = 0
    tool_calls: dict[str, int] = field(default_factory=dict)
    compactions: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {
            "runs": self.runs,
            "retries": self.retries,
            "tool_failures": self.tool_failures,
            "tool_calls": dict(self.tool_calls),
            "compactions": dict(self.compactions),
        }


class UsageLedger:
    """Thread-safe counters shared by concurrent runs.

    Pass one instance to several engines to aggregate across personas, or let
    each engine create its own so that runs stay isolated (as in tests).
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._runs = 0
        self._retries = 0
        self._tool_failures = 0
        self._tool_calls: Counter[str] = Counter()
        self._compactions: Counter[str] = Counter()

    def record_run(self) -> None:
        with self._lock:
            self._runs += 1

    def record_retry(self) -> None:
        with self._lock:
            self._retries += 1

    def record_tool_call(self, name: str, *, ok: bool) -> None:
        with self._lock:
            self._tool_calls[name] += 1
            if not ok:
                self._tool_failures += 1

    def record_compaction(self, tier: str) -> None:
        with self._lock:
            self._compactions[tier] += 1

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            return LedgerSnapshot(
                runs=self._runs,
                retries=self._retries,
                tool_failures=self._tool_failures,
                tool_calls=dict(self._tool_calls),
                compactions=dict(self._compactions),
            )


__all__ = ["LedgerSnapshot", "UsageLedger"]
