"""Deterministic ID generator - per-prefix monotonic counters

Every id minted by the runtime (transactions, jobs, runtime events, agents)
comes from here, so identical input sequences produce identical ids across
live runs and replays.

Usage:
    ids = DeterministicIdGenerator()

    ids.next("tx")      # "tx-1"
    ids.next("tx")      # "tx-2"
    ids.next("job")     # "job-1"

    # After loading a snapshot that already holds tx-7
    ids.sync_from_ids(["tx-7"])
    ids.next("tx")      # "tx-8"

    # Capture / restore alongside the rest of the session state
    counters = ids.snapshot()
    ids.restore(counters)
"""

from __future__ import annotations

import re
from typing import Any, Iterable

_ID_PATTERN = re.compile(r"^(.*)-(\d+)$")


def parse_id(entity_id: str) -> tuple[str, int] | None:
    """Split ``"<prefix>-<n>"`` into (prefix, n), or None if it has no numeric suffix."""
    match = _ID_PATTERN.match(entity_id)
    if not match:
        return None
    return match.group(1), int(match.group(2))


class DeterministicIdGenerator:
    """Issues ``{prefix}-{n}`` identifiers from per-prefix counters.

    Counters start at 1 and only move forward, except through reset() and
    restore(), which the session calls when it swaps in a different state.

    Thread-safety: not thread-safe. The runtime is single-threaded and only
    mints ids from inside a tick or while the scheduler is stopped.
    """

    _counters: dict[str, int]

    def __init__(self, counters: dict[str, int] | None = None) -> None:
        self._counters = dict(counters) if counters else {}

    def next(self, prefix: str) -> str:
        """Return the next id for ``prefix`` and advance its counter."""
        if not prefix:
            raise ValueError("prefix must be a non-empty string")
        n = self._counters.get(prefix, 1)
        self._counters[prefix] = n + 1
        return f"{prefix}-{n}"

    def peek(self, prefix: str) -> int:
        """Return the number the next id for ``prefix`` would carry."""
        return self._counters.get(prefix, 1)

    def reset(self) -> None:
        """Forget every counter; the next id for any prefix is ``-1``."""
        self._counters.clear()

    def sync_from_ids(self, ids: Iterable[str | None]) -> None:
        """Advance counters past every numeric suffix in ``ids``.

        Never lowers a counter, so syncing is safe to repeat.
        """
        for entity_id in ids:
            if not entity_id:
                continue
            parsed = parse_id(entity_id)
            if parsed is None:
                continue
            prefix, n = parsed
            if n + 1 > self._counters.get(prefix, 1):
                self._counters[prefix] = n + 1

    def sync_from_snapshot(self, snapshot: dict[str, Any]) -> None:
        """Advance counters from a ledger snapshot (recorded counters plus every id it holds)."""
        for prefix, value in (snapshot.get("counters") or {}).items():
            if isinstance(value, int) and value > self._counters.get(prefix, 1):
                self._counters[prefix] = value
        ids: list[str] = []
        for key in ("agents", "transactions", "events"):
            ids.extend(item.get("id", "") for item in snapshot.get(key) or [])
        self.sync_from_ids(ids)

    def snapshot(self) -> dict[str, int]:
        """Return a copy of the counters (sorted by prefix for stable output)."""
        return {prefix: self._counters[prefix] for prefix in sorted(self._counters)}

    def restore(self, counters: dict[str, int]) -> None:
        """Replace every counter with ``counters``."""
        self._counters = {str(k): int(v) for k, v in counters.items()}

    def __repr__(self) -> str:
        return f"DeterministicIdGenerator({self.snapshot()!r})"
