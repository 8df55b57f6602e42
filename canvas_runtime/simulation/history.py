"""Snapshot / undo history for a canvas session.

A HistoryEntry bundles every mutable store of the session: the ledger
(agents, transactions, positions, events, clock), the enabled agent set,
the agents' persistent state, the service job store, the id counters and
the runtime's info-log dedupe memory.
restore() puts all of them back together, so nothing drifts apart.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..config import get
from ..world.actions import LoadState
from ..world.errors import SchedulerActiveError

if TYPE_CHECKING:
    from .session import CanvasSession

logger = logging.getLogger(__name__)


@dataclass
class HistoryEntry:
    """Deep copy of a session at one instant."""

    ledger_snapshot: dict[str, Any]
    enabled_agent_ids: list[str]
    agent_state: dict[str, dict[str, Any]]
    jobs: list[dict[str, Any]]
    id_counters: dict[str, int]
    dedupe: dict[str, list[Any]] = field(default_factory=dict)
    label: str = ""

    @property
    def tick(self) -> int:
        return int(self.ledger_snapshot.get("tick", 0))


def capture(session: "CanvasSession", label: str = "") -> HistoryEntry:
    return HistoryEntry(
        ledger_snapshot=copy.deepcopy(session.ledger.snapshot()),
        enabled_agent_ids=sorted(session.enabled_agent_ids),
        agent_state=session.state_store.snapshot(),
        jobs=session.job_queue.snapshot(),
        id_counters=session.ids.snapshot(),
        dedupe=session.runtime.dedupe_snapshot(),
        label=label,
    )


def restore(session: "CanvasSession", entry: HistoryEntry) -> None:
    """Reinstate ``entry`` into ``session``.

    Raises:
        SchedulerActiveError: the scheduler is running or a tick is in flight.
    """
    if session.scheduler.is_active:
        raise SchedulerActiveError("Stop the scheduler before restoring a snapshot")

    snapshot = copy.deepcopy(entry.ledger_snapshot)
    session.ledger.apply(LoadState(snapshot))
    session.state_store.restore(entry.agent_state)
    session.job_queue.restore(entry.jobs)
    session.enabled_agent_ids = set(entry.enabled_agent_ids)

    session.ids.reset()
    session.ids.restore(entry.id_counters)
    session.ids.sync_from_snapshot(snapshot)
    session.runtime.restore_dedupe(entry.dedupe)
    logger.info("Restored snapshot at tick %d%s", entry.tick, f" ({entry.label})" if entry.label else "")


@dataclass
class HistoryManager:
    """Bounded stack of HistoryEntry, most recent last."""

    max_entries: int = field(default_factory=lambda: int(get("history.max_entries", 50)))
    _entries: list[HistoryEntry] = field(default_factory=list)

    def push(self, entry: HistoryEntry) -> None:
        self._entries.append(entry)
        if len(self._entries) > self.max_entries:
            del self._entries[: len(self._entries) - self.max_entries]

    def pop(self) -> HistoryEntry | None:
        if not self._entries:
            return None
        return self._entries.pop()

    def peek(self) -> HistoryEntry | None:
        return self._entries[-1] if self._entries else None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
