"""Replay engine - rebuilds ledger state from a recorded event log.

The engine owns a private Ledger with no recorder attached. Each step
decodes one logged event back into its ledger action and applies it; the
snapshot events (SESSION_INIT, STATE_RESET) replace the whole state. The
live scheduler, state store and job queue are never touched.
"""

from __future__ import annotations

import logging
from typing import Any

from ..world.actions import action_from_dict
from ..world.errors import CanvasError, MalformedLogError
from ..world.event_log import SNAPSHOT_EVENT_TYPES, EventLog, LogEvent
from ..world.ledger import Ledger

logger = logging.getLogger(__name__)


class ReplayEngine:
    """Steps through an EventLog one event at a time."""

    def __init__(self) -> None:
        self.log: EventLog | None = None
        self.ledger = Ledger()
        self.index = 0

    @property
    def is_loaded(self) -> bool:
        return self.log is not None

    @property
    def total(self) -> int:
        return len(self.log.events) if self.log is not None else 0

    @property
    def is_complete(self) -> bool:
        return self.index >= self.total

    def load(self, log: EventLog) -> None:
        """Start replaying ``log`` from its initial snapshot."""
        self.log = log
        self.reset()
        logger.info(
            "Replay loaded: %d events, %d ticks, seed %d",
            len(log.events), log.total_ticks, log.seed,
        )

    def reset(self) -> None:
        """Back to the initial snapshot, no events applied."""
        if self.log is None:
            raise RuntimeError("No event log loaded")
        self.ledger = Ledger()
        self.ledger.load_snapshot(self.log.initial_snapshot)
        self.index = 0

    def _apply(self, event: LogEvent) -> None:
        try:
            if event.type in SNAPSHOT_EVENT_TYPES:
                self.ledger.load_snapshot(event.payload["snapshot"])
            else:
                self.ledger.apply(action_from_dict(event.payload))
        except (CanvasError, ValueError, KeyError, TypeError) as e:
            raise MalformedLogError(f"{event.id} ({event.type}) cannot be applied: {e}") from e

    def step(self) -> bool:
        """Apply the next event. Returns True while more events remain."""
        if self.log is None:
            raise RuntimeError("No event log loaded")
        if self.index < self.total:
            self._apply(self.log.events[self.index])
            self.index += 1
        return self.index < self.total

    def run_to_end(self) -> dict[str, Any]:
        while self.step():
            pass
        return self.get_state()

    def get_state(self) -> dict[str, Any]:
        return self.ledger.snapshot()

    def get_progress(self) -> float:
        """Fraction of events applied, 0.0 to 1.0."""
        if self.total == 0:
            return 1.0
        return self.index / self.total

    def get_position(self) -> tuple[int, int]:
        return self.index, self.total

    def current_event(self) -> LogEvent | None:
        """The most recently applied event."""
        if self.log is None or self.index == 0:
            return None
        return self.log.events[self.index - 1]

    def jump_to_event(self, index: int) -> None:
        """Position the replay so that exactly ``index`` events are applied."""
        if not 0 <= index <= self.total:
            raise IndexError(f"event index {index} out of range 0..{self.total}")
        if index < self.index:
            self.reset()
        while self.index < index:
            self.step()

    def jump_to_tick(self, tick: int) -> int:
        """Replay up to the end of ``tick``. Returns the tick reached."""
        if tick < 0:
            raise ValueError(f"tick must be >= 0, got {tick}")
        self.reset()
        while self.index < self.total and self.ledger.tick < tick:
            self.step()
        return self.ledger.tick
