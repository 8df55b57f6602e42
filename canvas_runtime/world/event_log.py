"""Event log - recording, export and import of applied ledger actions.

While recording, the Ledger reports every applied action here. The
resulting EventLog is a self-contained document: the snapshot taken when
recording started (the SESSION_INIT event), the ordered events, and
optionally the final snapshot. The replay engine is its only consumer.

Document shape (version 1):

    {
      "version": 1,
      "seed": 42,
      "initial_snapshot": {...},
      "events": [
        {"id": "event-1", "type": "SESSION_INIT", "timestamp": 0, "tick": 0,
         "payload": {"snapshot": {...}}},
        {"id": "event-2", "type": "CONNECTION_CREATED", ...},
        ...
      ],
      "final_snapshot": {...},
      "metadata": {"recorded_at": "...", "duration_ms": 6000,
                   "total_ticks": 3, "total_events": 41}
    }

Imports are validated in full (shape, version, event types, id sequence
and chronological order) before anything is returned, so a bad document
never reaches live state.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

from .actions import ACTION_BY_EVENT_TYPE
from .errors import MalformedLogError, RecorderError, UnsupportedLogVersionError

logger = logging.getLogger(__name__)

EVENT_LOG_VERSION = 1
SUPPORTED_LOG_VERSIONS: tuple[int, ...] = (1,)

SESSION_INIT = "SESSION_INIT"
STATE_RESET = "STATE_RESET"

# Events that carry a full snapshot rather than an action
SNAPSHOT_EVENT_TYPES: frozenset[str] = frozenset({SESSION_INIT, STATE_RESET})

KNOWN_EVENT_TYPES: frozenset[str] = frozenset(ACTION_BY_EVENT_TYPE) | SNAPSHOT_EVENT_TYPES

# A new segment may restart the clock
SEGMENT_START_TYPES: frozenset[str] = frozenset(
    {SESSION_INIT, "RUNTIME_RESET", "STATE_LOADED", STATE_RESET}
)


@dataclass
class LogEvent:
    id: str
    type: str
    timestamp: int
    tick: int
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp,
            "tick": self.tick,
            "payload": self.payload,
        }


@dataclass
class EventLog:
    """A recorded session."""

    version: int
    seed: int
    initial_snapshot: dict[str, Any]
    events: list[LogEvent]
    final_snapshot: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "version": self.version,
            "seed": self.seed,
            "initial_snapshot": self.initial_snapshot,
            "events": [e.to_dict() for e in self.events],
            "metadata": self.metadata,
        }
        if self.final_snapshot is not None:
            d["final_snapshot"] = self.final_snapshot
        return d

    @property
    def total_ticks(self) -> int:
        return sum(1 for e in self.events if e.type == "RUNTIME_TICK")


class EventRecorder:
    """Buffers ledger events between start_recording() and stop_recording()."""

    def __init__(self) -> None:
        self._events: list[LogEvent] = []
        self._recording = False
        self._initial_snapshot: dict[str, Any] | None = None
        self._recorded_at: str = ""

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def event_count(self) -> int:
        return len(self._events)

    def events(self) -> list[LogEvent]:
        return list(self._events)

    def start_recording(self, snapshot: dict[str, Any], recorded_at: str | None = None) -> None:
        """Begin a new recording whose first event is SESSION_INIT with ``snapshot``."""
        if self._recording:
            logger.warning("Already recording, discarding the previous recording")
        self._events = []
        self._recording = True
        self._initial_snapshot = copy.deepcopy(snapshot)
        self._recorded_at = recorded_at or datetime.now(timezone.utc).isoformat()
        self.record(
            SESSION_INIT,
            {"snapshot": copy.deepcopy(snapshot)},
            timestamp=int(snapshot.get("virtual_time_ms", 0)),
            tick=int(snapshot.get("tick", 0)),
        )
        logger.info(
            "Recording started at tick %s (virtual %sms)",
            snapshot.get("tick", 0), snapshot.get("virtual_time_ms", 0),
        )

    def record(self, event_type: str, payload: dict[str, Any], timestamp: int, tick: int) -> None:
        """Append one event. No-op unless recording."""
        if not self._recording:
            return
        self._events.append(LogEvent(
            id=f"event-{len(self._events) + 1}",
            type=event_type,
            timestamp=timestamp,
            tick=tick,
            payload=copy.deepcopy(payload),
        ))

    def stop_recording(self, final_snapshot: dict[str, Any] | None = None) -> EventLog:
        """Finish the recording and return it.

        Raises:
            RecorderError: if no recording is in progress.
        """
        if not self._recording or self._initial_snapshot is None:
            raise RecorderError("Not recording")
        self._recording = False

        initial = self._initial_snapshot
        duration = 0
        if final_snapshot is not None:
            duration = int(final_snapshot.get("virtual_time_ms", 0)) - int(initial.get("virtual_time_ms", 0))
        log = EventLog(
            version=EVENT_LOG_VERSION,
            seed=int(initial.get("rng_seed", 0)),
            initial_snapshot=initial,
            events=list(self._events),
            final_snapshot=copy.deepcopy(final_snapshot) if final_snapshot is not None else None,
        )
        log.metadata = {
            "recorded_at": self._recorded_at,
            "duration_ms": duration,
            "total_ticks": log.total_ticks,
            "total_events": len(log.events),
        }
        logger.info("Recording stopped: %d events, %d ticks", len(log.events), log.total_ticks)
        return log

    def clear(self) -> None:
        self._events = []
        self._recording = False
        self._initial_snapshot = None


# =============================================================================
# Export / import
# =============================================================================


class _LogEventDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: StrictStr
    type: StrictStr
    timestamp: StrictInt = Field(ge=0)
    tick: StrictInt = Field(ge=0)
    payload: dict[str, Any]


class _EventLogDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: StrictInt
    seed: StrictInt
    initial_snapshot: dict[str, Any]
    events: list[_LogEventDocument] = Field(min_length=1)
    final_snapshot: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def _check_order(events: list[_LogEventDocument]) -> None:
    """Ids run event-1..N; clocks never go backwards inside a segment."""
    if events[0].type != SESSION_INIT:
        raise MalformedLogError(f"first event must be {SESSION_INIT}, got {events[0].type}")

    last_ts = last_tick = 0
    for index, event in enumerate(events, start=1):
        expected = f"event-{index}"
        if event.id != expected:
            raise MalformedLogError(f"event {index} has id {event.id!r}, expected {expected!r}")
        if event.type not in KNOWN_EVENT_TYPES:
            raise MalformedLogError(f"{event.id}: unknown event type {event.type!r}")
        if event.type in SNAPSHOT_EVENT_TYPES and not isinstance(event.payload.get("snapshot"), dict):
            raise MalformedLogError(f"{event.id}: {event.type} without a snapshot")
        if event.type not in SEGMENT_START_TYPES:
            if event.timestamp < last_ts:
                raise MalformedLogError(
                    f"{event.id}: timestamp {event.timestamp} is earlier than {last_ts}"
                )
            if event.tick < last_tick:
                raise MalformedLogError(f"{event.id}: tick {event.tick} is earlier than {last_tick}")
        last_ts, last_tick = event.timestamp, event.tick


def validate_event_log(data: Any) -> EventLog:
    """Validate a decoded document and build the EventLog.

    Raises:
        UnsupportedLogVersionError: version is not one this runtime reads.
        MalformedLogError: anything else wrong with the document.
    """
    if not isinstance(data, dict):
        raise MalformedLogError(f"top level must be an object, got {type(data).__name__}")
    if "version" not in data:
        raise MalformedLogError("missing field 'version'")
    version = data["version"]
    if isinstance(version, bool) or not isinstance(version, int):
        raise MalformedLogError(f"version must be an integer, got {version!r}")
    if version not in SUPPORTED_LOG_VERSIONS:
        raise UnsupportedLogVersionError(version, SUPPORTED_LOG_VERSIONS)

    try:
        doc = _EventLogDocument.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first["loc"])
        raise MalformedLogError(f"{where}: {first['msg']} ({e.error_count()} error(s))") from None

    _check_order(doc.events)

    return EventLog(
        version=doc.version,
        seed=doc.seed,
        initial_snapshot=copy.deepcopy(doc.initial_snapshot),
        events=[
            LogEvent(e.id, e.type, e.timestamp, e.tick, copy.deepcopy(e.payload))
            for e in doc.events
        ],
        final_snapshot=copy.deepcopy(doc.final_snapshot),
        metadata=copy.deepcopy(doc.metadata),
    )


def export_event_log(log: EventLog) -> str:
    return json.dumps(log.to_dict(), indent=2)


def import_event_log(text: str) -> EventLog:
    """Parse and validate an exported event log.

    Raises:
        MalformedLogError: not JSON, wrong shape, unknown events, or out of order.
        UnsupportedLogVersionError: a version other than 1.
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedLogError(f"not valid JSON: {e}") from None
    return validate_event_log(data)


def atomic_write_text(path: str | Path, text: str) -> Path:
    """Write ``text`` to ``path`` via a temp file and os.replace."""
    target = Path(path)
    temp_file = target.with_name(f"{target.name}.tmp")
    with open(temp_file, "w") as f:
        f.write(text)
    # Atomic rename - if interrupted here, the previous file remains valid
    os.replace(temp_file, target)
    return target


def save_event_log(log: EventLog, path: str | Path) -> Path:
    saved = atomic_write_text(path, export_event_log(log))
    logger.info("Saved event log with %d events to %s", len(log.events), saved)
    return saved


def load_event_log(path: str | Path) -> EventLog:
    with open(path) as f:
        return import_event_log(f.read())
