"""Simulation module - ticks, scheduling, replay and the session facade."""

from .runtime import AgentRuntime
from .scheduler import TickScheduler
from .session import CanvasSession
from .history import HistoryEntry, HistoryManager
from .replay import ReplayEngine
from .export import (
    export_session, import_session, session_snapshot, parse_session,
    encode_share, decode_share,
)
from .checkpoint import save_checkpoint, load_checkpoint, restore_checkpoint
from .scenarios import TEMPLATES, SCENARIOS, list_scenarios, load_scenario
from .types import ErrorStats, TickReport, SessionSnapshotData

__all__ = [
    "AgentRuntime",
    "TickScheduler",
    "CanvasSession",
    "HistoryEntry",
    "HistoryManager",
    "ReplayEngine",
    "export_session",
    "import_session",
    "session_snapshot",
    "parse_session",
    "encode_share",
    "decode_share",
    "save_checkpoint",
    "load_checkpoint",
    "restore_checkpoint",
    "TEMPLATES",
    "SCENARIOS",
    "list_scenarios",
    "load_scenario",
    "ErrorStats",
    "TickReport",
    "SessionSnapshotData",
]
