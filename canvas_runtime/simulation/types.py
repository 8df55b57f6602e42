"""Records passed between the session, the runtime and the CLI."""

from dataclasses import dataclass, field
from typing import Any, TypedDict


@dataclass
class ErrorRecord:
    """A single agent failure."""

    tick: int
    error_type: str
    agent_id: str
    message: str


@dataclass
class ErrorStats:
    """Failed scripts and rejected operations, counted for the run summary."""

    total_errors: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_agent: dict[str, int] = field(default_factory=dict)
    recent_errors: list[ErrorRecord] = field(default_factory=list)
    max_recent: int = 10

    def record_error(self, tick: int, error_type: str, agent_id: str, message: str) -> None:
        self.total_errors += 1
        for counts, key in ((self.by_type, error_type), (self.by_agent, agent_id)):
            counts[key] = counts.get(key, 0) + 1
        self.recent_errors.append(ErrorRecord(tick, error_type, agent_id, message))
        # Only the newest max_recent are kept
        del self.recent_errors[:-self.max_recent]

    def clear(self) -> None:
        self.total_errors = 0
        self.by_type.clear()
        self.by_agent.clear()
        self.recent_errors.clear()


@dataclass
class TickReport:
    """What one scheduler tick did."""

    tick: int
    agents_run: list[str] = field(default_factory=list)
    failed_agents: list[str] = field(default_factory=list)
    ops_applied: int = 0
    jobs_completed: int = 0
    aborted: bool = False
    done: bool = False


class SessionSnapshotData(TypedDict):
    """Session export document (version 2)."""

    version: int
    agents: list[dict[str, Any]]
    transactions: list[dict[str, Any]]
    positions: dict[str, list[float]]
    counters: dict[str, int]
    tick: int
    virtual_time_ms: int
    tick_interval_ms: int
    rng_seed: int
    enabled_agent_ids: list[str]
