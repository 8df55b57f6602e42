"""Per-agent persistent state (the document scripts see as ``ctx.state``).

Each agent owns one JSON document. Scripts get a deep copy at the start of
a run and the runtime writes the copy back only after a successful run, so
a failing script never leaves half-written state behind.

The service job queue publishes into the ``jobs`` sub-map of each owner's
document.

Usage:
    store = AgentStateStore()
    state = store.get("agent-1")        # {} for an unknown agent
    state["step"] = 2
    store.set("agent-1", state)

    saved = store.snapshot()
    store.restore(saved)
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


class AgentStateStore:
    """In-memory map of agent id -> JSON document.

    Never shared through module globals: the session owns one instance and
    hands it to the runtime, so it can be captured and swapped as a unit.
    """

    _states: dict[str, dict[str, Any]]

    def __init__(self, states: dict[str, dict[str, Any]] | None = None) -> None:
        self._states = copy.deepcopy(states) if states else {}

    def get(self, agent_id: str) -> dict[str, Any]:
        """Return a deep copy of the agent's document."""
        return copy.deepcopy(self._states.get(agent_id, {}))

    def set(self, agent_id: str, state: dict[str, Any]) -> None:
        """Store ``state`` for ``agent_id``.

        Raises:
            TypeError: if ``state`` is not a dict.
            ValueError: if ``state`` is not JSON-serializable.
        """
        if not isinstance(state, dict):
            raise TypeError(f"Agent state must be a dict, got {type(state).__name__}")
        try:
            json.dumps(state)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Agent state for {agent_id} is not JSON-serializable: {e}") from e
        self._states[agent_id] = copy.deepcopy(state)

    def update_job(self, agent_id: str, job_id: str, entry: dict[str, Any]) -> None:
        """Write one job entry into ``state["jobs"]`` without a full round trip."""
        state = self._states.setdefault(agent_id, {})
        jobs = state.get("jobs")
        if not isinstance(jobs, dict):
            jobs = {}
            state["jobs"] = jobs
        jobs[job_id] = copy.deepcopy(entry)

    def clear_agent(self, agent_id: str) -> None:
        self._states.pop(agent_id, None)

    def clear(self) -> None:
        self._states.clear()

    def agent_ids(self) -> list[str]:
        return sorted(self._states)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._states)

    def restore(self, states: dict[str, dict[str, Any]]) -> None:
        self._states = copy.deepcopy(states)
        logger.debug("Restored state for %d agent(s)", len(self._states))

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._states

    def __len__(self) -> int:
        return len(self._states)
