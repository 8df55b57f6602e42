"""Unit tests for AgentStateStore."""

import pytest

from canvas_runtime.world.state_store import AgentStateStore


class TestAgentStateStore:
    """Per-agent JSON documents."""

    def test_unknown_agent_gets_empty_state(self) -> None:
        assert AgentStateStore().get("agent-1") == {}

    def test_get_returns_copy(self) -> None:
        store = AgentStateStore()
        store.set("agent-1", {"items": [1]})
        store.get("agent-1")["items"].append(2)
        assert store.get("agent-1") == {"items": [1]}

    def test_set_rejects_non_dict(self) -> None:
        with pytest.raises(TypeError):
            AgentStateStore().set("agent-1", [1, 2])  # type: ignore[arg-type]

    def test_set_rejects_unserializable(self) -> None:
        with pytest.raises(ValueError):
            AgentStateStore().set("agent-1", {"s": {1, 2}})

    def test_update_job_creates_jobs_map(self) -> None:
        store = AgentStateStore()
        store.set("agent-1", {"jobs": "not a map"})
        store.update_job("agent-1", "job-1", {"status": "pending"})
        assert store.get("agent-1")["jobs"] == {"job-1": {"status": "pending"}}

    def test_snapshot_restore_and_clear(self) -> None:
        store = AgentStateStore()
        store.set("agent-2", {"x": 1})
        store.set("agent-1", {"y": 2})
        saved = store.snapshot()
        store.clear_agent("agent-1")
        assert "agent-1" not in store
        store.restore(saved)
        assert store.agent_ids() == ["agent-1", "agent-2"]
        store.clear()
        assert len(store) == 0
