"""Unit tests for session snapshot export/import and share tokens."""

import json

import pytest

from canvas_runtime.simulation.export import (
    decode_session,
    decode_share,
    encode_share,
    export_session,
    import_session,
    parse_session,
)
from canvas_runtime.simulation.session import CanvasSession
from canvas_runtime.world.errors import MalformedSnapshotError, UnsupportedSnapshotVersionError


def _v1_document() -> dict:
    return {
        "version": 1,
        "agents": [
            {"id": "agent-1", "name": "A", "balance_micro": 100},
            {"id": "agent-2", "name": "B", "balance_micro": 0},
        ],
        "transactions": [
            {"id": "tx-1", "source_id": "agent-1", "target_id": "agent-2",
             "amount_micro": 50, "service": "echo", "state": "INITIATED"},
        ],
        "positions": {"agent-1": [1, 2]},
    }


class TestParseSession:
    """Tests for validation and migration."""

    def test_v1_migrated(self) -> None:
        data = parse_session(_v1_document())
        assert data["version"] == 2
        assert [a["code"] for a in data["agents"]] == ["", ""]
        assert data["enabled_agent_ids"] == ["agent-1", "agent-2"]
        assert data["positions"] == {"agent-1": [1.0, 2.0]}
        assert "deliverable_hash" not in data["transactions"][0]

    def test_input_not_mutated(self) -> None:
        doc = _v1_document()
        parse_session(doc)
        assert doc["version"] == 1
        assert "code" not in doc["agents"][0]

    def test_unsupported_version(self) -> None:
        with pytest.raises(UnsupportedSnapshotVersionError) as exc_info:
            parse_session({"version": 3, "agents": [], "transactions": []})
        assert exc_info.value.version == 3

    @pytest.mark.parametrize("doc", [
        [],
        {},
        {"version": "2", "agents": [], "transactions": []},
        {"version": 2, "agents": []},
        {"version": 2, "agents": [{"id": "agent-1", "name": "A", "balance_micro": -5}], "transactions": []},
        {"version": 2, "agents": [{"id": "agent-1", "name": "A", "balance_micro": 5, "extra": 1}],
         "transactions": []},
    ])
    def test_malformed(self, doc: object) -> None:
        with pytest.raises(MalformedSnapshotError):
            parse_session(doc)

    def test_dangling_transaction(self) -> None:
        doc = _v1_document()
        doc["transactions"][0]["target_id"] = "agent-9"
        with pytest.raises(MalformedSnapshotError, match="unknown agent"):
            parse_session(doc)

    def test_duplicate_agent(self) -> None:
        doc = _v1_document()
        doc["agents"][1]["id"] = "agent-1"
        doc["transactions"] = []
        with pytest.raises(MalformedSnapshotError, match="duplicate agent"):
            parse_session(doc)

    def test_not_json(self) -> None:
        with pytest.raises(MalformedSnapshotError):
            decode_session("{not json")


class TestSessionRoundTrip:
    """Tests for exporting and importing a live session."""

    def test_import_reproduces_canvas(self, two_agent_session: CanvasSession) -> None:
        two_agent_session.run_ticks(2)
        text = export_session(two_agent_session)

        other = CanvasSession(mode="step")
        import_session(other, text)
        assert other.snapshot() == two_agent_session.snapshot()
        assert other.ledger.tick == 2
        assert not other.ledger.is_running

    def test_integer_positions_export_byte_identically(self, session: CanvasSession) -> None:
        session.add_agent("A", position=(100, 200))
        session.add_agent("B")
        session.move_agent("agent-2", 3, 4)
        text = export_session(session)
        assert json.loads(text)["positions"] == {"agent-1": [100.0, 200.0], "agent-2": [3.0, 4.0]}

        other = CanvasSession(mode="step")
        import_session(other, text)
        assert export_session(other) == text
        assert encode_share(other.snapshot()) == encode_share(session.snapshot())

    def test_failed_import_leaves_session_alone(self, two_agent_session: CanvasSession) -> None:
        before = two_agent_session.snapshot()
        with pytest.raises(MalformedSnapshotError):
            import_session(two_agent_session, json.dumps({"version": 2, "agents": "nope", "transactions": []}))
        assert two_agent_session.snapshot() == before
        assert len(two_agent_session.history) == 0

    def test_import_is_undoable(self, two_agent_session: CanvasSession) -> None:
        before = two_agent_session.snapshot()
        import_session(two_agent_session, json.dumps(_v1_document()))
        assert len(two_agent_session.agents) == 2
        assert two_agent_session.step_back()
        assert two_agent_session.snapshot() == before


class TestShareTokens:
    """Tests for URL-safe share links."""

    def test_token_is_url_safe(self, two_agent_session: CanvasSession) -> None:
        token = encode_share(two_agent_session.snapshot())
        assert "=" not in token
        assert "+" not in token and "/" not in token

    def test_token_is_deterministic(self, two_agent_session: CanvasSession) -> None:
        snap = two_agent_session.snapshot()
        reordered = dict(snap)
        reordered["agents"] = list(reversed(snap["agents"]))
        assert encode_share(snap) == encode_share(reordered)

    def test_decode_drops_code(self, two_agent_session: CanvasSession) -> None:
        two_agent_session.set_agent_enabled("agent-2", False)
        data = decode_share(encode_share(two_agent_session.snapshot()))
        assert [a["id"] for a in data["agents"]] == ["agent-1", "agent-2"]
        assert all(a["code"] == "" for a in data["agents"])
        # Share links carry no enabled set, so every agent comes back enabled
        assert data["enabled_agent_ids"] == ["agent-1", "agent-2"]
        assert data["positions"]["agent-1"] == [100.0, 200.0]

    @pytest.mark.parametrize("token", ["", "!!!", "bm90IGpzb24"])
    def test_bad_token(self, token: str) -> None:
        with pytest.raises(MalformedSnapshotError):
            decode_share(token)
