"""Unit tests for the Ledger reducer."""

from typing import Callable

import pytest

from canvas_runtime.world.actions import (
    AddAgent,
    AddConnection,
    AddRuntimeEvent,
    LoadState,
    RemoveAgent,
    RemoveConnection,
    ResetRuntime,
    SetIdCounter,
    StartRuntime,
    StopRuntime,
    TickRuntime,
    UpdateAgentBalance,
    UpdateAgentCode,
    UpdateAgentPosition,
    UpdateAgentStatus,
    UpdateConnectionAmount,
    UpdateConnectionHash,
    UpdateConnectionState,
)
from canvas_runtime.world.errors import (
    DuplicateIdError,
    EntityNotFoundError,
    IllegalTransitionError,
    InsufficientFundsError,
    TransactionValidationError,
)
from canvas_runtime.world.event_log import EventRecorder
from canvas_runtime.world.ledger import Ledger
from canvas_runtime.world.models import (
    Agent,
    AgentStatus,
    RuntimeEvent,
    RuntimeEventType,
    Transaction,
    TransactionState,
)

S = TransactionState


class TestQueries:
    """Tests for read access."""

    def test_balance(self, ledger: Ledger) -> None:
        assert ledger.balance("agent-1") == 1_000_000_000
        assert ledger.balance("agent-2") == 0

    def test_unknown_agent(self, ledger: Ledger) -> None:
        with pytest.raises(EntityNotFoundError) as exc_info:
            ledger.get_agent("agent-99")
        assert str(exc_info.value) == "Agent agent-99 not found"

    def test_unknown_transaction(self, ledger: Ledger) -> None:
        with pytest.raises(EntityNotFoundError):
            ledger.get_transaction("tx-1")

    def test_transactions_for(self, ledger: Ledger, make_tx: Callable[..., Transaction]) -> None:
        tx = make_tx()
        assert ledger.transactions_for("agent-1") == [tx]
        assert ledger.transactions_for("agent-2") == [tx]

    def test_escrowed_total(self, ledger: Ledger, make_tx: Callable[..., Transaction]) -> None:
        make_tx(state=S.COMMITTED, escrow_locked=True, amount_micro=300)
        make_tx(amount_micro=500)
        assert ledger.escrowed_total() == 300


class TestBalances:
    """Tests for balance updates."""

    def test_update_balance(self, ledger: Ledger) -> None:
        ledger.apply(UpdateAgentBalance("agent-2", 42))
        assert ledger.balance("agent-2") == 42

    def test_negative_balance_rejected(self, ledger: Ledger) -> None:
        """Fail loud and leave the ledger untouched."""
        with pytest.raises(InsufficientFundsError):
            ledger.apply(UpdateAgentBalance("agent-1", -1))
        assert ledger.balance("agent-1") == 1_000_000_000

    def test_agent_added_with_negative_balance_rejected(self, ledger: Ledger) -> None:
        with pytest.raises(InsufficientFundsError):
            ledger.apply(AddAgent(Agent(id="agent-3", name="Debtor", balance_micro=-5)))
        assert "agent-3" not in ledger.agents


class TestConnections:
    """Tests for adding and moving transactions."""

    def test_duplicate_id_rejected(self, ledger: Ledger, make_tx: Callable[..., Transaction]) -> None:
        tx = make_tx()
        with pytest.raises(DuplicateIdError):
            ledger.apply(AddConnection(tx))

    def test_unknown_party_rejected(self, ledger: Ledger) -> None:
        tx = Transaction(id="tx-9", source_id="agent-1", target_id="ghost", amount_micro=1, service="x")
        with pytest.raises(EntityNotFoundError):
            ledger.apply(AddConnection(tx))

    def test_self_connection_rejected(self, ledger: Ledger) -> None:
        tx = Transaction(id="tx-9", source_id="agent-1", target_id="agent-1", amount_micro=1, service="x")
        with pytest.raises(TransactionValidationError):
            ledger.apply(AddConnection(tx))

    def test_non_positive_amount_rejected(self, ledger: Ledger) -> None:
        tx = Transaction(id="tx-9", source_id="agent-1", target_id="agent-2", amount_micro=0, service="x")
        with pytest.raises(TransactionValidationError):
            ledger.apply(AddConnection(tx))

    def test_state_update_follows_graph(self, ledger: Ledger, make_tx: Callable[..., Transaction]) -> None:
        from dataclasses import replace

        tx = make_tx()
        ledger.apply(UpdateConnectionState(replace(tx, state=S.COMMITTED)))
        assert ledger.get_transaction(tx.id).state is S.COMMITTED
        with pytest.raises(IllegalTransitionError):
            ledger.apply(UpdateConnectionState(replace(tx, state=S.INITIATED)))

    def test_terminal_transaction_frozen(self, ledger: Ledger, make_tx: Callable[..., Transaction]) -> None:
        from dataclasses import replace

        tx = make_tx(state=S.CANCELLED)
        with pytest.raises(IllegalTransitionError):
            ledger.apply(UpdateConnectionState(replace(tx, escrow_locked=True)))

    def test_update_hash(self, ledger: Ledger, make_tx: Callable[..., Transaction]) -> None:
        tx = make_tx(state=S.DELIVERED)
        ledger.apply(UpdateConnectionHash(tx.id, "ab" * 32))
        assert ledger.get_transaction(tx.id).deliverable_hash == "ab" * 32

    @pytest.mark.parametrize("state", [S.INITIATED, S.QUOTED])
    def test_remove_uncommitted(
        self, ledger: Ledger, make_tx: Callable[..., Transaction], state: TransactionState
    ) -> None:
        tx = make_tx(state=state)
        ledger.apply(RemoveConnection(tx.id))
        assert ledger.transactions == {}
        assert ledger.balance("agent-1") == 1_000_000_000

    @pytest.mark.parametrize("state", [S.COMMITTED, S.DELIVERED, S.SETTLED, S.CANCELLED])
    def test_remove_refused_past_quoted(
        self, ledger: Ledger, make_tx: Callable[..., Transaction], state: TransactionState
    ) -> None:
        tx = make_tx(state=state, escrow_locked=state in (S.COMMITTED, S.DELIVERED))
        with pytest.raises(TransactionValidationError, match="INITIATED or QUOTED"):
            ledger.apply(RemoveConnection(tx.id))
        assert ledger.get_transaction(tx.id) == tx

    def test_remove_unknown(self, ledger: Ledger) -> None:
        with pytest.raises(EntityNotFoundError):
            ledger.apply(RemoveConnection("tx-404"))

    def test_update_amount(self, ledger: Ledger, make_tx: Callable[..., Transaction]) -> None:
        tx = make_tx(state=S.QUOTED)
        ledger.apply(TickRuntime(2000))
        ledger.apply(UpdateConnectionAmount(tx.id, 25_000_000))
        updated = ledger.get_transaction(tx.id)
        assert updated.amount_micro == 25_000_000
        assert updated.updated_at == 2000
        assert updated.state is S.QUOTED

    @pytest.mark.parametrize("amount", [0, -5])
    def test_update_amount_must_be_positive(
        self, ledger: Ledger, make_tx: Callable[..., Transaction], amount: int
    ) -> None:
        tx = make_tx()
        with pytest.raises(TransactionValidationError, match="must be > 0"):
            ledger.apply(UpdateConnectionAmount(tx.id, amount))
        assert ledger.get_transaction(tx.id).amount_micro == tx.amount_micro

    def test_update_amount_refused_once_committed(
        self, ledger: Ledger, make_tx: Callable[..., Transaction]
    ) -> None:
        tx = make_tx(state=S.COMMITTED, escrow_locked=True)
        with pytest.raises(TransactionValidationError):
            ledger.apply(UpdateConnectionAmount(tx.id, 1))


class TestAgents:
    """Tests for agent lifecycle actions."""

    def test_duplicate_agent_rejected(self, ledger: Ledger) -> None:
        with pytest.raises(DuplicateIdError):
            ledger.apply(AddAgent(Agent(id="agent-1", name="Again")))

    def test_remove_agent_cascades(self, ledger: Ledger, make_tx: Callable[..., Transaction]) -> None:
        make_tx()
        ledger.apply(RemoveAgent("agent-2"))
        assert "agent-2" not in ledger.agents
        assert "agent-2" not in ledger.positions
        assert ledger.transactions == {}

    def test_code_status_and_position(self, ledger: Ledger) -> None:
        ledger.apply(UpdateAgentCode("agent-1", "ctx.log('hi')"))
        ledger.apply(UpdateAgentStatus("agent-1", "error"))
        ledger.apply(UpdateAgentPosition("agent-1", 5, 6))
        agent = ledger.get_agent("agent-1")
        assert agent.code == "ctx.log('hi')"
        assert agent.status is AgentStatus.ERROR
        assert ledger.positions["agent-1"] == (5.0, 6.0)


class TestRuntimeActions:
    """Tests for clock, run-state and event actions."""

    def test_tick_advances_clock(self, ledger: Ledger) -> None:
        ledger.apply(TickRuntime(2000))
        ledger.apply(TickRuntime(2000))
        assert ledger.tick == 2
        assert ledger.virtual_time_ms == 4000

    def test_start_skips_errored_agents(self, ledger: Ledger) -> None:
        ledger.apply(UpdateAgentStatus("agent-2", AgentStatus.ERROR))
        ledger.apply(StartRuntime(["agent-1", "agent-2"]))
        assert ledger.is_running
        assert ledger.get_agent("agent-1").status is AgentStatus.RUNNING
        assert ledger.get_agent("agent-2").status is AgentStatus.ERROR

    def test_stop_returns_running_to_idle(self, ledger: Ledger) -> None:
        ledger.apply(StartRuntime(["agent-1"]))
        ledger.apply(StopRuntime())
        assert not ledger.is_running
        assert ledger.get_agent("agent-1").status is AgentStatus.IDLE

    def test_events_bounded(self) -> None:
        ledger = Ledger(max_events=3)
        for n in range(1, 6):
            ledger.apply(AddRuntimeEvent(RuntimeEvent(f"event-{n}", RuntimeEventType.SYSTEM, 0)))
        assert [e.id for e in ledger.events] == ["event-3", "event-4", "event-5"]

    def test_reset_keeps_agents_and_transactions(
        self, ledger: Ledger, make_tx: Callable[..., Transaction]
    ) -> None:
        make_tx()
        ledger.apply(TickRuntime(2000))
        ledger.apply(AddRuntimeEvent(RuntimeEvent("event-1", RuntimeEventType.SYSTEM, 0)))
        ledger.apply(ResetRuntime())
        assert ledger.tick == 0
        assert ledger.virtual_time_ms == 0
        assert ledger.events == []
        assert len(ledger.agents) == 2
        assert len(ledger.transactions) == 1

    def test_set_id_counter(self, ledger: Ledger) -> None:
        ledger.apply(SetIdCounter({"tx": 3}))
        assert ledger.counters == {"tx": 3}


class TestSnapshots:
    """Tests for snapshot and load_state."""

    def test_round_trip(self, ledger: Ledger, make_tx: Callable[..., Transaction]) -> None:
        make_tx(state=S.COMMITTED, escrow_locked=True)
        ledger.apply(TickRuntime(2000))
        copy = Ledger.from_snapshot(ledger.snapshot())
        assert copy.snapshot() == ledger.snapshot()

    def test_load_state_replaces_everything(self, ledger: Ledger) -> None:
        empty = Ledger(tick_interval_ms=2000).snapshot()
        ledger.apply(LoadState(empty))
        assert ledger.agents == {}
        assert ledger.positions == {}

    def test_bad_snapshot_leaves_ledger_untouched(self, ledger: Ledger) -> None:
        bad = ledger.snapshot()
        bad["agents"].append({"id": "agent-3", "name": "x", "balance_micro": -1})
        before = ledger.snapshot()
        with pytest.raises(InsufficientFundsError):
            ledger.apply(LoadState(bad))
        assert ledger.snapshot() == before


class TestRecording:
    """Tests for the recorder hook."""

    def test_applied_actions_are_recorded(self, ledger: Ledger) -> None:
        recorder = EventRecorder()
        ledger.recorder = recorder
        recorder.start_recording(ledger.snapshot())
        ledger.apply(TickRuntime(2000))
        events = recorder.events()
        assert [e.type for e in events] == ["SESSION_INIT", "RUNTIME_TICK"]
        assert events[1].payload == {"type": "tick-runtime", "interval_ms": 2000}
        assert events[1].tick == 1
        assert events[1].timestamp == 2000

    def test_rejected_actions_are_not_recorded(self, ledger: Ledger) -> None:
        recorder = EventRecorder()
        ledger.recorder = recorder
        recorder.start_recording(ledger.snapshot())
        with pytest.raises(InsufficientFundsError):
            ledger.apply(UpdateAgentBalance("agent-1", -1))
        assert recorder.event_count == 1
