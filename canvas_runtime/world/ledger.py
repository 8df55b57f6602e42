"""Ledger - the canvas state and the reducer over ledger actions

Holds agents, transactions, positions, the runtime event trail, the tick
clock and the persisted id counters. The only way to change any of it is
Ledger.apply(action); each applied action is handed to the recorder (when
one is attached) so the session can be replayed later.

Agents and transactions live in flat dicts keyed by id. Transactions refer
to agents by id; there are no object back-references to keep in sync.
"""

# All balance mutations go through here.
# Never allow negative balances - fail loud.
from __future__ import annotations

import copy
import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable

from ..config import get
from .actions import (
    Action,
    ActionType,
    AddAgent,
    AddConnection,
    AddRuntimeEvent,
    LoadState,
    RemoveAgent,
    RemoveConnection,
    SetIdCounter,
    StartRuntime,
    TickRuntime,
    UpdateAgentBalance,
    UpdateAgentCode,
    UpdateAgentPosition,
    UpdateAgentStatus,
    UpdateConnectionAmount,
    UpdateConnectionHash,
    UpdateConnectionState,
)
from .errors import (
    DuplicateIdError,
    EntityNotFoundError,
    ErrorCode,
    IllegalTransitionError,
    InsufficientFundsError,
    TransactionValidationError,
)
from .models import Agent, AgentStatus, RuntimeEvent, Transaction
from .state_machine import is_valid_transition, reprice, require_editable

if TYPE_CHECKING:
    from .event_log import EventRecorder

logger = logging.getLogger(__name__)


class Ledger:
    """In-memory canvas state.

    - agents / transactions: flat maps keyed by id, in insertion order
    - positions: presentation-only (x, y) per agent id
    - events: the RuntimeEvent trail, bounded to ``max_events``
    - tick / virtual_time_ms: the virtual clock, advanced by TickRuntime
    - counters: id generator counters as of the last SetIdCounter
    """

    agents: dict[str, Agent]
    transactions: dict[str, Transaction]
    positions: dict[str, tuple[float, float]]
    events: list[RuntimeEvent]
    tick: int
    virtual_time_ms: int
    tick_interval_ms: int
    is_running: bool
    counters: dict[str, int]
    rng_seed: int
    max_events: int
    recorder: "EventRecorder | None"

    def __init__(
        self,
        tick_interval_ms: int | None = None,
        rng_seed: int | None = None,
        max_events: int | None = None,
        recorder: "EventRecorder | None" = None,
    ) -> None:
        self.agents = {}
        self.transactions = {}
        self.positions = {}
        self.events = []
        self.tick = 0
        self.virtual_time_ms = 0
        self.tick_interval_ms = (
            tick_interval_ms if tick_interval_ms is not None
            else int(get("runtime.tick_interval_ms", 2000))
        )
        self.is_running = False
        self.counters = {}
        self.rng_seed = rng_seed if rng_seed is not None else int(get("runtime.rng_seed", 42))
        self.max_events = (
            max_events if max_events is not None
            else int(get("runtime.max_runtime_events", 1000))
        )
        self.recorder = recorder

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_agent(self, agent_id: str) -> Agent:
        agent = self.agents.get(agent_id)
        if agent is None:
            raise EntityNotFoundError("Agent", agent_id)
        return agent

    def get_transaction(self, tx_id: str) -> Transaction:
        tx = self.transactions.get(tx_id)
        if tx is None:
            raise EntityNotFoundError("Transaction", tx_id)
        return tx

    def balance(self, agent_id: str) -> int:
        return self.get_agent(agent_id).balance_micro

    def transactions_for(self, agent_id: str) -> list[Transaction]:
        """Every transaction ``agent_id`` takes part in, in creation order."""
        return [
            tx for tx in self.transactions.values()
            if tx.source_id == agent_id or tx.target_id == agent_id
        ]

    def total_balance(self) -> int:
        return sum(a.balance_micro for a in self.agents.values())

    def escrowed_total(self) -> int:
        """Funds currently held in escrow across all transactions."""
        return sum(tx.amount_micro for tx in self.transactions.values() if tx.escrow_locked)

    # ------------------------------------------------------------------
    # Reducer
    # ------------------------------------------------------------------

    def apply(self, action: Action) -> None:
        """Apply one action, then hand it to the recorder.

        Validation happens before any mutation, so a rejected action leaves
        the ledger untouched and is not recorded.

        Raises:
            EntityNotFoundError: unknown agent or transaction id.
            DuplicateIdError: adding an id that already exists.
            InsufficientFundsError: a balance update below zero.
            IllegalTransitionError: a transaction update off the state graph.
            TransactionValidationError: removing or re-pricing a transaction
                that is past QUOTED, or a non-positive amount.
        """
        handler = _HANDLERS.get(action.action_type)
        if handler is None:
            raise ValueError(f"Unhandled action type: {action.action_type!r}")
        handler(self, action)

        if self.recorder is not None:
            self.recorder.record(
                action.event_type,
                action.to_dict(),
                timestamp=self.virtual_time_ms,
                tick=self.tick,
            )

    def apply_all(self, actions: list[Action]) -> None:
        for action in actions:
            self.apply(action)

    def _update_connection_state(self, action: UpdateConnectionState) -> None:
        new = action.transaction
        current = self.get_transaction(new.id)
        if current.state.is_terminal:
            raise IllegalTransitionError(
                current.id, current.state.value, new.state.value, f"{current.state.value} is terminal"
            )
        if new.state is not current.state and not is_valid_transition(current.state, new.state):
            raise IllegalTransitionError(current.id, current.state.value, new.state.value)
        self.transactions[new.id] = new

    def _update_agent_balance(self, action: UpdateAgentBalance) -> None:
        agent = self.get_agent(action.agent_id)
        if action.balance_micro < 0:
            raise InsufficientFundsError(
                agent.id, agent.balance_micro, agent.balance_micro - action.balance_micro
            )
        self.agents[agent.id] = replace(agent, balance_micro=action.balance_micro)

    def _update_agent_status(self, action: UpdateAgentStatus) -> None:
        agent = self.get_agent(action.agent_id)
        self.agents[agent.id] = replace(agent, status=action.status)

    def _add_connection(self, action: AddConnection) -> None:
        tx = action.transaction
        if tx.id in self.transactions:
            raise DuplicateIdError("Transaction", tx.id)
        self.get_agent(tx.source_id)
        self.get_agent(tx.target_id)
        if tx.source_id == tx.target_id:
            raise TransactionValidationError(
                f"source and target must differ (both {tx.source_id!r})",
                rule="source != target",
                code=ErrorCode.SELF_TRANSACTION,
            )
        if tx.amount_micro <= 0:
            raise TransactionValidationError(
                f"Invalid amount: {tx.amount_micro} (must be > 0)", rule="amount_micro > 0"
            )
        self.transactions[tx.id] = tx

    def _tick_runtime(self, action: TickRuntime) -> None:
        self.tick += 1
        self.virtual_time_ms += action.interval_ms

    def _set_id_counter(self, action: SetIdCounter) -> None:
        self.counters = dict(action.counters)

    def _update_connection_hash(self, action: UpdateConnectionHash) -> None:
        tx = self.get_transaction(action.transaction_id)
        self.transactions[tx.id] = replace(tx, deliverable_hash=action.deliverable_hash)

    def _remove_connection(self, action: RemoveConnection) -> None:
        tx = self.get_transaction(action.transaction_id)
        require_editable(tx, "remove")
        del self.transactions[tx.id]

    def _update_connection_amount(self, action: UpdateConnectionAmount) -> None:
        tx = self.get_transaction(action.transaction_id)
        self.transactions[tx.id] = reprice(tx, action.amount_micro, self.virtual_time_ms)

    def _add_runtime_event(self, action: AddRuntimeEvent) -> None:
        self.events.append(action.event)
        overflow = len(self.events) - self.max_events
        if overflow > 0:
            del self.events[:overflow]

    def _add_agent(self, action: AddAgent) -> None:
        agent = action.agent
        if agent.id in self.agents:
            raise DuplicateIdError("Agent", agent.id)
        if agent.balance_micro < 0:
            raise InsufficientFundsError(agent.id, 0, -agent.balance_micro)
        self.agents[agent.id] = agent
        if action.position is not None:
            self.positions[agent.id] = action.position

    def _remove_agent(self, action: RemoveAgent) -> None:
        agent = self.get_agent(action.agent_id)
        removed = [tx.id for tx in self.transactions_for(agent.id)]
        for tx_id in removed:
            del self.transactions[tx_id]
        del self.agents[agent.id]
        self.positions.pop(agent.id, None)
        logger.debug("Removed agent %s and %d transaction(s)", agent.id, len(removed))

    def _update_agent_code(self, action: UpdateAgentCode) -> None:
        agent = self.get_agent(action.agent_id)
        self.agents[agent.id] = replace(agent, code=action.code)

    def _update_agent_position(self, action: UpdateAgentPosition) -> None:
        self.get_agent(action.agent_id)
        self.positions[action.agent_id] = (action.x, action.y)

    def _start_runtime(self, action: StartRuntime) -> None:
        for agent_id in action.agent_ids:
            self.get_agent(agent_id)
        self.is_running = True
        for agent_id in action.agent_ids:
            agent = self.agents[agent_id]
            if agent.status is not AgentStatus.ERROR:
                self.agents[agent_id] = replace(agent, status=AgentStatus.RUNNING)

    def _stop_runtime(self, action: Action) -> None:
        self.is_running = False
        for agent_id, agent in self.agents.items():
            if agent.status is AgentStatus.RUNNING:
                self.agents[agent_id] = replace(agent, status=AgentStatus.IDLE)

    def _reset_runtime(self, action: Action) -> None:
        self.events = []
        self.tick = 0
        self.virtual_time_ms = 0
        self.is_running = False
        for agent_id, agent in self.agents.items():
            self.agents[agent_id] = replace(agent, status=AgentStatus.IDLE)

    def _load_state(self, action: LoadState) -> None:
        self.load_snapshot(action.snapshot)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """Full state as plain JSON-compatible data."""
        return {
            "agents": [a.to_dict() for a in self.agents.values()],
            "transactions": [tx.to_dict() for tx in self.transactions.values()],
            "positions": {aid: [x, y] for aid, (x, y) in self.positions.items()},
            "events": [e.to_dict() for e in self.events],
            "tick": self.tick,
            "virtual_time_ms": self.virtual_time_ms,
            "tick_interval_ms": self.tick_interval_ms,
            "is_running": self.is_running,
            "counters": dict(self.counters),
            "rng_seed": self.rng_seed,
        }

    def load_snapshot(self, snapshot: dict[str, Any]) -> None:
        """Replace the whole state with ``snapshot``.

        The snapshot is parsed completely before anything is assigned, so a
        malformed snapshot raises without touching the ledger.
        """
        agents = {a.id: a for a in (Agent.from_dict(d) for d in snapshot.get("agents") or [])}
        transactions = {
            tx.id: tx
            for tx in (Transaction.from_dict(d) for d in snapshot.get("transactions") or [])
        }
        positions = {
            str(aid): (float(pos[0]), float(pos[1]))
            for aid, pos in (snapshot.get("positions") or {}).items()
        }
        events = [RuntimeEvent.from_dict(d) for d in snapshot.get("events") or []]
        for agent in agents.values():
            if agent.balance_micro < 0:
                raise InsufficientFundsError(agent.id, agent.balance_micro, 0)

        self.agents = agents
        self.transactions = transactions
        self.positions = positions
        self.events = events[-self.max_events:] if self.max_events else events
        self.tick = int(snapshot.get("tick", 0))
        self.virtual_time_ms = int(snapshot.get("virtual_time_ms", 0))
        self.tick_interval_ms = int(snapshot.get("tick_interval_ms", self.tick_interval_ms))
        self.is_running = bool(snapshot.get("is_running", False))
        self.counters = {str(k): int(v) for k, v in (snapshot.get("counters") or {}).items()}
        self.rng_seed = int(snapshot.get("rng_seed", self.rng_seed))

    @classmethod
    def from_snapshot(
        cls,
        snapshot: dict[str, Any],
        recorder: "EventRecorder | None" = None,
    ) -> "Ledger":
        ledger = cls(recorder=recorder)
        ledger.load_snapshot(copy.deepcopy(snapshot))
        return ledger

    def __repr__(self) -> str:
        return (
            f"Ledger(tick={self.tick}, agents={len(self.agents)}, "
            f"transactions={len(self.transactions)}, events={len(self.events)})"
        )


_HANDLERS: dict[ActionType, Callable[[Ledger, Any], None]] = {
    ActionType.UPDATE_CONNECTION_STATE: Ledger._update_connection_state,
    ActionType.UPDATE_AGENT_BALANCE: Ledger._update_agent_balance,
    ActionType.UPDATE_AGENT_STATUS: Ledger._update_agent_status,
    ActionType.ADD_CONNECTION: Ledger._add_connection,
    ActionType.TICK_RUNTIME: Ledger._tick_runtime,
    ActionType.SET_ID_COUNTER: Ledger._set_id_counter,
    ActionType.UPDATE_CONNECTION_HASH: Ledger._update_connection_hash,
    ActionType.REMOVE_CONNECTION: Ledger._remove_connection,
    ActionType.UPDATE_CONNECTION_AMOUNT: Ledger._update_connection_amount,
    ActionType.ADD_RUNTIME_EVENT: Ledger._add_runtime_event,
    ActionType.ADD_AGENT: Ledger._add_agent,
    ActionType.REMOVE_AGENT: Ledger._remove_agent,
    ActionType.UPDATE_AGENT_CODE: Ledger._update_agent_code,
    ActionType.UPDATE_AGENT_POSITION: Ledger._update_agent_position,
    ActionType.START_RUNTIME: Ledger._start_runtime,
    ActionType.STOP_RUNTIME: Ledger._stop_runtime,
    ActionType.RESET_RUNTIME: Ledger._reset_runtime,
    ActionType.LOAD_STATE: Ledger._load_state,
}

# Every action kind must have a handler
_missing = set(ActionType) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"Ledger has no handler for: {sorted(m.value for m in _missing)}")
