"""Runtime dispatch contract - the closed set of ledger actions.

Every change to the ledger is one of these tagged actions. The runtime,
the session facade and the replay engine all go through Ledger.apply(),
which is what makes a recorded session replayable: the event log stores
exactly the actions that were applied.

Core kinds used by a tick:
    UPDATE_CONNECTION_STATE, UPDATE_AGENT_BALANCE, UPDATE_AGENT_STATUS,
    ADD_CONNECTION, TICK_RUNTIME, SET_ID_COUNTER

Session kinds:
    UPDATE_CONNECTION_HASH, REMOVE_CONNECTION, UPDATE_CONNECTION_AMOUNT,
    ADD_RUNTIME_EVENT, ADD_AGENT, REMOVE_AGENT,
    UPDATE_AGENT_CODE, UPDATE_AGENT_POSITION, START_RUNTIME, STOP_RUNTIME,
    RESET_RUNTIME, LOAD_STATE
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import Agent, AgentStatus, RuntimeEvent, Transaction, TransactionState


class ActionType(str, Enum):
    """Closed set of ledger action kinds."""

    UPDATE_CONNECTION_STATE = "update-connection-state"
    UPDATE_AGENT_BALANCE = "update-agent-balance"
    UPDATE_AGENT_STATUS = "update-agent-status"
    ADD_CONNECTION = "add-connection"
    TICK_RUNTIME = "tick-runtime"
    SET_ID_COUNTER = "set-id-counter"
    UPDATE_CONNECTION_HASH = "update-connection-hash"
    REMOVE_CONNECTION = "remove-connection"
    UPDATE_CONNECTION_AMOUNT = "update-connection-amount"
    ADD_RUNTIME_EVENT = "add-runtime-event"
    ADD_AGENT = "add-agent"
    REMOVE_AGENT = "remove-agent"
    UPDATE_AGENT_CODE = "update-agent-code"
    UPDATE_AGENT_POSITION = "update-agent-position"
    START_RUNTIME = "start-runtime"
    STOP_RUNTIME = "stop-runtime"
    RESET_RUNTIME = "reset-runtime"
    LOAD_STATE = "load-state"


# Event log type recorded for each action kind
EVENT_TYPE_BY_ACTION: dict[ActionType, str] = {
    ActionType.UPDATE_CONNECTION_STATE: "CONNECTION_STATE_CHANGED",
    ActionType.UPDATE_AGENT_BALANCE: "AGENT_BALANCE_UPDATED",
    ActionType.UPDATE_AGENT_STATUS: "AGENT_STATUS_UPDATED",
    ActionType.ADD_CONNECTION: "CONNECTION_CREATED",
    ActionType.TICK_RUNTIME: "RUNTIME_TICK",
    ActionType.SET_ID_COUNTER: "ID_COUNTER_SET",
    ActionType.UPDATE_CONNECTION_HASH: "CONNECTION_HASH_UPDATED",
    ActionType.REMOVE_CONNECTION: "CONNECTION_REMOVED",
    ActionType.UPDATE_CONNECTION_AMOUNT: "CONNECTION_AMOUNT_UPDATED",
    ActionType.ADD_RUNTIME_EVENT: "RUNTIME_EVENT_ADDED",
    ActionType.ADD_AGENT: "AGENT_ADDED",
    ActionType.REMOVE_AGENT: "AGENT_REMOVED",
    ActionType.UPDATE_AGENT_CODE: "AGENT_CODE_UPDATED",
    ActionType.UPDATE_AGENT_POSITION: "AGENT_POSITION_UPDATED",
    ActionType.START_RUNTIME: "RUNTIME_STARTED",
    ActionType.STOP_RUNTIME: "RUNTIME_STOPPED",
    ActionType.RESET_RUNTIME: "RUNTIME_RESET",
    ActionType.LOAD_STATE: "STATE_LOADED",
}

ACTION_BY_EVENT_TYPE: dict[str, ActionType] = {v: k for k, v in EVENT_TYPE_BY_ACTION.items()}


@dataclass
class Action:
    """Base class for ledger actions."""

    action_type: ActionType

    @property
    def event_type(self) -> str:
        return EVENT_TYPE_BY_ACTION[self.action_type]

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.action_type.value}


@dataclass
class UpdateConnectionState(Action):
    """Replace a transaction with its next version from the state machine."""

    transaction: Transaction

    def __init__(self, transaction: Transaction) -> None:
        super().__init__(ActionType.UPDATE_CONNECTION_STATE)
        self.transaction = transaction

    @property
    def transaction_id(self) -> str:
        return self.transaction.id

    @property
    def state(self) -> TransactionState:
        return self.transaction.state

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["transaction"] = self.transaction.to_dict()
        return d


@dataclass
class UpdateAgentBalance(Action):
    agent_id: str
    balance_micro: int

    def __init__(self, agent_id: str, balance_micro: int) -> None:
        super().__init__(ActionType.UPDATE_AGENT_BALANCE)
        self.agent_id = agent_id
        self.balance_micro = balance_micro

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["agent_id"] = self.agent_id
        d["balance_micro"] = self.balance_micro
        return d


@dataclass
class UpdateAgentStatus(Action):
    agent_id: str
    status: AgentStatus

    def __init__(self, agent_id: str, status: AgentStatus | str) -> None:
        super().__init__(ActionType.UPDATE_AGENT_STATUS)
        self.agent_id = agent_id
        self.status = AgentStatus(status)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["agent_id"] = self.agent_id
        d["status"] = self.status.value
        return d


@dataclass
class AddConnection(Action):
    transaction: Transaction

    def __init__(self, transaction: Transaction) -> None:
        super().__init__(ActionType.ADD_CONNECTION)
        self.transaction = transaction

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["transaction"] = self.transaction.to_dict()
        return d


@dataclass
class TickRuntime(Action):
    """Advance tick by one and virtual time by ``interval_ms``."""

    interval_ms: int

    def __init__(self, interval_ms: int) -> None:
        super().__init__(ActionType.TICK_RUNTIME)
        self.interval_ms = interval_ms

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["interval_ms"] = self.interval_ms
        return d


@dataclass
class SetIdCounter(Action):
    counters: dict[str, int]

    def __init__(self, counters: dict[str, int]) -> None:
        super().__init__(ActionType.SET_ID_COUNTER)
        self.counters = dict(counters)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["counters"] = dict(self.counters)
        return d


@dataclass
class UpdateConnectionHash(Action):
    transaction_id: str
    deliverable_hash: str

    def __init__(self, transaction_id: str, deliverable_hash: str) -> None:
        super().__init__(ActionType.UPDATE_CONNECTION_HASH)
        self.transaction_id = transaction_id
        self.deliverable_hash = deliverable_hash

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["transaction_id"] = self.transaction_id
        d["deliverable_hash"] = self.deliverable_hash
        return d


@dataclass
class RemoveConnection(Action):
    """Delete a transaction that has not been committed yet."""

    transaction_id: str

    def __init__(self, transaction_id: str) -> None:
        super().__init__(ActionType.REMOVE_CONNECTION)
        self.transaction_id = transaction_id

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["transaction_id"] = self.transaction_id
        return d


@dataclass
class UpdateConnectionAmount(Action):
    """Re-price a transaction that has not been committed yet."""

    transaction_id: str
    amount_micro: int

    def __init__(self, transaction_id: str, amount_micro: int) -> None:
        super().__init__(ActionType.UPDATE_CONNECTION_AMOUNT)
        self.transaction_id = transaction_id
        self.amount_micro = amount_micro

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["transaction_id"] = self.transaction_id
        d["amount_micro"] = self.amount_micro
        return d


@dataclass
class AddRuntimeEvent(Action):
    event: RuntimeEvent

    def __init__(self, event: RuntimeEvent) -> None:
        super().__init__(ActionType.ADD_RUNTIME_EVENT)
        self.event = event

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["event"] = self.event.to_dict()
        return d


@dataclass
class AddAgent(Action):
    agent: Agent
    position: tuple[float, float] | None = None

    def __init__(self, agent: Agent, position: tuple[float, float] | None = None) -> None:
        super().__init__(ActionType.ADD_AGENT)
        self.agent = agent
        self.position = (float(position[0]), float(position[1])) if position is not None else None

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["agent"] = self.agent.to_dict()
        if self.position is not None:
            d["position"] = [self.position[0], self.position[1]]
        return d


@dataclass
class RemoveAgent(Action):
    """Remove an agent together with every transaction it takes part in."""

    agent_id: str

    def __init__(self, agent_id: str) -> None:
        super().__init__(ActionType.REMOVE_AGENT)
        self.agent_id = agent_id

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["agent_id"] = self.agent_id
        return d


@dataclass
class UpdateAgentCode(Action):
    agent_id: str
    code: str

    def __init__(self, agent_id: str, code: str) -> None:
        super().__init__(ActionType.UPDATE_AGENT_CODE)
        self.agent_id = agent_id
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["agent_id"] = self.agent_id
        d["code"] = self.code
        return d


@dataclass
class UpdateAgentPosition(Action):
    agent_id: str
    x: float
    y: float

    def __init__(self, agent_id: str, x: float, y: float) -> None:
        super().__init__(ActionType.UPDATE_AGENT_POSITION)
        self.agent_id = agent_id
        self.x = float(x)
        self.y = float(y)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["agent_id"] = self.agent_id
        d["x"] = self.x
        d["y"] = self.y
        return d


@dataclass
class StartRuntime(Action):
    """Mark the runtime running; the listed agents become ``running``."""

    agent_ids: list[str] = field(default_factory=list)

    def __init__(self, agent_ids: list[str] | None = None) -> None:
        super().__init__(ActionType.START_RUNTIME)
        self.agent_ids = sorted(agent_ids or [])

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["agent_ids"] = list(self.agent_ids)
        return d


@dataclass
class StopRuntime(Action):
    """Mark the runtime stopped; ``running`` agents go back to ``idle``."""

    def __init__(self) -> None:
        super().__init__(ActionType.STOP_RUNTIME)


@dataclass
class ResetRuntime(Action):
    """Clear events, tick and virtual time; every agent returns to ``idle``."""

    def __init__(self) -> None:
        super().__init__(ActionType.RESET_RUNTIME)


@dataclass
class LoadState(Action):
    """Replace the whole ledger with a snapshot."""

    snapshot: dict[str, Any]

    def __init__(self, snapshot: dict[str, Any]) -> None:
        super().__init__(ActionType.LOAD_STATE)
        self.snapshot = snapshot

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["snapshot"] = self.snapshot
        return d


def action_from_dict(data: dict[str, Any]) -> Action:
    """Rebuild an action from its to_dict() form.

    Raises:
        ValueError: for an unknown kind or a payload missing its fields.
    """
    try:
        kind = ActionType(data["type"])
    except (KeyError, ValueError) as e:
        raise ValueError(f"Unknown action type: {data.get('type')!r}") from e

    try:
        if kind is ActionType.UPDATE_CONNECTION_STATE:
            return UpdateConnectionState(Transaction.from_dict(data["transaction"]))
        if kind is ActionType.UPDATE_AGENT_BALANCE:
            return UpdateAgentBalance(str(data["agent_id"]), int(data["balance_micro"]))
        if kind is ActionType.UPDATE_AGENT_STATUS:
            return UpdateAgentStatus(str(data["agent_id"]), data["status"])
        if kind is ActionType.ADD_CONNECTION:
            return AddConnection(Transaction.from_dict(data["transaction"]))
        if kind is ActionType.TICK_RUNTIME:
            return TickRuntime(int(data["interval_ms"]))
        if kind is ActionType.SET_ID_COUNTER:
            return SetIdCounter({str(k): int(v) for k, v in data["counters"].items()})
        if kind is ActionType.UPDATE_CONNECTION_HASH:
            return UpdateConnectionHash(str(data["transaction_id"]), str(data["deliverable_hash"]))
        if kind is ActionType.REMOVE_CONNECTION:
            return RemoveConnection(str(data["transaction_id"]))
        if kind is ActionType.UPDATE_CONNECTION_AMOUNT:
            return UpdateConnectionAmount(str(data["transaction_id"]), int(data["amount_micro"]))
        if kind is ActionType.ADD_RUNTIME_EVENT:
            return AddRuntimeEvent(RuntimeEvent.from_dict(data["event"]))
        if kind is ActionType.ADD_AGENT:
            pos = data.get("position")
            return AddAgent(Agent.from_dict(data["agent"]), (pos[0], pos[1]) if pos is not None else None)
        if kind is ActionType.REMOVE_AGENT:
            return RemoveAgent(str(data["agent_id"]))
        if kind is ActionType.UPDATE_AGENT_CODE:
            return UpdateAgentCode(str(data["agent_id"]), str(data["code"]))
        if kind is ActionType.UPDATE_AGENT_POSITION:
            return UpdateAgentPosition(str(data["agent_id"]), data["x"], data["y"])
        if kind is ActionType.START_RUNTIME:
            return StartRuntime(list(data.get("agent_ids") or []))
        if kind is ActionType.STOP_RUNTIME:
            return StopRuntime()
        if kind is ActionType.RESET_RUNTIME:
            return ResetRuntime()
        if kind is ActionType.LOAD_STATE:
            return LoadState(dict(data["snapshot"]))
    except (KeyError, TypeError, IndexError) as e:
        raise ValueError(f"Malformed {kind.value} action: {e}") from e

    raise ValueError(f"Unhandled action type: {kind.value}")
