"""Core data model: agents, transactions, runtime events.

All three are frozen dataclasses. The ledger replaces entries instead of
mutating them, which keeps snapshots cheap (they share unchanged objects)
and makes it impossible for a caller holding a reference to change ledger
state behind the reducer's back.

Transactions reference agents by id only; agents never point at their
transactions. Both live in flat dicts keyed by id inside the Ledger.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TransactionState(str, Enum):
    """Escrow transaction lifecycle states."""

    INITIATED = "INITIATED"
    QUOTED = "QUOTED"
    COMMITTED = "COMMITTED"
    IN_PROGRESS = "IN_PROGRESS"
    DELIVERED = "DELIVERED"
    SETTLED = "SETTLED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionState.SETTLED, TransactionState.CANCELLED)


class AgentStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class AgentType(str, Enum):
    REQUESTER = "requester"
    PROVIDER = "provider"
    VALIDATOR = "validator"


class RuntimeEventType(str, Enum):
    """Tag on every RuntimeEvent.

    - STATE_CHANGE: a transaction moved, a balance changed
    - ACTION: something an agent did or logged
    - ERROR: a script failed, or the runtime rejected an operation
    - SYSTEM: scheduler and session markers
    """

    STATE_CHANGE = "state_change"
    ACTION = "action"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class Agent:
    """A participant on the canvas.

    ``balance_micro`` is an integer number of micro-units and is never
    negative; the ledger refuses any update that would make it so.
    """

    id: str
    name: str
    type: AgentType = AgentType.REQUESTER
    template_id: str = "custom"
    icon: str = ""
    balance_micro: int = 0
    status: AgentStatus = AgentStatus.IDLE
    code: str = ""
    created_at: int = 0

    def to_dict(self, include_code: bool = True) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "template_id": self.template_id,
            "icon": self.icon,
            "balance_micro": self.balance_micro,
            "status": self.status.value,
            "created_at": self.created_at,
        }
        if include_code:
            d["code"] = self.code
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Agent":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            type=AgentType(data.get("type", AgentType.REQUESTER.value)),
            template_id=str(data.get("template_id", "custom")),
            icon=str(data.get("icon", "")),
            balance_micro=int(data.get("balance_micro", 0)),
            status=AgentStatus(data.get("status", AgentStatus.IDLE.value)),
            code=str(data.get("code", "")),
            created_at=int(data.get("created_at", 0)),
        )


@dataclass(frozen=True)
class Transaction:
    """An escrow connection between exactly two agents.

    Only the transaction state machine produces new versions of a
    Transaction; once SETTLED or CANCELLED no further version is allowed.
    """

    id: str
    source_id: str
    target_id: str
    amount_micro: int
    service: str
    state: TransactionState = TransactionState.INITIATED
    created_at: int = 0
    updated_at: int = 0
    escrow_locked: bool = False
    deliverable_hash: str | None = None
    deadline_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "amount_micro": self.amount_micro,
            "service": self.service,
            "state": self.state.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "escrow_locked": self.escrow_locked,
        }
        if self.deliverable_hash is not None:
            d["deliverable_hash"] = self.deliverable_hash
        if self.deadline_ms is not None:
            d["deadline_ms"] = self.deadline_ms
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transaction":
        deadline = data.get("deadline_ms")
        return cls(
            id=str(data["id"]),
            source_id=str(data["source_id"]),
            target_id=str(data["target_id"]),
            amount_micro=int(data["amount_micro"]),
            service=str(data.get("service", "")),
            state=TransactionState(data.get("state", TransactionState.INITIATED.value)),
            created_at=int(data.get("created_at", 0)),
            updated_at=int(data.get("updated_at", 0)),
            escrow_locked=bool(data.get("escrow_locked", False)),
            deliverable_hash=data.get("deliverable_hash"),
            deadline_ms=int(deadline) if deadline is not None else None,
        )

    def view(self) -> dict[str, Any]:
        """The fields an agent script is allowed to see."""
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "state": self.state.value,
            "amount_micro": self.amount_micro,
            "service": self.service,
            "deliverable_hash": self.deliverable_hash,
        }


@dataclass(frozen=True)
class RuntimeEvent:
    """One entry of the append-only runtime audit trail."""

    id: str
    type: RuntimeEventType
    timestamp: int
    tick: int = 0
    agent_id: str | None = None
    transaction_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return str(self.payload.get("message", ""))

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "tick": self.tick,
            "payload": dict(self.payload),
        }
        if self.agent_id is not None:
            d["agent_id"] = self.agent_id
        if self.transaction_id is not None:
            d["transaction_id"] = self.transaction_id
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RuntimeEvent":
        return cls(
            id=str(data["id"]),
            type=RuntimeEventType(data["type"]),
            timestamp=int(data.get("timestamp", 0)),
            tick=int(data.get("tick", 0)),
            agent_id=data.get("agent_id"),
            transaction_id=data.get("transaction_id"),
            payload=dict(data.get("payload") or {}),
        )
