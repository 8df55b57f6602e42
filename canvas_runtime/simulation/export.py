"""Session snapshot export / import and share links.

The session snapshot is the canvas without its history: agents (with their
code), transactions, positions, id counters, the clock and the enabled
agent set. Exporting and importing it reproduces the same agents,
transactions and positions exactly.

Versions:
- Version 1: agents without code, no enabled_agent_ids
- Version 2: agents carry code; enabled_agent_ids lists the agents that run

Imports are validated in full before the session is touched.
"""

from __future__ import annotations

import base64
import binascii
import copy
import json
import logging
from typing import TYPE_CHECKING, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
    model_validator,
)

from ..world.errors import MalformedSnapshotError, UnsupportedSnapshotVersionError
from ..world.models import AgentStatus, AgentType, TransactionState
from .types import SessionSnapshotData

if TYPE_CHECKING:
    from .session import CanvasSession

logger = logging.getLogger(__name__)

# Current session snapshot format version
SNAPSHOT_VERSION = 2
SUPPORTED_SNAPSHOT_VERSIONS: tuple[int, ...] = (1, 2)


# =============================================================================
# DOCUMENT SHAPE
# =============================================================================


class _AgentDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: StrictStr = Field(min_length=1)
    name: StrictStr
    type: AgentType = AgentType.REQUESTER
    template_id: StrictStr = "custom"
    icon: StrictStr = ""
    balance_micro: StrictInt = Field(ge=0)
    status: AgentStatus = AgentStatus.IDLE
    code: StrictStr = ""
    created_at: StrictInt = Field(default=0, ge=0)


class _TransactionDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: StrictStr = Field(min_length=1)
    source_id: StrictStr
    target_id: StrictStr
    amount_micro: StrictInt = Field(gt=0)
    service: StrictStr
    state: TransactionState
    created_at: StrictInt = Field(default=0, ge=0)
    updated_at: StrictInt = Field(default=0, ge=0)
    escrow_locked: StrictBool = False
    deliverable_hash: StrictStr | None = None
    deadline_ms: StrictInt | None = None


class _SessionDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: Literal[2]
    agents: list[_AgentDocument]
    transactions: list[_TransactionDocument]
    positions: dict[str, tuple[float, float]] = Field(default_factory=dict)
    counters: dict[str, StrictInt] = Field(default_factory=dict)
    tick: StrictInt = Field(default=0, ge=0)
    virtual_time_ms: StrictInt = Field(default=0, ge=0)
    tick_interval_ms: StrictInt = Field(default=2000, gt=0)
    rng_seed: StrictInt = 42
    enabled_agent_ids: list[StrictStr] | None = None

    @model_validator(mode="after")
    def check_references(self) -> "_SessionDocument":
        agent_ids = [a.id for a in self.agents]
        if len(set(agent_ids)) != len(agent_ids):
            raise ValueError("duplicate agent id")
        tx_ids = [tx.id for tx in self.transactions]
        if len(set(tx_ids)) != len(tx_ids):
            raise ValueError("duplicate transaction id")
        known = set(agent_ids)
        for tx in self.transactions:
            if tx.source_id not in known or tx.target_id not in known:
                raise ValueError(f"transaction {tx.id} references an unknown agent")
            if tx.source_id == tx.target_id:
                raise ValueError(f"transaction {tx.id} has source == target")
        for aid in self.positions:
            if aid not in known:
                raise ValueError(f"position for unknown agent {aid}")
        for aid in self.enabled_agent_ids or []:
            if aid not in known:
                raise ValueError(f"enabled agent {aid} does not exist")
        return self


# =============================================================================
# BUILD / PARSE
# =============================================================================


def session_snapshot(session: "CanvasSession") -> SessionSnapshotData:
    """The current session as a version 2 snapshot document."""
    ledger = session.ledger
    return {
        "version": SNAPSHOT_VERSION,
        "agents": [a.to_dict() for a in ledger.agents.values()],
        "transactions": [tx.to_dict() for tx in ledger.transactions.values()],
        "positions": {aid: [float(x), float(y)] for aid, (x, y) in ledger.positions.items()},
        "counters": session.ids.snapshot(),
        "tick": ledger.tick,
        "virtual_time_ms": ledger.virtual_time_ms,
        "tick_interval_ms": ledger.tick_interval_ms,
        "rng_seed": ledger.rng_seed,
        "enabled_agent_ids": sorted(session.enabled_agent_ids),
    }


def _migrate_v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    """Migrate version 1 snapshot to version 2 format.

    Version 1 lacks agent code and the enabled set - agents get empty code
    and every agent is enabled.
    """
    data["version"] = 2
    agents = data.get("agents")
    if isinstance(agents, list):
        for agent in agents:
            if isinstance(agent, dict):
                agent.setdefault("code", "")
        if data.get("enabled_agent_ids") is None:
            data["enabled_agent_ids"] = [
                a.get("id") for a in agents if isinstance(a, dict)
            ]
    return data


def parse_session(data: Any) -> SessionSnapshotData:
    """Validate a decoded snapshot document and return it as version 2.

    Raises:
        UnsupportedSnapshotVersionError: version is not 1 or 2.
        MalformedSnapshotError: anything else wrong with the document.
    """
    if not isinstance(data, dict):
        raise MalformedSnapshotError(f"top level must be an object, got {type(data).__name__}")
    if "version" not in data:
        raise MalformedSnapshotError("missing field 'version'")
    version = data["version"]
    if isinstance(version, bool) or not isinstance(version, int):
        raise MalformedSnapshotError(f"version must be an integer, got {version!r}")
    if version not in SUPPORTED_SNAPSHOT_VERSIONS:
        raise UnsupportedSnapshotVersionError(version, SUPPORTED_SNAPSHOT_VERSIONS)

    data = copy.deepcopy(data)
    if version == 1:
        data = _migrate_v1_to_v2(data)

    try:
        doc = _SessionDocument.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first["loc"]) or "document"
        raise MalformedSnapshotError(f"{where}: {first['msg']} ({e.error_count()} error(s))") from None

    dumped = doc.model_dump(mode="json")
    agents = dumped["agents"]
    transactions = []
    for tx in dumped["transactions"]:
        # Optional fields are omitted rather than null, as Transaction.to_dict() does
        transactions.append({k: v for k, v in tx.items() if v is not None})
    enabled = dumped["enabled_agent_ids"]
    if enabled is None:
        enabled = [a["id"] for a in agents]

    return {
        "version": SNAPSHOT_VERSION,
        "agents": agents,
        "transactions": transactions,
        "positions": {aid: [pos[0], pos[1]] for aid, pos in dumped["positions"].items()},
        "counters": dict(dumped["counters"]),
        "tick": dumped["tick"],
        "virtual_time_ms": dumped["virtual_time_ms"],
        "tick_interval_ms": dumped["tick_interval_ms"],
        "rng_seed": dumped["rng_seed"],
        "enabled_agent_ids": sorted(enabled),
    }


def to_ledger_snapshot(data: SessionSnapshotData) -> dict[str, Any]:
    """The ledger state a session snapshot describes (stopped, no events)."""
    return {
        "agents": copy.deepcopy(data["agents"]),
        "transactions": copy.deepcopy(data["transactions"]),
        "positions": copy.deepcopy(data["positions"]),
        "events": [],
        "tick": data["tick"],
        "virtual_time_ms": data["virtual_time_ms"],
        "tick_interval_ms": data["tick_interval_ms"],
        "is_running": False,
        "counters": dict(data["counters"]),
        "rng_seed": data["rng_seed"],
    }


# =============================================================================
# TEXT / SESSION
# =============================================================================


def export_session(session: "CanvasSession") -> str:
    return json.dumps(session_snapshot(session), indent=2)


def decode_session(text: str) -> SessionSnapshotData:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedSnapshotError(f"not valid JSON: {e}") from None
    return parse_session(data)


def import_session(session: "CanvasSession", text: str) -> SessionSnapshotData:
    """Replace the session's state with an exported snapshot.

    Raises:
        MalformedSnapshotError, UnsupportedSnapshotVersionError: before any
            change is made to ``session``.
    """
    data = decode_session(text)
    session.load_session_snapshot(data, reason="import")
    return data


# =============================================================================
# SHARE LINKS
# =============================================================================


def _share_document(snapshot: SessionSnapshotData | dict[str, Any]) -> dict[str, Any]:
    agents = sorted(
        ({k: v for k, v in a.items() if k != "code"} for a in snapshot.get("agents", [])),
        key=lambda a: a["id"],
    )
    transactions = sorted(snapshot.get("transactions", []), key=lambda tx: tx["id"])
    positions = {aid: snapshot["positions"][aid] for aid in sorted(snapshot.get("positions", {}))}
    doc = {k: v for k, v in snapshot.items() if k not in ("agents", "transactions", "positions")}
    doc["version"] = 1
    doc["agents"] = agents
    doc["transactions"] = transactions
    doc["positions"] = positions
    doc.pop("enabled_agent_ids", None)
    return doc


def encode_share(snapshot: SessionSnapshotData | dict[str, Any]) -> str:
    """URL-safe token for ``snapshot``, without agent code.

    The payload is a version 1 document (codeless) in compact, key-sorted
    JSON, so the same canvas always encodes to the same token.
    """
    text = json.dumps(_share_document(snapshot), separators=(",", ":"), sort_keys=True)
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def decode_share(token: str) -> SessionSnapshotData:
    """Decode a share token back into a validated version 2 snapshot.

    Raises:
        MalformedSnapshotError: the token is not valid base64 or JSON, or
            the document inside is malformed.
    """
    if not isinstance(token, str) or not token:
        raise MalformedSnapshotError("empty share token")
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise MalformedSnapshotError(f"share token is not decodable: {e}") from None
    return parse_session(data)
