"""Transaction state machine - pure functions over Transaction values.

Nothing here touches the ledger. Every function takes a Transaction and
returns a new one (or raises), so the same code validates an agent's call
synchronously inside the sandbox and applies it later in the runtime.

State graph:

    INITIATED   -> QUOTED | COMMITTED | CANCELLED
    QUOTED      -> COMMITTED | CANCELLED
    COMMITTED   -> IN_PROGRESS | DELIVERED | CANCELLED
    IN_PROGRESS -> DELIVERED | CANCELLED
    DELIVERED   -> SETTLED | DISPUTED
    DISPUTED    -> SETTLED          (mediator resolution, never release_escrow)
    SETTLED, CANCELLED: terminal

Money:

    COMMITTED   source debited by the full amount (escrow lock)
    SETTLED     target credited with amount - fee
    CANCELLED   source refunded in full, only if escrow was locked

    fee = max(amount * fee_rate_bps // 10000, fee_floor_micro), capped at amount
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from ..config import get
from .errors import ErrorCode, IllegalTransitionError, TransactionValidationError
from .models import Transaction, TransactionState

S = TransactionState

TRANSITIONS: dict[TransactionState, frozenset[TransactionState]] = {
    S.INITIATED: frozenset({S.QUOTED, S.COMMITTED, S.CANCELLED}),
    S.QUOTED: frozenset({S.COMMITTED, S.CANCELLED}),
    S.COMMITTED: frozenset({S.IN_PROGRESS, S.DELIVERED, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.DELIVERED, S.CANCELLED}),
    S.DELIVERED: frozenset({S.SETTLED, S.DISPUTED}),
    S.DISPUTED: frozenset({S.SETTLED}),
    S.SETTLED: frozenset(),
    S.CANCELLED: frozenset(),
}

# States in which the source's funds sit in escrow
ESCROW_HELD_STATES: frozenset[TransactionState] = frozenset(
    {S.COMMITTED, S.IN_PROGRESS, S.DELIVERED, S.DISPUTED}
)

# No money has moved yet; the transaction can still be deleted or re-priced
EDITABLE_STATES: frozenset[TransactionState] = frozenset({S.INITIATED, S.QUOTED})

HAPPY_PATH: tuple[TransactionState, ...] = (
    S.INITIATED, S.COMMITTED, S.IN_PROGRESS, S.DELIVERED, S.SETTLED,
)


@dataclass(frozen=True)
class BalanceDelta:
    """Balance changes produced by a settlement, keyed by agent id."""

    changes: dict[str, int] = field(default_factory=dict)
    fee: int = 0

    def for_agent(self, agent_id: str) -> int:
        return self.changes.get(agent_id, 0)


def parse_state(value: TransactionState | str) -> TransactionState:
    """Coerce a state name into a TransactionState or raise a validation error."""
    if isinstance(value, TransactionState):
        return value
    if not isinstance(value, str):
        raise TransactionValidationError(
            f"state must be a string, got {type(value).__name__}",
            rule="state is a known TransactionState",
            code=ErrorCode.INVALID_TYPE,
        )
    try:
        return TransactionState(value.strip().upper())
    except ValueError:
        valid = ", ".join(s.value for s in TransactionState)
        raise TransactionValidationError(
            f"invalid state {value!r}. Valid states: {valid}",
            rule="state is a known TransactionState",
        ) from None


def is_valid_transition(from_state: TransactionState, to_state: TransactionState) -> bool:
    return to_state in TRANSITIONS.get(from_state, frozenset())


def allowed_next_states(state: TransactionState) -> frozenset[TransactionState]:
    return TRANSITIONS.get(state, frozenset())


def next_manual_state(state: TransactionState) -> TransactionState | None:
    """State a manual "advance" moves to: the happy path, or SETTLED for a dispute."""
    if state is S.DISPUTED:
        return S.SETTLED
    if state is S.QUOTED:
        return S.COMMITTED
    if state in HAPPY_PATH and state is not S.SETTLED:
        return HAPPY_PATH[HAPPY_PATH.index(state) + 1]
    return None


def compute_fee(
    amount_micro: int,
    fee_rate_bps: int | None = None,
    fee_floor_micro: int | None = None,
) -> int:
    """Settlement fee for ``amount_micro``.

    Integer arithmetic only. The fee never exceeds the amount, so the
    provider's payout is never negative.
    """
    rate = fee_rate_bps if fee_rate_bps is not None else int(get("escrow.fee_rate_bps", 100))
    floor = fee_floor_micro if fee_floor_micro is not None else int(get("escrow.fee_floor_micro", 50_000))
    fee = max(amount_micro * rate // 10_000, floor)
    return min(fee, amount_micro)


def _require_str(params: Mapping[str, Any], key: str, aliases: tuple[str, ...] = ()) -> str:
    value = params.get(key)
    for alias in aliases:
        if value is None:
            value = params.get(alias)
    if value is None:
        raise TransactionValidationError(
            f"{key} is required", rule=f"{key} present", code=ErrorCode.MISSING_ARGUMENT
        )
    if not isinstance(value, str):
        raise TransactionValidationError(
            f"{key}: expected string, got {type(value).__name__}",
            rule=f"{key} is a string",
            code=ErrorCode.INVALID_TYPE,
        )
    if not value.strip():
        raise TransactionValidationError(f"{key} cannot be empty", rule=f"{key} non-empty")
    return value.strip()


def validate_amount(value: Any) -> int:
    """Return ``value`` as a positive integer amount or raise."""
    if value is None:
        raise TransactionValidationError(
            "amount_micro is required", rule="amount_micro present", code=ErrorCode.MISSING_ARGUMENT
        )
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TransactionValidationError(
            f"amount_micro: expected integer, got {type(value).__name__}",
            rule="amount_micro is an integer",
            code=ErrorCode.INVALID_TYPE,
        )
    if isinstance(value, float) and not value.is_integer():
        raise TransactionValidationError(
            f"amount_micro must be an integer number of micro-units, got {value}",
            rule="amount_micro is an integer",
        )
    amount = int(value)
    if amount <= 0:
        raise TransactionValidationError(
            f"Invalid amount: {amount} (must be > 0)", rule="amount_micro > 0"
        )
    return amount


def create(params: Mapping[str, Any], tx_id: str, now_ms: int = 0) -> Transaction:
    """Build a new INITIATED transaction from ``params``.

    Expected keys: ``source`` (or ``source_id``), ``provider`` (or
    ``target_id``), ``amount_micro`` (or ``amountMicro`` / ``amount``),
    ``service``, and optionally ``deadline_ms``.

    Raises:
        TransactionValidationError: naming the violated rule.
    """
    source = _require_str(params, "source", aliases=("source_id",))
    target = _require_str(params, "provider", aliases=("target_id",))
    if source == target:
        raise TransactionValidationError(
            f"source and target must differ (both {source!r})",
            rule="source != target",
            code=ErrorCode.SELF_TRANSACTION,
        )
    raw_amount = params.get("amount_micro")
    if raw_amount is None:
        raw_amount = params.get("amountMicro", params.get("amount"))
    amount = validate_amount(raw_amount)
    service = _require_str(params, "service")

    deadline = params.get("deadline_ms", params.get("deadlineMs"))
    if deadline is not None:
        if isinstance(deadline, bool) or not isinstance(deadline, (int, float)) or deadline <= 0:
            raise TransactionValidationError(
                f"deadline_ms must be a positive number, got {deadline!r}",
                rule="deadline_ms > 0",
            )
        deadline = int(deadline)

    return Transaction(
        id=tx_id,
        source_id=source,
        target_id=target,
        amount_micro=amount,
        service=service,
        state=S.INITIATED,
        created_at=now_ms,
        updated_at=now_ms,
        deadline_ms=deadline,
    )


def transition(
    tx: Transaction,
    new_state: TransactionState | str,
    reason: str = "",
    now_ms: int | None = None,
) -> Transaction:
    """Move ``tx`` along one edge of the graph.

    The escrow flag follows the state: set on entering COMMITTED, cleared on
    SETTLED and CANCELLED.

    Raises:
        IllegalTransitionError: if the edge is not in the graph (including
            any move out of a terminal state).
    """
    target = parse_state(new_state)
    if not is_valid_transition(tx.state, target):
        detail = reason
        if tx.state.is_terminal:
            detail = f"{tx.state.value} is terminal"
        raise IllegalTransitionError(tx.id, tx.state.value, target.value, detail)

    escrow_locked = tx.escrow_locked
    if target is S.COMMITTED:
        escrow_locked = True
    elif target.is_terminal:
        escrow_locked = False

    return replace(
        tx,
        state=target,
        updated_at=tx.updated_at if now_ms is None else now_ms,
        escrow_locked=escrow_locked,
    )


def cancel(tx: Transaction, now_ms: int | None = None) -> Transaction:
    """Cancel a transaction that has not been delivered yet."""
    if tx.state in (S.DELIVERED, S.DISPUTED):
        raise IllegalTransitionError(
            tx.id, tx.state.value, S.CANCELLED.value, "cannot cancel after delivery, use dispute instead"
        )
    return transition(tx, S.CANCELLED, "cancel", now_ms)


def dispute(tx: Transaction, now_ms: int | None = None) -> Transaction:
    """Raise a dispute on a delivered transaction."""
    if tx.state is not S.DELIVERED:
        raise IllegalTransitionError(
            tx.id, tx.state.value, S.DISPUTED.value, "can only dispute from DELIVERED"
        )
    return transition(tx, S.DISPUTED, "dispute", now_ms)


def release(tx: Transaction, now_ms: int | None = None) -> Transaction:
    """Release escrow: the DELIVERED -> SETTLED edge and nothing else."""
    if tx.state is not S.DELIVERED:
        raise IllegalTransitionError(
            tx.id, tx.state.value, S.SETTLED.value, "release_escrow requires DELIVERED"
        )
    return transition(tx, S.SETTLED, "release_escrow", now_ms)


def resolve_dispute(tx: Transaction, now_ms: int | None = None) -> Transaction:
    """Mediator resolution: DISPUTED -> SETTLED."""
    if tx.state is not S.DISPUTED:
        raise IllegalTransitionError(
            tx.id, tx.state.value, S.SETTLED.value, "only a DISPUTED transaction can be resolved"
        )
    return transition(tx, S.SETTLED, "resolve_dispute", now_ms)


def require_editable(tx: Transaction, change: str) -> None:
    """Raise unless ``tx`` is still INITIATED or QUOTED (nothing in escrow)."""
    if tx.state not in EDITABLE_STATES:
        raise TransactionValidationError(
            f"Cannot {change} transaction {tx.id} in state {tx.state.value}; "
            f"only INITIATED or QUOTED transactions can be changed",
            rule="state in (INITIATED, QUOTED)",
        )


def reprice(tx: Transaction, amount_micro: Any, now_ms: int | None = None) -> Transaction:
    """A copy of an uncommitted ``tx`` with a new positive amount."""
    require_editable(tx, "re-price")
    amount = validate_amount(amount_micro)
    return replace(tx, amount_micro=amount, updated_at=tx.updated_at if now_ms is None else now_ms)


def settle(
    tx: Transaction,
    now_ms: int | None = None,
    fee_rate_bps: int | None = None,
    fee_floor_micro: int | None = None,
) -> tuple[Transaction, BalanceDelta]:
    """Settle ``tx`` and report who gets paid.

    The source was already debited at commit time, so its delta is zero;
    the target receives ``amount - fee``.
    """
    settled = transition(tx, S.SETTLED, "settle", now_ms)
    fee = compute_fee(tx.amount_micro, fee_rate_bps, fee_floor_micro)
    delta = BalanceDelta(
        changes={tx.target_id: tx.amount_micro - fee, tx.source_id: 0},
        fee=fee,
    )
    return settled, delta


def refund_due(previous: TransactionState, new: TransactionState) -> bool:
    """True when moving ``previous`` -> ``new`` must return escrowed funds."""
    return new is S.CANCELLED and previous in (S.COMMITTED, S.IN_PROGRESS)
