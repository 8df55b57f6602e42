"""AgentRuntime - executes one tick over all enabled agents.

Handles:
- Running each enabled agent's script in ascending id order
- Turning script logs into RuntimeEvents (with optional info-log dedupe)
- Applying queued operations through the transaction state machine,
  including the escrow balance effects
- Deliverable hashing on DELIVERED
- Service job processing and publishing
- Persisting id counters and advancing the virtual clock

Every ledger change goes through Ledger.apply(), so a recording of the
session captures all of it.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Callable, Iterable

from ..config import get
from ..world import state_machine
from ..world.actions import (
    AddConnection,
    AddRuntimeEvent,
    SetIdCounter,
    StopRuntime,
    TickRuntime,
    UpdateAgentBalance,
    UpdateAgentStatus,
    UpdateConnectionHash,
    UpdateConnectionState,
)
from ..world.errors import (
    CanvasError,
    CapabilityError,
    ErrorCode,
    IllegalTransitionError,
    execution_error,
    validation_error,
)
from ..world.executor import (
    OP_CANCEL,
    OP_CREATE_TX,
    OP_DISPUTE,
    OP_RELEASE_ESCROW,
    OP_SUBMIT_JOB,
    OP_TRANSITION_STATE,
    AgentContext,
    ExecutionResult,
    SandboxExecutor,
)
from ..world.ids import DeterministicIdGenerator
from ..world.ledger import Ledger
from ..world.models import (
    AgentStatus,
    RuntimeEvent,
    RuntimeEventType,
    Transaction,
    TransactionState,
)
from ..world.services import ServiceJobQueue
from ..world.state_store import AgentStateStore
from .types import ErrorStats, TickReport

logger = logging.getLogger(__name__)

S = TransactionState

_ERROR_CODES: dict[str, ErrorCode] = {
    "syntax": ErrorCode.SYNTAX_ERROR,
    "forbidden": ErrorCode.FORBIDDEN_SYNTAX,
    "timeout": ErrorCode.TIMEOUT,
    "state": ErrorCode.QUOTA_EXCEEDED,
}


def _never_abort() -> bool:
    return False


class AgentRuntime:
    """Applies agent behaviour to a ledger, one tick at a time.

    Owns no state of its own beyond the info-log dedupe memory; the ledger,
    id generator and stores belong to the session and are passed in.
    """

    def __init__(
        self,
        ledger: Ledger,
        ids: DeterministicIdGenerator,
        state_store: AgentStateStore,
        job_queue: ServiceJobQueue,
        executor: SandboxExecutor | None = None,
        dedupe_info_logs: bool | None = None,
    ) -> None:
        self.ledger = ledger
        self.ids = ids
        self.state_store = state_store
        self.job_queue = job_queue
        self.executor = executor or SandboxExecutor()
        self.dedupe_info_logs = (
            dedupe_info_logs if dedupe_info_logs is not None
            else bool(get("runtime.dedupe_info_logs", True))
        )
        self.error_stats = ErrorStats()
        # agent id -> [last info message, suppressed repeats]
        self._last_info: dict[str, list[Any]] = {}

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @property
    def current_tick(self) -> int:
        """Number of the tick being executed (ticks are numbered from 1)."""
        return self.ledger.tick + 1

    def add_event(
        self,
        event_type: RuntimeEventType,
        message: str,
        agent_id: str | None = None,
        transaction_id: str | None = None,
        **payload: Any,
    ) -> RuntimeEvent:
        event = RuntimeEvent(
            id=self.ids.next("event"),
            type=event_type,
            timestamp=self.ledger.virtual_time_ms,
            tick=self.current_tick,
            agent_id=agent_id,
            transaction_id=transaction_id,
            payload={"message": message, **payload},
        )
        self.ledger.apply(AddRuntimeEvent(event))
        return event

    def _flush_info_repeats(self, agent_id: str) -> None:
        entry = self._last_info.get(agent_id)
        if entry and entry[1] > 0:
            self.add_event(
                RuntimeEventType.ACTION,
                f"(previous message repeated {entry[1]} more time(s))",
                agent_id=agent_id,
                level="info",
            )
            entry[1] = 0

    def _emit_logs(self, agent_id: str, logs: Iterable[dict[str, str]], no_op_run: bool) -> None:
        for entry in logs:
            level = entry.get("level", "info")
            message = entry.get("message", "")
            if level == "info" and no_op_run and self.dedupe_info_logs:
                last = self._last_info.get(agent_id)
                if last is not None and last[0] == message:
                    last[1] += 1
                    continue
                self._flush_info_repeats(agent_id)
                self._last_info[agent_id] = [message, 0]
            else:
                self._flush_info_repeats(agent_id)
                if level == "info":
                    self._last_info.pop(agent_id, None)

            event_type = RuntimeEventType.ERROR if level == "error" else RuntimeEventType.ACTION
            self.add_event(event_type, message, agent_id=agent_id, level=level)

    def reset_dedupe(self) -> None:
        self._last_info.clear()

    def dedupe_snapshot(self) -> dict[str, list[Any]]:
        return {aid: list(entry) for aid, entry in self._last_info.items()}

    def restore_dedupe(self, memory: dict[str, list[Any]]) -> None:
        self._last_info = {aid: list(entry) for aid, entry in memory.items()}

    # ------------------------------------------------------------------
    # Transactions and escrow
    # ------------------------------------------------------------------

    def _balance(self, agent_id: str, cache: dict[str, int] | None) -> int:
        if cache is not None and agent_id in cache:
            return cache[agent_id]
        return self.ledger.balance(agent_id)

    def _set_balance(self, agent_id: str, value: int, cache: dict[str, int] | None) -> None:
        self.ledger.apply(UpdateAgentBalance(agent_id, value))
        if cache is not None:
            cache[agent_id] = value

    def transition_transaction(
        self,
        tx_id: str,
        new_state: TransactionState | str,
        reason: str = "",
        balance_cache: dict[str, int] | None = None,
    ) -> Transaction:
        """Move a transaction and apply the escrow effects of the move.

        - COMMITTED: debit the source by the full amount. If the source
          cannot pay, emit an error event and cancel instead.
        - SETTLED: credit the target with amount - fee.
        - CANCELLED from COMMITTED/IN_PROGRESS: refund the source.

        Raises:
            IllegalTransitionError: the move is not an edge of the graph.
            EntityNotFoundError: unknown transaction.
        """
        tx = self.ledger.get_transaction(tx_id)
        target = state_machine.parse_state(new_state)
        now = self.ledger.virtual_time_ms
        moved = state_machine.transition(tx, target, reason, now)

        if target is S.COMMITTED:
            balance = self._balance(tx.source_id, balance_cache)
            if balance < tx.amount_micro:
                self.add_event(
                    RuntimeEventType.ERROR,
                    "Insufficient funds - cannot commit",
                    agent_id=tx.source_id,
                    transaction_id=tx.id,
                    error=validation_error(
                        "Insufficient funds - cannot commit",
                        ErrorCode.INSUFFICIENT_FUNDS,
                        balance=balance,
                        required=tx.amount_micro,
                    ),
                )
                cancelled = state_machine.transition(tx, S.CANCELLED, "insufficient funds", now)
                self.ledger.apply(UpdateConnectionState(cancelled))
                self._state_event(tx, cancelled, "insufficient funds")
                return cancelled
            self.ledger.apply(UpdateConnectionState(moved))
            self._set_balance(tx.source_id, balance - tx.amount_micro, balance_cache)
            self._state_event(tx, moved, reason)
            self.add_event(
                RuntimeEventType.STATE_CHANGE, "Escrow locked",
                agent_id=tx.source_id, transaction_id=tx.id, amount=tx.amount_micro,
            )
            return moved

        if target is S.SETTLED:
            settled, delta = state_machine.settle(tx, now)
            self.ledger.apply(UpdateConnectionState(settled))
            payout = delta.for_agent(tx.target_id)
            self._set_balance(
                tx.target_id, self._balance(tx.target_id, balance_cache) + payout, balance_cache
            )
            self._state_event(tx, settled, reason)
            self.add_event(
                RuntimeEventType.STATE_CHANGE, "Payment received",
                agent_id=tx.target_id, transaction_id=tx.id, amount=payout, fee=delta.fee,
            )
            return settled

        self.ledger.apply(UpdateConnectionState(moved))
        if state_machine.refund_due(tx.state, target):
            self._set_balance(
                tx.source_id, self._balance(tx.source_id, balance_cache) + tx.amount_micro, balance_cache
            )
            self._state_event(tx, moved, reason)
            self.add_event(
                RuntimeEventType.STATE_CHANGE, "Escrow refunded",
                agent_id=tx.source_id, transaction_id=tx.id, amount=tx.amount_micro,
            )
            return moved
        self._state_event(tx, moved, reason)
        return moved

    def _state_event(self, before: Transaction, after: Transaction, reason: str) -> None:
        message = f"{before.id}: {before.state.value} -> {after.state.value}"
        if reason:
            message = f"{message} ({reason})"
        self.add_event(
            RuntimeEventType.STATE_CHANGE, message,
            transaction_id=before.id,
            from_state=before.state.value,
            to_state=after.state.value,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _party_transaction(self, agent_id: str, tx_id: str) -> Transaction:
        tx = self.ledger.get_transaction(tx_id)
        if agent_id not in (tx.source_id, tx.target_id):
            raise CapabilityError(f"{agent_id} is not a party to {tx_id}")
        return tx

    def apply_op(
        self,
        agent_id: str,
        op: dict[str, Any],
        balance_cache: dict[str, int],
        delivered: list[str],
    ) -> None:
        """Apply one queued operation from ``agent_id``'s run.

        Raises on anything the live ledger will not accept; the caller marks
        the agent errored and drops the rest of its queue.
        """
        kind = op.get("type")
        if kind == OP_CREATE_TX:
            tx_params = op["tx"]
            self.ledger.get_agent(tx_params["provider"])
            tx = state_machine.create(
                {**tx_params, "source": agent_id}, tx_params["id"], now_ms=self.ledger.virtual_time_ms
            )
            self.ledger.apply(AddConnection(tx))
            self.ids.sync_from_ids([tx.id])
            self.add_event(
                RuntimeEventType.ACTION, f"Transaction created: {tx.service}",
                agent_id=agent_id, transaction_id=tx.id, amount=tx.amount_micro,
            )
        elif kind == OP_TRANSITION_STATE:
            tx = self._party_transaction(agent_id, op["tx_id"])
            target = state_machine.parse_state(op["state"])
            if tx.state is S.DISPUTED:
                raise IllegalTransitionError(
                    tx.id, tx.state.value, target.value, "disputes are resolved by a mediator"
                )
            self.transition_transaction(tx.id, target, "agent code execution", balance_cache)
            if target is S.DELIVERED:
                delivered.append(tx.id)
        elif kind == OP_RELEASE_ESCROW:
            tx = self._party_transaction(agent_id, op["tx_id"])
            state_machine.release(tx)
            self.transition_transaction(tx.id, S.SETTLED, "release_escrow", balance_cache)
        elif kind == OP_CANCEL:
            tx = self._party_transaction(agent_id, op["tx_id"])
            state_machine.cancel(tx)
            self.transition_transaction(tx.id, S.CANCELLED, "cancelled by agent", balance_cache)
        elif kind == OP_DISPUTE:
            tx = self._party_transaction(agent_id, op["tx_id"])
            state_machine.dispute(tx)
            self.transition_transaction(tx.id, S.DISPUTED, op.get("reason") or "dispute", balance_cache)
        elif kind == OP_SUBMIT_JOB:
            job = op["job"]
            self.job_queue.submit(
                agent_id, job["job_type"], job["params"], job_id=job["id"], tick=self.current_tick
            )
            self.ids.sync_from_ids([job["id"]])
            self.add_event(
                RuntimeEventType.ACTION, f"Submitted {job['job_type']} job: {job['id']}",
                agent_id=agent_id,
            )
        else:
            raise ValueError(f"Unknown operation type: {kind!r}")

    def _record_deliverables(self, agent_id: str, delivered: list[str]) -> None:
        state = self.state_store.get(agent_id)
        deliverables = state.get("deliverables")
        for tx_id in delivered:
            content: str | None = None
            if isinstance(deliverables, dict) and isinstance(deliverables.get(tx_id), str):
                content = deliverables[tx_id]
            elif isinstance(state.get("deliverable"), str):
                content = state["deliverable"]
            if not content:
                continue
            digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
            self.ledger.apply(UpdateConnectionHash(tx_id, digest))
            self.add_event(
                RuntimeEventType.ACTION, f"Deliverable SHA-256: {digest[:16]}...",
                agent_id=agent_id, transaction_id=tx_id, deliverable_hash=digest,
            )

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def check_all_done(self, enabled_ids: Iterable[str]) -> bool:
        """True when the run should stop.

        - no enabled agents, or an enabled agent in error: done
        - no transactions touch an enabled agent: not done
        - otherwise done once every such transaction is SETTLED or CANCELLED
        """
        enabled = [aid for aid in sorted(enabled_ids) if aid in self.ledger.agents]
        if not enabled:
            return True
        if any(self.ledger.agents[aid].status is AgentStatus.ERROR for aid in enabled):
            return True
        members = set(enabled)
        relevant = [
            tx for tx in self.ledger.transactions.values()
            if tx.source_id in members or tx.target_id in members
        ]
        if not relevant:
            return False
        return all(tx.state.is_terminal for tx in relevant)

    def complete_run(self) -> None:
        """Stop the runtime and mark running agents completed."""
        if self.ledger.is_running:
            running = [
                aid for aid, agent in self.ledger.agents.items()
                if agent.status is AgentStatus.RUNNING
            ]
            self.ledger.apply(StopRuntime())
            for aid in running:
                self.ledger.apply(UpdateAgentStatus(aid, AgentStatus.COMPLETED))
        self.add_event(RuntimeEventType.SYSTEM, "All agents completed")

    def _fail_agent(self, agent_id: str, result: ExecutionResult) -> None:
        error_type = result.get("error_type", "runtime")
        message = result.get("error", "Execution error")
        self.ledger.apply(UpdateAgentStatus(agent_id, AgentStatus.ERROR))
        self.add_event(
            RuntimeEventType.ERROR, message, agent_id=agent_id, error_type=error_type,
            error=execution_error(message, _ERROR_CODES.get(error_type, ErrorCode.RUNTIME_ERROR)),
        )
        self.error_stats.record_error(self.current_tick, error_type, agent_id, message)

    def run_tick(
        self,
        enabled_ids: Iterable[str],
        should_abort: Callable[[], bool] = _never_abort,
    ) -> TickReport:
        """Run every enabled agent once and advance the clock.

        If ``should_abort`` turns true part-way through, the remaining work is
        dropped and the clock does not advance.
        """
        tick = self.current_tick
        report = TickReport(tick=tick)

        # Jobs that came due are visible to agents in this tick
        report.jobs_completed = len(self.job_queue.process(tick))
        self.job_queue.publish(self.state_store)
        self.job_queue.clear_completed()

        enabled = set(enabled_ids)
        agents = [
            agent for aid, agent in sorted(self.ledger.agents.items())
            if aid in enabled and agent.code.strip() and agent.status is not AgentStatus.ERROR
        ]
        balance_cache = {aid: agent.balance_micro for aid, agent in self.ledger.agents.items()}
        known_ids = list(self.ledger.agents)

        for agent in agents:
            if should_abort():
                logger.debug("Tick %d aborted before %s (epoch changed)", tick, agent.id)
                report.aborted = True
                return report

            ctx = AgentContext(
                agent=agent,
                tick=tick,
                now_ms=self.ledger.virtual_time_ms,
                balance=balance_cache.get(agent.id, agent.balance_micro),
                transactions=self.ledger.transactions_for(agent.id),
                state=self.state_store.get(agent.id),
                ids=self.ids,
                agent_ids=known_ids,
                job_queue=self.job_queue,
            )
            try:
                result = self.executor.execute(agent.code, ctx)
            except Exception as e:  # exception-ok: an executor fault fails only this agent
                logger.exception("Executor failed while running %s", agent.id)
                result = {
                    "success": False,
                    "error": f"Executor error: {type(e).__name__}: {e}",
                    "error_type": "runtime",
                    "logs": [],
                    "ops": [],
                }

            if should_abort():
                logger.debug("Discarding stale result from %s (epoch changed)", agent.id)
                report.aborted = True
                return report

            report.agents_run.append(agent.id)
            ops = result.get("ops", []) if result.get("success") else []
            self._emit_logs(agent.id, result.get("logs", []), no_op_run=bool(result.get("success")) and not ops)

            if not result.get("success"):
                report.failed_agents.append(agent.id)
                self._fail_agent(agent.id, result)
                continue

            self.state_store.set(agent.id, result.get("final_state", {}))

            delivered: list[str] = []
            for op in ops:
                if should_abort():
                    report.aborted = True
                    return report
                try:
                    self.apply_op(agent.id, op, balance_cache, delivered)
                except (CanvasError, ValueError, KeyError) as e:
                    report.failed_agents.append(agent.id)
                    self.ledger.apply(UpdateAgentStatus(agent.id, AgentStatus.ERROR))
                    message = f"Runtime rejected operation ({op.get('type')}): {e}"
                    self.add_event(
                        RuntimeEventType.ERROR, message, agent_id=agent.id,
                        error=execution_error(message, ErrorCode.OPERATION_REJECTED),
                    )
                    self.error_stats.record_error(tick, "rejected", agent.id, message)
                    delivered = []
                    break
                report.ops_applied += 1

            if delivered:
                self._record_deliverables(agent.id, delivered)

        if should_abort():
            report.aborted = True
            return report

        # Newly submitted jobs show up as pending
        self.job_queue.publish(self.state_store)

        self.ledger.apply(SetIdCounter(self.ids.snapshot()))
        self.ledger.apply(TickRuntime(self.ledger.tick_interval_ms))
        return report
