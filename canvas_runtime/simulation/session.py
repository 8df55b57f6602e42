"""CanvasSession - the facade over one simulated canvas.

Owns every store (ledger, id generator, agent state, job queue), the tick
runtime, the scheduler, the undo history, the recorder and, while active,
the replay engine.

Mode rules:
- While a replay is active every live operation raises ReplayActiveError.
- Structural edits (deleting an agent, restoring history, loading a
  snapshot) raise SchedulerActiveError while the scheduler is running.
- Stop, reset, import, fork, load and entering replay bump the epoch, so
  a tick that is still executing applies nothing further.

Usage:
    session = CanvasSession()
    load_scenario(session, "basic")
    session.run_ticks(5)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..world import state_machine
from ..world.actions import (
    AddAgent,
    AddConnection,
    LoadState,
    RemoveAgent,
    RemoveConnection,
    ResetRuntime,
    StartRuntime,
    StopRuntime,
    UpdateAgentBalance,
    UpdateAgentCode,
    UpdateAgentPosition,
    UpdateAgentStatus,
    UpdateConnectionAmount,
)
from ..world.errors import (
    IllegalTransitionError,
    ReplayActiveError,
    SchedulerActiveError,
    TransactionValidationError,
)
from ..world.event_log import EventLog, EventRecorder, import_event_log
from ..world.executor import SandboxExecutor
from ..world.ids import DeterministicIdGenerator
from ..world.ledger import Ledger
from ..world.models import Agent, AgentStatus, AgentType, RuntimeEventType, Transaction
from ..world.services import ServiceJobQueue
from ..world.state_store import AgentStateStore
from . import history
from .export import session_snapshot, to_ledger_snapshot
from .history import HistoryManager
from .replay import ReplayEngine
from .runtime import AgentRuntime
from .scheduler import AbortCheck, TickScheduler
from .types import SessionSnapshotData, TickReport

logger = logging.getLogger(__name__)


class CanvasSession:
    """A live canvas: agents, transactions and the machinery that runs them."""

    def __init__(
        self,
        executor: SandboxExecutor | None = None,
        tick_interval_ms: int | None = None,
        mode: str | None = None,
    ) -> None:
        self.recorder = EventRecorder()
        self.ledger = Ledger(tick_interval_ms=tick_interval_ms, recorder=self.recorder)
        self.ids = DeterministicIdGenerator()
        self.state_store = AgentStateStore()
        self.job_queue = ServiceJobQueue()
        self.runtime = AgentRuntime(
            self.ledger, self.ids, self.state_store, self.job_queue, executor=executor
        )
        self.scheduler = TickScheduler(tick_interval_ms=self.ledger.tick_interval_ms, mode=mode)
        self.history = HistoryManager()
        self.enabled_agent_ids: set[str] = set()
        self.replay: ReplayEngine | None = None
        self.last_report: TickReport | None = None
        self.done = False

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @property
    def is_replaying(self) -> bool:
        return self.replay is not None

    def _require_live(self) -> None:
        if self.replay is not None:
            raise ReplayActiveError("Exit replay before changing the live session")

    def _require_stopped(self) -> None:
        self._require_live()
        if self.scheduler.is_active:
            raise SchedulerActiveError("Stop the scheduler first")

    def _checkpoint(self, label: str) -> None:
        self.history.push(history.capture(self, label))

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    @property
    def agents(self) -> dict[str, Agent]:
        return self.ledger.agents

    @property
    def transactions(self) -> dict[str, Transaction]:
        return self.ledger.transactions

    def add_agent(
        self,
        name: str,
        code: str = "",
        agent_type: AgentType | str = AgentType.REQUESTER,
        balance_micro: int = 0,
        template_id: str = "custom",
        icon: str = "",
        position: tuple[float, float] | None = None,
        enabled: bool = True,
    ) -> Agent:
        """Create an agent and return it. Its id is the next ``agent-N``."""
        self._require_live()
        if isinstance(balance_micro, bool) or not isinstance(balance_micro, int) or balance_micro < 0:
            raise TransactionValidationError(
                f"balance_micro must be a non-negative integer, got {balance_micro!r}",
                rule="balance_micro >= 0",
            )
        agent = Agent(
            id=self.ids.next("agent"),
            name=name,
            type=AgentType(agent_type),
            template_id=template_id,
            icon=icon,
            balance_micro=balance_micro,
            code=code,
            created_at=self.ledger.virtual_time_ms,
        )
        self.ledger.apply(AddAgent(agent, position))
        if enabled:
            self.enabled_agent_ids.add(agent.id)
        return agent

    def remove_agent(self, agent_id: str) -> None:
        """Delete an agent and every transaction it takes part in (undoable)."""
        self._require_stopped()
        self.ledger.get_agent(agent_id)
        self._checkpoint(f"remove {agent_id}")
        self.ledger.apply(RemoveAgent(agent_id))
        self.state_store.clear_agent(agent_id)
        self.enabled_agent_ids.discard(agent_id)

    def update_agent_code(self, agent_id: str, code: str) -> None:
        """Replace an agent's script; an errored agent goes back to idle."""
        self._require_live()
        agent = self.ledger.get_agent(agent_id)
        self.ledger.apply(UpdateAgentCode(agent_id, code))
        if agent.status is AgentStatus.ERROR:
            self.ledger.apply(UpdateAgentStatus(agent_id, AgentStatus.IDLE))

    def move_agent(self, agent_id: str, x: float, y: float) -> None:
        self._require_live()
        self.ledger.get_agent(agent_id)
        self.ledger.apply(UpdateAgentPosition(agent_id, x, y))

    def set_agent_enabled(self, agent_id: str, enabled: bool) -> None:
        self._require_live()
        self.ledger.get_agent(agent_id)
        if enabled:
            self.enabled_agent_ids.add(agent_id)
        else:
            self.enabled_agent_ids.discard(agent_id)

    def set_balance(self, agent_id: str, balance_micro: int) -> None:
        self._require_stopped()
        self.ledger.get_agent(agent_id)
        self.ledger.apply(UpdateAgentBalance(agent_id, balance_micro))

    def get_agent_state(self, agent_id: str) -> dict[str, Any]:
        return self.state_store.get(agent_id)

    # ------------------------------------------------------------------
    # Manual transaction actions
    # ------------------------------------------------------------------

    def create_transaction(
        self,
        source_id: str,
        provider_id: str,
        amount_micro: int,
        service: str,
        deadline_ms: int | None = None,
    ) -> Transaction:
        """Create an INITIATED transaction from the UI rather than a script."""
        self._require_stopped()
        self.ledger.get_agent(source_id)
        self.ledger.get_agent(provider_id)
        params: dict[str, Any] = {
            "source": source_id,
            "provider": provider_id,
            "amount_micro": amount_micro,
            "service": service,
        }
        if deadline_ms is not None:
            params["deadline_ms"] = deadline_ms
        # Validate before minting so a rejected call leaves the counter alone
        state_machine.create(params, "tx-0", now_ms=self.ledger.virtual_time_ms)
        tx = state_machine.create(params, self.ids.next("tx"), now_ms=self.ledger.virtual_time_ms)
        self.ledger.apply(AddConnection(tx))
        self.runtime.add_event(
            RuntimeEventType.ACTION, f"Transaction created: {tx.service}",
            agent_id=source_id, transaction_id=tx.id, amount=tx.amount_micro,
        )
        return tx

    def remove_transaction(self, tx_id: str) -> None:
        """Delete a transaction that is still INITIATED or QUOTED (undoable)."""
        self._require_stopped()
        tx = self.ledger.get_transaction(tx_id)
        state_machine.require_editable(tx, "remove")
        self._checkpoint(f"remove {tx_id}")
        self.ledger.apply(RemoveConnection(tx_id))
        self.runtime.add_event(
            RuntimeEventType.ACTION, f"Transaction removed: {tx.service}",
            agent_id=tx.source_id, transaction_id=tx_id,
        )

    def update_transaction_amount(self, tx_id: str, amount_micro: int) -> Transaction:
        """Re-price a transaction before it is committed."""
        self._require_stopped()
        repriced = state_machine.reprice(self.ledger.get_transaction(tx_id), amount_micro)
        self.ledger.apply(UpdateConnectionAmount(tx_id, repriced.amount_micro))
        self.runtime.add_event(
            RuntimeEventType.ACTION, f"Transaction amount updated: {repriced.amount_micro}",
            agent_id=repriced.source_id, transaction_id=tx_id, amount=repriced.amount_micro,
        )
        return self.ledger.get_transaction(tx_id)

    def advance_transaction(self, tx_id: str) -> Transaction:
        """Move a transaction one step along the happy path (or resolve a dispute)."""
        self._require_stopped()
        tx = self.ledger.get_transaction(tx_id)
        target = state_machine.next_manual_state(tx.state)
        if target is None:
            raise IllegalTransitionError(tx.id, tx.state.value, tx.state.value, "no next state")
        return self.runtime.transition_transaction(tx_id, target, "manual advance")

    def cancel_transaction(self, tx_id: str) -> Transaction:
        self._require_stopped()
        state_machine.cancel(self.ledger.get_transaction(tx_id))
        return self.runtime.transition_transaction(tx_id, "CANCELLED", "cancelled by user")

    def dispute_transaction(self, tx_id: str, reason: str = "") -> Transaction:
        self._require_stopped()
        state_machine.dispute(self.ledger.get_transaction(tx_id))
        return self.runtime.transition_transaction(tx_id, "DISPUTED", reason or "disputed by user")

    def resolve_dispute(self, tx_id: str) -> Transaction:
        """Mediator resolution: pay out a DISPUTED transaction."""
        self._require_stopped()
        state_machine.resolve_dispute(self.ledger.get_transaction(tx_id))
        return self.runtime.transition_transaction(tx_id, "SETTLED", "dispute resolved")

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def _tick(self, should_abort: AbortCheck) -> bool:
        """One scheduler tick. Returns True when the run is finished."""
        if self.runtime.check_all_done(self.enabled_agent_ids):
            self.runtime.complete_run()
            self.scheduler.running = False
            self.done = True
            self.last_report = TickReport(tick=self.ledger.tick, done=True)
            return True
        if not self.ledger.is_running:
            self.ledger.apply(StartRuntime(sorted(self.enabled_agent_ids & set(self.ledger.agents))))
        self.last_report = self.runtime.run_tick(self.enabled_agent_ids, should_abort)
        return False

    def step(self) -> TickReport | None:
        """Run exactly one tick (undoable with step_back()).

        Returns:
            The tick report, or None if a tick was already in flight.
        """
        self._require_live()
        if self.scheduler.running:
            raise SchedulerActiveError("Cannot step while the scheduler is running")
        if self.scheduler.in_flight:
            logger.debug("Step skipped, tick %d is already in flight", self.ledger.tick + 1)
            return None
        self._checkpoint(f"step {self.ledger.tick + 1}")
        self.scheduler.try_tick(self._tick)
        return self.last_report

    def run_ticks(self, n: int) -> int:
        """Step up to ``n`` ticks, stopping early when the run finishes."""
        executed = 0
        for _ in range(n):
            self.step()
            executed += 1
            if self.done:
                break
        return executed

    def start(self) -> None:
        """Switch to auto mode; ticks are driven by run()."""
        self._require_live()
        if self.scheduler.running:
            return
        self._checkpoint("start")
        self.done = False
        self.scheduler.start()
        if not self.ledger.is_running:
            self.ledger.apply(StartRuntime(sorted(self.enabled_agent_ids & set(self.ledger.agents))))

    def stop(self) -> None:
        self.scheduler.stop("stop")
        if self.replay is None and self.ledger.is_running:
            self.ledger.apply(StopRuntime())

    async def run(self, max_ticks: int | None = None, delay: float | None = None) -> int:
        """Run in auto mode until done, stopped, or ``max_ticks`` ticks."""
        self.start()
        return await self.scheduler.run_forever(self._tick, max_ticks=max_ticks, delay=delay)

    def run_sync(self, max_ticks: int | None = None, delay: float = 0) -> int:
        """Synchronous wrapper around run() using asyncio.run()."""
        return asyncio.run(self.run(max_ticks=max_ticks, delay=delay))

    def step_back(self) -> bool:
        """Undo the most recent step/start/delete. Returns False if history is empty."""
        self._require_live()
        self.scheduler.bump_epoch("step back")
        entry = self.history.pop()
        if entry is None:
            return False
        history.restore(self, entry)
        self.done = False
        return True

    def reset(self) -> None:
        """Rewind the clock, clear events, stores and history; keep agents and transactions."""
        self._require_live()
        self.scheduler.bump_epoch("reset")
        self.ledger.apply(ResetRuntime())
        self.state_store.clear()
        self.job_queue.clear()
        self.history.clear()
        self.runtime.reset_dedupe()
        self.runtime.error_stats.clear()
        self.done = False

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> SessionSnapshotData:
        return session_snapshot(self)

    def load_session_snapshot(self, data: SessionSnapshotData, reason: str = "load") -> None:
        """Replace the session with an already validated snapshot document."""
        self._require_live()
        self.scheduler.bump_epoch(reason)
        self._checkpoint(reason)
        ledger_snapshot = to_ledger_snapshot(data)
        self.ledger.apply(LoadState(ledger_snapshot))
        self.state_store.clear()
        self.job_queue.clear()
        self.enabled_agent_ids = set(data["enabled_agent_ids"])
        self.ids.reset()
        self.ids.restore(data["counters"])
        self.ids.sync_from_snapshot(ledger_snapshot)
        self.runtime.reset_dedupe()
        self.done = False

    # ------------------------------------------------------------------
    # Recording and replay
    # ------------------------------------------------------------------

    @property
    def is_recording(self) -> bool:
        return self.recorder.is_recording

    def start_recording(self) -> None:
        self._require_live()
        self.recorder.start_recording(self.ledger.snapshot())

    def stop_recording(self) -> EventLog:
        return self.recorder.stop_recording(self.ledger.snapshot())

    def enter_replay(self, log: EventLog) -> ReplayEngine:
        """Stop everything live and start replaying ``log``."""
        self.scheduler.bump_epoch("enter replay")
        if self.recorder.is_recording:
            self.recorder.stop_recording(self.ledger.snapshot())
        if self.ledger.is_running:
            self.ledger.apply(StopRuntime())
        self.state_store.clear()
        self.job_queue.clear()
        self.enabled_agent_ids = set()
        self.history.clear()
        self.runtime.reset_dedupe()

        engine = ReplayEngine()
        engine.load(log)
        self.replay = engine
        return engine

    def import_log(self, text: str) -> ReplayEngine:
        """Validate an exported event log and replay it.

        Raises:
            MalformedLogError, UnsupportedLogVersionError: before the live
                session is touched.
        """
        log = import_event_log(text)
        return self.enter_replay(log)

    def exit_replay(self) -> None:
        """Adopt the replayed state as the live state."""
        if self.replay is None:
            return
        state = self.replay.get_state()
        self.replay = None
        state["is_running"] = False
        self.ledger.apply(LoadState(state))
        self.ids.reset()
        self.ids.sync_from_snapshot(state)
        self.enabled_agent_ids = set(self.ledger.agents)
        self.done = False
        logger.info("Replay exited at tick %d", self.ledger.tick)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict[str, Any]:
        return {
            "tick": self.ledger.tick,
            "virtual_time_ms": self.ledger.virtual_time_ms,
            "agents": len(self.ledger.agents),
            "transactions": len(self.ledger.transactions),
            "enabled": sorted(self.enabled_agent_ids),
            "replaying": self.replay is not None,
            "recording": self.recorder.is_recording,
            "history": len(self.history),
            "pending_jobs": self.job_queue.pending_count(),
            "scheduler": self.scheduler.get_status(),
            "done": self.done,
        }

    def balance(self, agent_id: str) -> int:
        return self.ledger.balance(agent_id)

    def __repr__(self) -> str:
        return f"CanvasSession({self.ledger!r}, enabled={sorted(self.enabled_agent_ids)})"
