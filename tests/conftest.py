"""Pytest fixtures for canvas_runtime tests.

Common fixtures for testing the canvas runtime.
"""

from __future__ import annotations

# Load environment variables from .env before any tests run
from dotenv import load_dotenv

load_dotenv()

from typing import Any, Callable, Iterator

import pytest

from canvas_runtime.config import reset_config
from canvas_runtime.simulation.scenarios import provider_code, requester_code
from canvas_runtime.simulation.session import CanvasSession
from canvas_runtime.world.actions import AddAgent, AddConnection
from canvas_runtime.world.executor import AgentContext, SandboxExecutor
from canvas_runtime.world.ids import DeterministicIdGenerator
from canvas_runtime.world.ledger import Ledger
from canvas_runtime.world.models import Agent, Transaction, TransactionState
from canvas_runtime.world.services import ServiceJobQueue

# $1,000 in micro-units
RICH = 1_000_000_000


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: multi-component scenario tests (session + runtime + stores)"
    )


@pytest.fixture(autouse=True)
def fresh_config() -> Iterator[None]:
    """Each test starts from config/config.yaml; overrides do not leak."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def ledger() -> Ledger:
    """A ledger with two idle agents and no transactions.

    - agent-1: $1,000
    - agent-2: $0
    """
    ledger = Ledger(tick_interval_ms=2000, max_events=1000)
    ledger.apply(AddAgent(Agent(id="agent-1", name="Alice", balance_micro=RICH), (100.0, 200.0)))
    ledger.apply(AddAgent(Agent(id="agent-2", name="Bob", balance_micro=0), (400.0, 200.0)))
    return ledger


@pytest.fixture
def make_tx(ledger: Ledger) -> Callable[..., Transaction]:
    """Factory adding a transaction agent-1 -> agent-2 to the ledger fixture."""
    counter = {"n": 0}

    def factory(
        state: TransactionState = TransactionState.INITIATED,
        amount_micro: int = 10_000_000,
        service: str = "echo",
        escrow_locked: bool = False,
    ) -> Transaction:
        counter["n"] += 1
        tx = Transaction(
            id=f"tx-{counter['n']}",
            source_id="agent-1",
            target_id="agent-2",
            amount_micro=amount_micro,
            service=service,
            state=state,
            escrow_locked=escrow_locked,
        )
        ledger.apply(AddConnection(tx))
        return tx

    return factory


@pytest.fixture
def executor() -> SandboxExecutor:
    """Sandbox executor with a short timeout."""
    return SandboxExecutor(timeout=2)


@pytest.fixture
def make_context(ledger: Ledger) -> Callable[..., AgentContext]:
    """Factory building a ctx for an agent of the ledger fixture."""

    def factory(
        agent_id: str = "agent-1",
        state: dict[str, Any] | None = None,
        ids: DeterministicIdGenerator | None = None,
        job_queue: ServiceJobQueue | None = None,
        tick: int = 1,
        **limits: Any,
    ) -> AgentContext:
        agent = ledger.get_agent(agent_id)
        return AgentContext(
            agent=agent,
            tick=tick,
            now_ms=ledger.virtual_time_ms,
            balance=agent.balance_micro,
            transactions=ledger.transactions_for(agent_id),
            state=state if state is not None else {},
            ids=ids or DeterministicIdGenerator(),
            agent_ids=list(ledger.agents),
            job_queue=job_queue if job_queue is not None else ServiceJobQueue(),
            **limits,
        )

    return factory


@pytest.fixture
def session() -> CanvasSession:
    """An empty session in step mode."""
    return CanvasSession(mode="step")


@pytest.fixture
def two_agent_session(session: CanvasSession) -> CanvasSession:
    """Requester (agent-1, $1,000) paying provider (agent-2, $0) $10 for "echo"."""
    session.add_agent(
        "Requester",
        code=requester_code("agent-2", 10_000_000, "echo"),
        agent_type="requester",
        balance_micro=RICH,
        position=(100.0, 200.0),
    )
    session.add_agent(
        "Provider",
        code=provider_code(),
        agent_type="provider",
        balance_micro=0,
        position=(400.0, 200.0),
    )
    return session
