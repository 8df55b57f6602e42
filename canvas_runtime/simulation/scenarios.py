"""Built-in agent templates and canned scenarios.

Templates are ordinary agent scripts. Each one keeps its progress in
ctx.state so a verb is issued once, not on every tick.

Scenarios build a session snapshot document; load_scenario() swaps it into
a session the same way an import does (new epoch, stores cleared).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from ..world.models import AgentType
from .export import SNAPSHOT_VERSION
from .types import SessionSnapshotData

if TYPE_CHECKING:
    from .session import CanvasSession

logger = logging.getLogger(__name__)

# $1,000 and $10 in micro-units
DEFAULT_REQUESTER_BALANCE = 1_000_000_000
DEFAULT_AMOUNT = 10_000_000


# =============================================================================
# TEMPLATES
# =============================================================================

_REQUESTER = '''\
PROVIDER = {provider!r}
AMOUNT = {amount!r}
SERVICE = {service!r}
DISPUTE = {dispute!r}


def run(ctx):
    state = ctx.state
    if "tx_id" not in state:
        tx_id = ctx.create_transaction(provider=PROVIDER, amount_micro=AMOUNT, service=SERVICE)
        ctx.transition_state(tx_id, "COMMITTED")
        state["tx_id"] = tx_id
        return

    tx = None
    for view in ctx.outgoing_transactions:
        if view["id"] == state["tx_id"]:
            tx = view
    if tx is None:
        ctx.warn("Transaction " + state["tx_id"] + " is gone")
        return

    if tx["state"] == "DELIVERED" and not state.get("reviewed"):
        state["reviewed"] = True
        if DISPUTE:
            ctx.initiate_dispute(tx["id"], "deliverable does not match the request")
        else:
            ctx.log("Deliverable accepted: " + str(tx["deliverable_hash"]))
            ctx.release_escrow(tx["id"])
    elif tx["state"] in ("SETTLED", "CANCELLED"):
        ctx.log("Transaction " + tx["id"] + " finished: " + tx["state"])
    else:
        ctx.log("Waiting on " + tx["id"] + " (" + tx["state"] + ")")
'''

_PROVIDER = '''\
PREFIX = {prefix!r}
DELAY = {delay!r}


def run(ctx):
    deliverables = ctx.state.setdefault("deliverables", {{}})
    started = ctx.state.setdefault("committed_at", {{}})
    for tx in ctx.incoming_transactions:
        if tx["state"] == "COMMITTED":
            since = started.setdefault(tx["id"], ctx.tick)
            if ctx.tick - since < DELAY:
                ctx.log("Preparing to start " + tx["id"] + " (" + tx["service"] + ")")
            else:
                ctx.transition_state(tx["id"], "IN_PROGRESS")
        elif tx["state"] == "IN_PROGRESS" and tx["id"] not in deliverables:
            deliverables[tx["id"]] = PREFIX + tx["service"] + " for " + tx["source_id"]
            ctx.transition_state(tx["id"], "DELIVERED")
        elif tx["state"] == "CANCELLED" and tx["id"] in started:
            started.pop(tx["id"])
            ctx.warn("Transaction " + tx["id"] + " was cancelled by " + tx["source_id"])
    ctx.log("Balance: " + str(ctx.balance))
'''

_BUYER = '''\
PATIENCE = {patience!r}
SEQUENTIAL = {sequential!r}


def run(ctx):
    committed = ctx.state.setdefault("committed", {{}})
    busy = False
    for tx in ctx.outgoing_transactions:
        if tx["state"] in ("COMMITTED", "IN_PROGRESS"):
            busy = True

    for tx in ctx.outgoing_transactions:
        tx_id = tx["id"]
        if tx["state"] in ("INITIATED", "QUOTED") and tx_id not in committed:
            if SEQUENTIAL and busy:
                continue
            ctx.log("Committing funds for " + tx["service"])
            ctx.transition_state(tx_id, "COMMITTED")
            committed[tx_id] = ctx.tick
            busy = True
        elif tx["state"] == "COMMITTED" and PATIENCE is not None and tx_id in committed:
            if ctx.tick - committed[tx_id] >= PATIENCE:
                ctx.warn("No progress on " + tx_id + " after " + str(PATIENCE) + " ticks, cancelling")
                ctx.cancel_transaction(tx_id)
        elif tx["state"] == "DELIVERED":
            ctx.log("Received delivery for " + tx["service"])
            ctx.release_escrow(tx_id)
    ctx.log("Balance: " + str(ctx.balance))
'''

_AUTONOMOUS = '''\
PROVIDER = {provider!r}
AMOUNT = {amount!r}
SERVICE = {service!r}


def run(ctx):
    delegated = ctx.state.setdefault("delegated", {{}})
    ready = ctx.state.setdefault("ready", [])
    deliverables = ctx.state.setdefault("deliverables", {{}})

    # Upstream work: accept, delegate, deliver once the sub-task settled
    for tx in ctx.incoming_transactions:
        tx_id = tx["id"]
        if tx["state"] == "COMMITTED" and tx_id not in delegated:
            ctx.transition_state(tx_id, "IN_PROGRESS")
            sub_id = ctx.create_transaction(
                provider=PROVIDER, amount_micro=AMOUNT, service=SERVICE + " (sub-task)"
            )
            ctx.transition_state(sub_id, "COMMITTED")
            delegated[tx_id] = sub_id
            ctx.log("Delegated " + tx_id + " to " + PROVIDER + " as " + sub_id)
        elif tx["state"] == "IN_PROGRESS" and tx_id in ready:
            ready.remove(tx_id)
            deliverables[tx_id] = tx["service"] + " via " + delegated[tx_id]
            ctx.transition_state(tx_id, "DELIVERED")

    # Sub-tasks: pay the specialist and mark the upstream job ready
    for tx in ctx.outgoing_transactions:
        if tx["state"] != "DELIVERED":
            continue
        ctx.release_escrow(tx["id"])
        for upstream_id, sub_id in delegated.items():
            if sub_id == tx["id"]:
                ready.append(upstream_id)
                ctx.log("Sub-task " + sub_id + " done, " + upstream_id + " ready to deliver")
    ctx.log("Balance: " + str(ctx.balance))
'''

_TRANSLATOR = '''\
TEXT = {text!r}
TARGET_LANG = {lang!r}


def run(ctx):
    jobs = ctx.state.get("jobs", {{}})
    waiting = ctx.state.setdefault("waiting", {{}})
    deliverables = ctx.state.setdefault("deliverables", {{}})
    for tx in ctx.incoming_transactions:
        tx_id = tx["id"]
        if tx["state"] == "COMMITTED":
            ctx.transition_state(tx_id, "IN_PROGRESS")
            waiting[tx_id] = ctx.services.translate({{"text": TEXT, "to": TARGET_LANG}})
        elif tx["state"] == "IN_PROGRESS" and tx_id in waiting:
            job = jobs.get(waiting[tx_id])
            if job is None or job["status"] == "pending":
                ctx.log("Translation pending for " + tx_id)
            elif job["status"] == "completed":
                deliverables[tx_id] = job["result"]["text"]
                waiting.pop(tx_id)
                ctx.transition_state(tx_id, "DELIVERED")
            else:
                ctx.error("Translation failed: " + str(job["error"]))
                waiting.pop(tx_id)
                ctx.cancel_transaction(tx_id)
'''

_VALIDATOR = '''\
def run(ctx):
    seen = ctx.state.setdefault("settled", [])
    for tx in ctx.transactions:
        if tx["state"] == "SETTLED" and tx["id"] not in seen:
            seen.append(tx["id"])
            ctx.log("Validated " + tx["id"] + " hash=" + str(tx["deliverable_hash"]))
    ctx.log("Validated " + str(len(seen)) + " transaction(s)")
'''


def requester_code(
    provider: str,
    amount_micro: int = DEFAULT_AMOUNT,
    service: str = "echo",
    dispute: bool = False,
) -> str:
    return _REQUESTER.format(provider=provider, amount=amount_micro, service=service, dispute=dispute)


def provider_code(prefix: str = "Completed ", delay_ticks: int = 0) -> str:
    """Provider script; ``delay_ticks`` holds committed work that long before starting it."""
    return _PROVIDER.format(prefix=prefix, delay=delay_ticks)


def buyer_code(patience: int | None = None, sequential: bool = False) -> str:
    """Commits transactions someone else opened on its behalf and releases on delivery.

    ``patience`` cancels a committed transaction nobody started after that
    many ticks. ``sequential`` keeps at most one transaction in flight.
    """
    return _BUYER.format(patience=patience, sequential=sequential)


def autonomous_code(
    provider: str,
    amount_micro: int = DEFAULT_AMOUNT,
    service: str = "translate",
) -> str:
    """Takes work as a provider and buys the actual service from ``provider``."""
    return _AUTONOMOUS.format(provider=provider, amount=amount_micro, service=service)


def translator_code(text: str = "Hello, world", lang: str = "es") -> str:
    return _TRANSLATOR.format(text=text, lang=lang)


def validator_code() -> str:
    return _VALIDATOR


@dataclass(frozen=True)
class AgentTemplate:
    template_id: str
    agent_type: AgentType
    icon: str
    build: Callable[..., str]


TEMPLATES: dict[str, AgentTemplate] = {
    "requester": AgentTemplate("requester", AgentType.REQUESTER, "R", requester_code),
    "provider": AgentTemplate("provider", AgentType.PROVIDER, "P", provider_code),
    "buyer": AgentTemplate("buyer", AgentType.REQUESTER, "B", buyer_code),
    "autonomous": AgentTemplate("autonomous", AgentType.REQUESTER, "A", autonomous_code),
    "translator": AgentTemplate("translator", AgentType.PROVIDER, "T", translator_code),
    "validator": AgentTemplate("validator", AgentType.VALIDATOR, "V", validator_code),
}


# =============================================================================
# SCENARIOS
# =============================================================================


def _agent(
    agent_id: str,
    name: str,
    template: str,
    code: str,
    balance_micro: int,
) -> dict[str, object]:
    tpl = TEMPLATES[template]
    return {
        "id": agent_id,
        "name": name,
        "type": tpl.agent_type.value,
        "template_id": tpl.template_id,
        "icon": tpl.icon,
        "balance_micro": balance_micro,
        "status": "idle",
        "code": code,
        "created_at": 0,
    }


def _transaction(
    tx_id: str,
    source_id: str,
    target_id: str,
    amount_micro: int,
    service: str,
) -> dict[str, object]:
    return {
        "id": tx_id,
        "source_id": source_id,
        "target_id": target_id,
        "amount_micro": amount_micro,
        "service": service,
        "state": "INITIATED",
        "created_at": 0,
        "updated_at": 0,
        "escrow_locked": False,
    }


def _document(
    agents: list[dict[str, object]],
    transactions: list[dict[str, object]] | None = None,
    tick_interval_ms: int = 2000,
) -> SessionSnapshotData:
    ids = [str(a["id"]) for a in agents]
    counters = {"agent": len(agents) + 1}
    if transactions:
        counters["tx"] = len(transactions) + 1
    return {
        "version": SNAPSHOT_VERSION,
        "agents": agents,
        "transactions": list(transactions or []),
        "positions": {aid: [100.0 + 300.0 * i, 200.0] for i, aid in enumerate(ids)},
        "counters": counters,
        "tick": 0,
        "virtual_time_ms": 0,
        "tick_interval_ms": tick_interval_ms,
        "rng_seed": 42,
        "enabled_agent_ids": sorted(ids),
    }


def basic_scenario() -> SessionSnapshotData:
    """Requester pays provider for an echo service; escrow released on delivery."""
    return _document([
        _agent("agent-1", "Requester", "requester",
               requester_code("agent-2", DEFAULT_AMOUNT, "echo"), DEFAULT_REQUESTER_BALANCE),
        _agent("agent-2", "Provider", "provider", provider_code(), 0),
    ])


def dispute_scenario() -> SessionSnapshotData:
    """Requester disputes the delivery; the transaction waits for a mediator."""
    return _document([
        _agent("agent-1", "Requester", "requester",
               requester_code("agent-2", DEFAULT_AMOUNT, "echo", dispute=True), DEFAULT_REQUESTER_BALANCE),
        _agent("agent-2", "Provider", "provider", provider_code(), 0),
    ])


def translate_scenario() -> SessionSnapshotData:
    """Provider fulfils the request through the translate service."""
    return _document([
        _agent("agent-1", "Requester", "requester",
               requester_code("agent-2", DEFAULT_AMOUNT, "translate"), DEFAULT_REQUESTER_BALANCE),
        _agent("agent-2", "Translator", "translator", translator_code(), 0),
        _agent("agent-3", "Validator", "validator", validator_code(), 0),
    ])


def marketplace_scenario() -> SessionSnapshotData:
    """One buyer with two open orders; both providers work in parallel."""
    return _document(
        [
            _agent("agent-1", "Buyer", "buyer", buyer_code(), 200_000_000),
            _agent("agent-2", "Translator", "provider", provider_code("Translated: "), 0),
            _agent("agent-3", "Data Analyst", "provider", provider_code("Analysis: "), 0),
        ],
        [
            _transaction("tx-1", "agent-1", "agent-2", 25_000_000, "Document Translation"),
            _transaction("tx-2", "agent-1", "agent-3", 50_000_000, "Market Research"),
        ],
    )


def pipeline_scenario() -> SessionSnapshotData:
    """A coordinator funds research first and analysis only once research settled."""
    return _document(
        [
            _agent("agent-1", "Coordinator", "buyer", buyer_code(sequential=True), 150_000_000),
            _agent("agent-2", "Researcher", "provider", provider_code("Research: "), 0),
            _agent("agent-3", "Analyst", "provider", provider_code("Analysis: "), 0),
        ],
        [
            _transaction("tx-1", "agent-1", "agent-2", 20_000_000, "Market Research"),
            _transaction("tx-2", "agent-1", "agent-3", 30_000_000, "Data Analysis"),
        ],
    )


def cancellation_scenario() -> SessionSnapshotData:
    """The provider never gets going; the client cancels and is refunded."""
    return _document(
        [
            _agent("agent-1", "Cautious Client", "buyer", buyer_code(patience=2), 100_000_000),
            _agent("agent-2", "Slow Provider", "provider", provider_code(delay_ticks=5), 0),
        ],
        [_transaction("tx-1", "agent-1", "agent-2", 15_000_000, "Report Writing")],
    )


def autonomous_orchestrator_scenario() -> SessionSnapshotData:
    """An agent sells a translation and subcontracts it to a specialist."""
    return _document(
        [
            _agent("agent-1", "Client", "buyer", buyer_code(), 100_000_000),
            _agent("agent-2", "Orchestrator", "autonomous",
                   autonomous_code("agent-3", 20_000_000, "Spanish Translation"), 50_000_000),
            _agent("agent-3", "Translator", "provider", provider_code("Translated: "), 0),
        ],
        [_transaction("tx-1", "agent-1", "agent-2", 30_000_000, "Document Translation")],
    )


SCENARIOS: dict[str, Callable[[], SessionSnapshotData]] = {
    "basic": basic_scenario,
    "dispute": dispute_scenario,
    "translate": translate_scenario,
    "marketplace": marketplace_scenario,
    "pipeline": pipeline_scenario,
    "cancellation": cancellation_scenario,
    "autonomous-orchestrator": autonomous_orchestrator_scenario,
}


def list_scenarios() -> list[str]:
    return sorted(SCENARIOS)


def build_scenario(name: str) -> SessionSnapshotData:
    builder = SCENARIOS.get(name)
    if builder is None:
        raise KeyError(f"Unknown scenario {name!r} (available: {', '.join(list_scenarios())})")
    return builder()


def load_scenario(session: "CanvasSession", name: str) -> SessionSnapshotData:
    """Replace ``session``'s state with scenario ``name``."""
    data = build_scenario(name)
    session.load_session_snapshot(data, reason=f"fork {name}")
    logger.info("Loaded scenario %s (%d agents)", name, len(data["agents"]))
    return data
