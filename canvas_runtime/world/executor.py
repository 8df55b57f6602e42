"""SandboxExecutor - runs one agent script for one tick

Uses standard Python exec() with:
- A restricted builtins table (no open/eval/exec/compile/input, no
  globals/locals/vars, no getattr/setattr/delattr)
- A controlled __import__ that only admits the configured whitelist
- Whitelisted modules pre-loaded into the namespace
- Per-run read-only views of those modules, so nothing a script does to
  them reaches the host process
- A static AST check that rejects private and frame attribute access,
  attribute assignment other than ctx.state, async code and
  global/nonlocal
- Timeout protection (configurable via signal). Once the timer fires,
  every further line of script code raises again, so the timeout cannot
  be caught and ignored

The script sees a single capability object, ``ctx``. Verbs on ctx are
validated immediately against the agent's own projected view and queued
as operations; the runtime applies the queue only after the script
finishes without raising.

A script is either plain top-level code using ``ctx``, or defines
``run(ctx)``, which is called after the module body executes.
"""

from __future__ import annotations

import ast
import builtins
import collections
import copy
import functools
import importlib
import itertools
import json
import logging
import math
import operator
import re
import signal
import string
import time
from contextlib import contextmanager
from types import FrameType, MappingProxyType, ModuleType
from typing import Any, Callable, Generator, Iterable, Mapping, TypedDict

from ..config import get
from . import state_machine
from .errors import (
    CapabilityError,
    ErrorCode,
    IllegalTransitionError,
    QueueFullError,
    TransactionValidationError,
)
from .ids import DeterministicIdGenerator
from .models import Agent, Transaction, TransactionState
from .services import ServiceJobQueue

logger = logging.getLogger(__name__)

__all__ = [
    "AgentContext",
    "ExecutionResult",
    "SandboxExecutor",
    "check_syntax",
    "get_executor",
]


# =============================================================================
# Results
# =============================================================================


class LogEntry(TypedDict):
    level: str
    message: str


class ExecutionResult(TypedDict, total=False):
    """Result from running an agent script.

    - ops: queued operations, empty unless success is True
    - final_state: the agent's persistent state after the run (success only)
    - error_type: "syntax", "forbidden", "timeout", "runtime" or "state"
    """
    success: bool
    error: str
    error_type: str
    logs: list[LogEntry]
    ops: list[dict[str, Any]]
    final_state: dict[str, Any]
    execution_time_ms: float


# Operation kinds queued by ctx verbs
OP_CREATE_TX = "CREATE_TX"
OP_TRANSITION_STATE = "TRANSITION_STATE"
OP_RELEASE_ESCROW = "RELEASE_ESCROW"
OP_CANCEL = "CANCEL"
OP_DISPUTE = "DISPUTE"
OP_SUBMIT_JOB = "SUBMIT_JOB"

OP_TYPES: frozenset[str] = frozenset({
    OP_CREATE_TX, OP_TRANSITION_STATE, OP_RELEASE_ESCROW, OP_CANCEL, OP_DISPUTE, OP_SUBMIT_JOB,
})


def _format_runtime_error(e: BaseException, prefix: str = "Runtime error") -> str:
    """Format a script error with a hint for common mistakes.

    Args:
        e: The exception that occurred
        prefix: Error prefix like "Runtime error" or "Execution error"
    """
    error_type = type(e).__name__
    error_msg = str(e)
    base = f"{prefix}: {error_type}: {error_msg}"

    if isinstance(e, TransactionValidationError) and e.code is ErrorCode.ILLEGAL_TRANSITION:
        return (
            f"{base}. "
            f"Hint: Check tx['state'] before acting, and guard the call with ctx.state "
            f"so it does not repeat on the next tick."
        )
    elif isinstance(e, CapabilityError):
        return f"{base}. Hint: The runtime rejected this ctx call; nothing from this run was applied."
    elif isinstance(e, ImportError):
        return (
            f"{base}. "
            f"Hint: Only these modules can be imported: {', '.join(get_preloaded_names())}."
        )
    elif isinstance(e, NameError):
        return (
            f"{base}. "
            f"Hint: open, eval, exec, compile, input, globals, locals, vars and "
            f"getattr/setattr are not available inside agent code."
        )
    elif isinstance(e, AttributeError) and "has no attribute" in error_msg:
        return f"{base}. Hint: Check the spelling; ctx verbs use snake_case or camelCase names."
    elif isinstance(e, KeyError):
        return (
            f"{base}. "
            f"Hint: The key doesn't exist. Use dict.get(key, default), e.g. ctx.state.get('jobs', {{}})."
        )
    elif isinstance(e, TypeError) and "argument" in error_msg.lower():
        return (
            f"{base}. "
            f"Hint: Check the call signature - you may have wrong number/type of arguments."
        )
    elif isinstance(e, IndexError):
        return (
            f"{base}. "
            f"Hint: Check list lengths before indexing, e.g. if ctx.transactions: ..."
        )

    return base


# =============================================================================
# Namespace
# =============================================================================


AVAILABLE_MODULES: dict[str, ModuleType] = {
    "math": math,
    "json": json,
    "re": re,
    "itertools": itertools,
    "functools": functools,
    "collections": collections,
    "string": string,
    "operator": operator,
}

# Look attributes up by string, past check_syntax
HIDDEN_MODULE_ATTRS: dict[str, frozenset[str]] = {
    "operator": frozenset({"attrgetter", "methodcaller"}),
    "string": frozenset({"Formatter"}),
}

# Removed from the builtins table handed to scripts
BLOCKED_BUILTINS: frozenset[str] = frozenset({
    "open", "eval", "exec", "compile", "input", "breakpoint",
    "globals", "locals", "vars",
    "getattr", "setattr", "delattr",
    "memoryview", "help", "exit", "quit", "__import__", "__loader__", "__spec__",
    "BaseException", "BaseExceptionGroup", "SystemExit", "KeyboardInterrupt", "GeneratorExit",
})

# Lead from generators, coroutines and tracebacks back into host frames
FRAME_ATTRIBUTES: frozenset[str] = frozenset({
    "gi_frame", "gi_code", "gi_yieldfrom",
    "cr_frame", "cr_code", "cr_await", "cr_origin",
    "ag_frame", "ag_code", "ag_await",
    "tb_frame", "tb_next",
    "f_back", "f_locals", "f_globals", "f_builtins", "f_code", "f_trace",
})

# Run while an exception unwinds, or during garbage collection
BLOCKED_METHODS: frozenset[str] = frozenset({
    "__del__", "__enter__", "__exit__", "__aenter__", "__aexit__",
})

# Exception classes a script may name in an except clause
CATCHABLE_BUILTINS: frozenset[str] = frozenset(
    name for name, value in vars(builtins).items()
    if name not in BLOCKED_BUILTINS and isinstance(value, type) and issubclass(value, Exception)
)


def get_preloaded_names() -> list[str]:
    return list(get("executor.preloaded_imports") or list(AVAILABLE_MODULES))


def get_preloaded_modules(names: Iterable[str] | None = None) -> dict[str, ModuleType]:
    """Modules both pre-loaded into the namespace and importable by scripts."""
    modules: dict[str, ModuleType] = {}
    for name in names if names is not None else get_preloaded_names():
        if name in AVAILABLE_MODULES:
            modules[name] = AVAILABLE_MODULES[name]
        else:
            modules[name] = importlib.import_module(name)
    return modules


class ModuleView:
    """Read-only stand-in for a whitelisted module, built fresh for each run.

    Exposes the module's public attributes except submodules and the
    names listed in HIDDEN_MODULE_ATTRS.
    """

    def __init__(self, module: ModuleType) -> None:
        hidden = HIDDEN_MODULE_ATTRS.get(module.__name__, frozenset())
        members = {
            name: value for name, value in vars(module).items()
            if not name.startswith("_") and name not in hidden and not isinstance(value, ModuleType)
        }
        object.__setattr__(self, "_ModuleView__name", module.__name__)
        object.__setattr__(self, "_ModuleView__members", MappingProxyType(members))

    def __getattr__(self, name: str) -> Any:
        try:
            return self.__members[name]
        except KeyError:
            raise AttributeError(f"module '{self.__name}' has no attribute '{name}'") from None

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"module '{self.__name}' is read-only in agent code")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"module '{self.__name}' is read-only in agent code")

    def __dir__(self) -> list[str]:
        return sorted(self.__members)

    def __repr__(self) -> str:
        return f"<module '{self.__name}' (read-only)>"


def _make_controlled_import(allowed_modules: Mapping[str, ModuleView]) -> Callable[..., ModuleView]:
    """Create an import function that only allows whitelisted modules."""
    def _controlled_import(
        name: str,
        globals: dict[str, Any] | None = None,
        locals: dict[str, Any] | None = None,
        fromlist: tuple[str, ...] = (),
        level: int = 0
    ) -> ModuleView:
        if level == 0 and name in allowed_modules:
            return allowed_modules[name]
        raise ImportError(f"import of {name!r} is not allowed in agent code")
    return _controlled_import


def _safe_builtins(allowed_modules: Mapping[str, ModuleView]) -> dict[str, Any]:
    table = {k: v for k, v in vars(builtins).items() if k not in BLOCKED_BUILTINS}
    table["__import__"] = _make_controlled_import(allowed_modules)
    return table


def _attribute_problem(attr: str) -> str | None:
    if attr.startswith("_"):
        return f"access to private attribute '{attr}'"
    if attr in FRAME_ATTRIBUTES:
        return f"access to frame attribute '{attr}'"
    return None


def _bound_names(tree: ast.AST) -> set[str]:
    """Every name the script assigns, defines or deletes anywhere."""
    names: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and not isinstance(node.ctx, ast.Load):
            names.add(node.id)
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(node.name)
        elif isinstance(node, ast.arg):
            names.add(node.arg)
        elif isinstance(node, ast.ImportFrom):
            names.update(alias.asname or alias.name for alias in node.names)
        elif isinstance(node, ast.Import):
            # "import json" rebinds json to the same view
            names.update(alias.asname for alias in node.names if alias.asname)
        elif isinstance(node, ast.ExceptHandler) and node.name:
            names.add(node.name)
        elif isinstance(node, (ast.MatchAs, ast.MatchStar)) and node.name:
            names.add(node.name)
        elif isinstance(node, ast.MatchMapping) and node.rest:
            names.add(node.rest)
    return names


def _is_catchable(node: ast.expr, bound: set[str], modules: Mapping[str, ModuleType]) -> bool:
    """An except clause may only name exception classes that are sure to resolve.

    Anything else could raise while an exception is being matched and
    replace it with one the script goes on to catch.
    """
    if isinstance(node, ast.Tuple):
        return all(_is_catchable(elt, bound, modules) for elt in node.elts)
    if isinstance(node, ast.Name):
        return node.id in CATCHABLE_BUILTINS and node.id not in bound
    if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name):
        module = modules.get(node.value.id)
        if module is None or node.value.id in bound:
            return False
        hidden = HIDDEN_MODULE_ATTRS.get(module.__name__, frozenset())
        value = getattr(module, node.attr, None) if node.attr not in hidden else None
        return isinstance(value, type) and issubclass(value, Exception)
    return False


def _is_ctx_state(node: ast.Attribute) -> bool:
    return isinstance(node.value, ast.Name) and node.value.id == "ctx" and node.attr == "state"


def check_syntax(tree: ast.AST, modules: Mapping[str, ModuleType] | None = None) -> list[str]:
    """Return a description of every forbidden construct in ``tree``.

    ``modules`` are the whitelisted modules whose exception classes an
    except clause may name, e.g. ``json.JSONDecodeError``.
    """
    if modules is None:
        modules = get_preloaded_modules()
    bound = _bound_names(tree)
    problems: list[str] = []
    for node in ast.walk(tree):
        line = getattr(node, "lineno", "?")
        if isinstance(node, ast.Attribute):
            problem = _attribute_problem(node.attr)
            if problem is None and not isinstance(node.ctx, ast.Load) and not _is_ctx_state(node):
                problem = f"assignment to attribute '{node.attr}' (only ctx.state may be reassigned)"
            if problem:
                problems.append(f"line {line}: {problem}")
        elif isinstance(node, ast.MatchClass):
            for attr in node.kwd_attrs:
                problem = _attribute_problem(attr)
                if problem:
                    problems.append(f"line {line}: {problem}")
        elif isinstance(node, ast.Name) and node.id.startswith("__"):
            problems.append(f"line {line}: use of dunder name '{node.id}'")
        elif isinstance(node, (ast.AsyncFunctionDef, ast.AsyncFor, ast.AsyncWith, ast.Await)):
            problems.append(f"line {line}: async code is not supported")
        elif isinstance(node, ast.FunctionDef) and node.name in BLOCKED_METHODS:
            problems.append(f"line {line}: defining '{node.name}' is not allowed")
        elif isinstance(node, ast.ExceptHandler):
            if node.type is None:
                problems.append(f"line {line}: bare 'except:' is not allowed, catch Exception instead")
            elif not _is_catchable(node.type, bound, modules):
                problems.append(
                    f"line {line}: except clauses may only name built-in exception classes "
                    f"or ones from a whitelisted module (e.g. json.JSONDecodeError)"
                )
        elif getattr(node, "finalbody", None):
            problems.append(f"line {line}: 'finally' is not allowed")
        elif isinstance(node, ast.Global):
            problems.append(f"line {line}: 'global' is not allowed")
        elif isinstance(node, ast.Nonlocal):
            problems.append(f"line {line}: 'nonlocal' is not allowed")
    return problems


class ExecutionTimeoutError(BaseException):
    """Code execution timed out.

    Not an Exception subclass, so ``except Exception`` in a script lets it
    through.
    """
    pass


# Seconds between repeat firings once the deadline has passed
TIMEOUT_REPEAT_SECONDS = 0.1


def _timeout_handler(signum: int, frame: FrameType | None) -> None:
    raise ExecutionTimeoutError("Execution timed out")


@contextmanager
def _timeout_context(timeout: float) -> Generator[None, None, None]:
    """Context manager for Unix signal-based timeout.

    After the first expiry the timer keeps firing every
    TIMEOUT_REPEAT_SECONDS until the block exits. On platforms without
    signal.setitimer, or off the main thread, silently does nothing.
    Properly restores the previous signal handler on exit.

    Raises:
        ExecutionTimeoutError: If the block takes longer than timeout seconds
    """
    old_handler: Any = None
    armed = False
    try:
        old_handler = signal.signal(signal.SIGALRM, _timeout_handler)
        signal.setitimer(signal.ITIMER_REAL, timeout, TIMEOUT_REPEAT_SECONDS)
        armed = True
    except (ValueError, AttributeError):
        # No SIGALRM here (Windows, or not the main thread) - skip timeout
        pass

    try:
        yield
    finally:
        if armed:
            try:
                signal.setitimer(signal.ITIMER_REAL, 0)
            finally:
                signal.signal(signal.SIGALRM, old_handler or signal.SIG_DFL)


# =============================================================================
# ctx
# =============================================================================


class ServicesProxy:
    """``ctx.services``: one submit function per registered job type."""

    def __init__(self, submit: Callable[[str, Any], str], job_types: list[str]) -> None:
        self.__submit = submit
        self.__job_types = list(job_types)

    def __getattr__(self, job_type: str) -> Callable[..., str]:
        if job_type.startswith("_") or job_type not in self.__job_types:
            raise AttributeError(
                f"ctx.services has no service '{job_type}'. Available: {self.__job_types}"
            )

        def submit(params: Any = None, **kwargs: Any) -> str:
            merged = dict(params) if isinstance(params, Mapping) else params
            if kwargs:
                merged = {**(merged or {}), **kwargs}
            return self.__submit(job_type, merged if merged is not None else {})

        return submit

    def __dir__(self) -> list[str]:
        return list(self.__job_types)


class AgentContext:
    """The capability object scripts see as ``ctx``.

    Read-only views are fixed at the start of the run. Verbs check the
    request against the agent's projected view (the start-of-run
    transactions plus everything queued so far in this run), raise
    CapabilityError on rejection, and otherwise queue an operation.
    """

    def __init__(
        self,
        agent: Agent,
        tick: int,
        now_ms: int,
        balance: int,
        transactions: Iterable[Transaction],
        state: dict[str, Any],
        ids: DeterministicIdGenerator,
        agent_ids: Iterable[str],
        job_queue: ServiceJobQueue | None = None,
        max_logs: int | None = None,
        max_log_chars: int | None = None,
        max_ops: int | None = None,
    ) -> None:
        self.__agent = agent
        self.__tick = tick
        self.__now_ms = now_ms
        self.__balance = balance
        self.__ids = ids
        self.__agent_ids = frozenset(agent_ids)
        self.__job_queue = job_queue
        self.__max_logs = max_logs if max_logs is not None else int(get("executor.max_logs", 200))
        self.__max_log_chars = (
            max_log_chars if max_log_chars is not None else int(get("executor.max_log_chars", 2000))
        )
        self.__max_ops = max_ops if max_ops is not None else int(get("executor.max_ops", 200))

        own = [tx for tx in transactions if agent.id in (tx.source_id, tx.target_id)]
        self.__projected: dict[str, Transaction] = {tx.id: tx for tx in own}
        self.__created: set[str] = set()
        views = tuple(MappingProxyType(tx.view()) for tx in own)
        self.__transactions = views
        self.__incoming = tuple(v for v in views if v["target_id"] == agent.id)
        self.__outgoing = tuple(v for v in views if v["source_id"] == agent.id)

        self.state: dict[str, Any] = state
        self.__logs: list[LogEntry] = []
        self.__ops: list[dict[str, Any]] = []
        self.services = ServicesProxy(
            self.__submit_job, job_queue.job_types if job_queue is not None else []
        )

    # --- identity -----------------------------------------------------

    @property
    def agent_id(self) -> str:
        return self.__agent.id

    @property
    def agent_name(self) -> str:
        return self.__agent.name

    @property
    def agent_type(self) -> str:
        return self.__agent.type.value

    @property
    def tick(self) -> int:
        return self.__tick

    @property
    def now_ms(self) -> int:
        return self.__now_ms

    @property
    def balance(self) -> int:
        return self.__balance

    @property
    def transactions(self) -> tuple[Mapping[str, Any], ...]:
        return self.__transactions

    @property
    def incoming_transactions(self) -> tuple[Mapping[str, Any], ...]:
        return self.__incoming

    @property
    def outgoing_transactions(self) -> tuple[Mapping[str, Any], ...]:
        return self.__outgoing

    # --- logging ------------------------------------------------------

    def __append_log(self, level: str, message: Any) -> None:
        text = str(message)
        if len(text) > self.__max_log_chars:
            text = text[: self.__max_log_chars] + "... [truncated]"
        if len(self.__logs) >= self.__max_logs:
            self.__logs.pop(0)
        self.__logs.append({"level": level, "message": text})

    def recorded_logs(self) -> list[LogEntry]:
        return copy.deepcopy(self.__logs)

    def queued_ops(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self.__ops)

    def log(self, message: Any) -> None:
        self.__append_log("info", message)

    def warn(self, message: Any) -> None:
        self.__append_log("warn", message)

    def error(self, message: Any) -> None:
        self.__append_log("error", message)

    # --- verbs --------------------------------------------------------

    def __queue(self, op: dict[str, Any]) -> None:
        if len(self.__ops) >= self.__max_ops:
            raise CapabilityError(f"Operation limit reached ({self.__max_ops} per run)")
        self.__ops.append(op)

    def __own_transaction(self, verb: str, tx_id: Any) -> Transaction:
        if not isinstance(tx_id, str) or not tx_id:
            raise CapabilityError(f"ctx.{verb}: missing tx_id")
        tx = self.__projected.get(tx_id)
        if tx is None:
            raise CapabilityError(f"ctx.{verb}: transaction {tx_id} not found for {self.agent_id}")
        return tx

    def create_transaction(self, params: Mapping[str, Any] | None = None, **kwargs: Any) -> str:
        """Queue a new transaction from this agent to ``provider``; returns its id."""
        if params is not None and not isinstance(params, Mapping):
            raise CapabilityError("ctx.create_transaction(params) expects a dict")
        merged: dict[str, Any] = {**(params or {}), **kwargs}
        merged["source"] = self.agent_id
        provider = merged.get("provider", merged.get("target_id"))
        if isinstance(provider, str) and provider and provider not in self.__agent_ids:
            raise CapabilityError(f"ctx.create_transaction: provider agent {provider} not found")

        tx_id = self.__ids.next("tx")
        tx = state_machine.create(merged, tx_id, now_ms=self.__now_ms)

        duplicate = any(
            other.target_id == tx.target_id and other.service == tx.service
            and not other.state.is_terminal
            for other_id, other in self.__projected.items()
            if other_id in self.__created
        )
        if duplicate:
            self.warn(
                f"Another open transaction to {tx.target_id} for '{tx.service}' was already "
                f"created this tick; guard create_transaction with ctx.state to avoid duplicates"
            )

        self.__queue({
            "type": OP_CREATE_TX,
            "tx": {
                "id": tx.id,
                "provider": tx.target_id,
                "amount_micro": tx.amount_micro,
                "service": tx.service,
                "deadline_ms": tx.deadline_ms,
            },
        })
        self.__projected[tx.id] = tx
        self.__created.add(tx.id)
        self.log(f"Creating transaction {tx.id}: {tx.service} for {tx.amount_micro} to {tx.target_id}")
        return tx.id

    def transition_state(self, tx_id: str, new_state: str) -> None:
        tx = self.__own_transaction("transition_state", tx_id)
        target = state_machine.parse_state(new_state)
        if tx.state is TransactionState.DISPUTED:
            raise IllegalTransitionError(
                tx.id, tx.state.value, target.value, "disputes are resolved by a mediator"
            )
        moved = state_machine.transition(tx, target, "agent", self.__now_ms)
        self.__queue({"type": OP_TRANSITION_STATE, "tx_id": tx.id, "state": target.value})
        self.__projected[tx.id] = moved
        self.log(f"Transitioning {tx.id} to {target.value}")

    def release_escrow(self, tx_id: str) -> None:
        tx = self.__own_transaction("release_escrow", tx_id)
        released = state_machine.release(tx, self.__now_ms)
        self.__queue({"type": OP_RELEASE_ESCROW, "tx_id": tx.id})
        self.__projected[tx.id] = released
        self.log(f"Releasing escrow for {tx.id}")

    def initiate_dispute(self, tx_id: str, reason: str = "") -> None:
        tx = self.__own_transaction("initiate_dispute", tx_id)
        disputed = state_machine.dispute(tx, self.__now_ms)
        self.__queue({"type": OP_DISPUTE, "tx_id": tx.id, "reason": str(reason)})
        self.__projected[tx.id] = disputed
        self.warn(f"Initiating dispute for {tx.id}: {reason}")

    def cancel_transaction(self, tx_id: str) -> None:
        tx = self.__own_transaction("cancel_transaction", tx_id)
        cancelled = state_machine.cancel(tx, self.__now_ms)
        self.__queue({"type": OP_CANCEL, "tx_id": tx.id})
        self.__projected[tx.id] = cancelled
        self.log(f"Cancelling transaction {tx.id}")

    def __submit_job(self, job_type: str, params: Any) -> str:
        queue = self.__job_queue
        if queue is None:
            raise CapabilityError("ctx.services is not available")
        try:
            clean = queue.validate(job_type, params)
        except ValueError as e:
            raise CapabilityError(f"ctx.services.{job_type}: {e}") from None
        queued = sum(1 for op in self.__ops if op["type"] == OP_SUBMIT_JOB)
        if len(queue) + queued >= queue.max_queue_size:
            raise QueueFullError(queue.max_queue_size)
        job_id = self.__ids.next("job")
        self.__queue({"type": OP_SUBMIT_JOB, "job": {"id": job_id, "job_type": job_type, "params": clean}})
        return job_id

    # camelCase aliases for scripts ported from the browser canvas
    createTransaction = create_transaction
    transitionState = transition_state
    releaseEscrow = release_escrow
    initiateDispute = initiate_dispute
    cancelTransaction = cancel_transaction

    @property
    def incomingTransactions(self) -> tuple[Mapping[str, Any], ...]:
        return self.__incoming

    @property
    def outgoingTransactions(self) -> tuple[Mapping[str, Any], ...]:
        return self.__outgoing

    @property
    def agentId(self) -> str:
        return self.__agent.id

    @property
    def nowMs(self) -> int:
        return self.__now_ms

    def __repr__(self) -> str:
        return f"<ctx agent={self.agent_id} tick={self.__tick}>"


# =============================================================================
# Executor
# =============================================================================


class SandboxExecutor:
    """
    Executes agent scripts with a restricted namespace and timeout protection.

    One instance can run any number of agents; nothing from one run leaks
    into the next because every run gets a fresh namespace.
    """

    timeout: int
    preloaded_modules: dict[str, ModuleType]
    max_state_chars: int

    def __init__(
        self,
        timeout: int | None = None,
        preloaded_imports: list[str] | None = None,
        max_state_chars: int | None = None,
    ) -> None:
        self.timeout = timeout if timeout is not None else int(get("executor.timeout_seconds", 5))
        self.preloaded_modules = get_preloaded_modules(preloaded_imports)
        self.max_state_chars = (
            max_state_chars if max_state_chars is not None
            else int(get("executor.max_state_chars", 200_000))
        )

    def validate_code(self, code: str, filename: str = "<agent>") -> tuple[bool, str, str]:
        """Check that code compiles and passes the AST check.

        Returns:
            (ok, error message, error_type)
        """
        try:
            tree = ast.parse(code, filename=filename)
        except SyntaxError as e:
            return False, f"Syntax error: {e.msg} (line {e.lineno})", "syntax"
        problems = check_syntax(tree, self.preloaded_modules)
        if problems:
            return False, "Forbidden syntax: " + "; ".join(problems), "forbidden"
        return True, "", ""

    @staticmethod
    def _encode_state(ctx: AgentContext) -> str:
        """JSON for ctx.state, or "{}" with a warning if it is not a JSON object."""
        state = ctx.state
        if not isinstance(state, dict):
            ctx.warn(f"ctx.state must be a dict, got {type(state).__name__}; state reset to {{}}")
            return "{}"
        try:
            return json.dumps(state)
        except (TypeError, ValueError) as e:
            ctx.warn(f"ctx.state is not JSON-serializable ({e}); state reset to {{}}")
            return "{}"

    def execute(self, code: str, ctx: AgentContext) -> ExecutionResult:
        """
        Run ``code`` with ``ctx`` bound in its namespace.

        Returns:
            ExecutionResult. On failure ops is empty and final_state is absent,
            so the caller applies nothing and keeps the previous state.

        Raises:
            KeyboardInterrupt: only a real interrupt of the host process;
                scripts cannot name it.
        """
        filename = f"<agent:{ctx.agent_id}>"
        start_time = time.perf_counter()

        def failed(error: str, error_type: str) -> ExecutionResult:
            return {
                "success": False,
                "error": error,
                "error_type": error_type,
                "logs": ctx.recorded_logs(),
                "ops": [],
                "execution_time_ms": (time.perf_counter() - start_time) * 1000,
            }

        valid, error, error_type = self.validate_code(code, filename)
        if not valid:
            return failed(error, error_type)

        try:
            compiled = compile(code, filename, "exec")
        except (SyntaxError, ValueError) as e:
            return failed(f"Syntax error: {e}", "syntax")

        views = {name: ModuleView(module) for name, module in self.preloaded_modules.items()}
        namespace: dict[str, Any] = {
            "__builtins__": _safe_builtins(views),
            "__name__": "__agent__",
            "ctx": ctx,
        }
        namespace.update(views)

        try:
            # State is encoded under the timer too; a dict subclass can run script code
            with _timeout_context(self.timeout):
                exec(compiled, namespace)
                run_func = namespace.get("run")
                if callable(run_func):
                    run_func(ctx)
                encoded = self._encode_state(ctx)
        except ExecutionTimeoutError:
            return failed(f"Execution timed out after {self.timeout}s", "timeout")
        except Exception as e:  # exception-ok: user code can raise anything
            return failed(_format_runtime_error(e, "Execution error"), "runtime")
        except BaseException as e:
            if isinstance(e, KeyboardInterrupt):
                raise
            return failed(_format_runtime_error(e, "Execution error"), "runtime")

        if len(encoded) > self.max_state_chars:
            return failed(
                f"State too large: {len(encoded)} chars (max {self.max_state_chars})", "state"
            )

        return {
            "success": True,
            "logs": ctx.recorded_logs(),
            "ops": ctx.queued_ops(),
            "final_state": json.loads(encoded),
            "execution_time_ms": (time.perf_counter() - start_time) * 1000,
        }


# Singleton instance
_executor: SandboxExecutor | None = None


def get_executor(timeout: int | None = None) -> SandboxExecutor:
    """Get or create the SandboxExecutor singleton"""
    global _executor
    if _executor is None or (timeout is not None and _executor.timeout != timeout):
        _executor = SandboxExecutor(timeout=timeout)
    return _executor
