"""Unit tests for the sandbox executor and the ctx capability object."""

import ast
import json
import math
import signal
from typing import Callable
from unittest.mock import MagicMock

import pytest

from canvas_runtime.simulation.session import CanvasSession
from canvas_runtime.world.errors import CapabilityError, IllegalTransitionError, QueueFullError
from canvas_runtime.world.executor import AgentContext, ModuleView, SandboxExecutor, check_syntax
from canvas_runtime.world.ids import DeterministicIdGenerator
from canvas_runtime.world.ledger import Ledger
from canvas_runtime.world.models import AgentStatus, RuntimeEvent, RuntimeEventType, Transaction, TransactionState
from canvas_runtime.world.services import ServiceJobQueue

S = TransactionState

ContextFactory = Callable[..., AgentContext]


class TestSandbox:
    """Tests for what scripts may and may not do."""

    def test_top_level_script_runs(self, executor: SandboxExecutor, make_context: ContextFactory) -> None:
        result = executor.execute("ctx.log('hello ' + ctx.agent_id)", make_context())
        assert result["success"] is True
        assert result["logs"] == [{"level": "info", "message": "hello agent-1"}]
        assert result["ops"] == []

    def test_run_function_is_called(self, executor: SandboxExecutor, make_context: ContextFactory) -> None:
        code = "def run(ctx):\n    ctx.state['count'] = ctx.state.get('count', 0) + 1\n"
        result = executor.execute(code, make_context(state={"count": 2}))
        assert result["final_state"] == {"count": 3}

    def test_whitelisted_module_preloaded(self, executor: SandboxExecutor, make_context: ContextFactory) -> None:
        result = executor.execute("import math\nctx.log(math.floor(2.7))\nctx.log(json.dumps([1]))", make_context())
        assert result["success"] is True
        assert [log["message"] for log in result["logs"]] == ["2", "[1]"]

    def test_import_outside_whitelist_fails(self, executor: SandboxExecutor, make_context: ContextFactory) -> None:
        result = executor.execute("import os", make_context())
        assert result["success"] is False
        assert result["error_type"] == "runtime"
        assert "ImportError" in result["error"]

    @pytest.mark.parametrize("code", ["open('x')", "eval('1')", "getattr(ctx, 'state')"])
    def test_blocked_builtins(self, executor: SandboxExecutor, make_context: ContextFactory, code: str) -> None:
        result = executor.execute(code, make_context())
        assert result["success"] is False
        assert "NameError" in result["error"]

    def test_private_attribute_access_forbidden(
        self, executor: SandboxExecutor, make_context: ContextFactory
    ) -> None:
        result = executor.execute("ctx._AgentContext__ops.append({})", make_context())
        assert result["success"] is False
        assert result["error_type"] == "forbidden"

    def test_syntax_error(self, executor: SandboxExecutor, make_context: ContextFactory) -> None:
        result = executor.execute("def run(ctx)\n    pass", make_context())
        assert result["success"] is False
        assert result["error_type"] == "syntax"

    def test_check_syntax_lists_problems(self) -> None:
        problems = check_syntax(ast.parse("global x\nasync def f():\n    pass\n"))
        assert len(problems) == 2

    def test_timeout(self, make_context: ContextFactory) -> None:
        result = SandboxExecutor(timeout=1).execute("while True:\n    pass", make_context())
        assert result["success"] is False
        assert result["error_type"] == "timeout"

    def test_failure_discards_ops_and_state(self, executor: SandboxExecutor, make_context: ContextFactory) -> None:
        code = (
            "ctx.state['touched'] = True\n"
            "ctx.create_transaction(provider='agent-2', amount_micro=5, service='echo')\n"
            "raise RuntimeError('boom')\n"
        )
        result = executor.execute(code, make_context())
        assert result["success"] is False
        assert result["ops"] == []
        assert "final_state" not in result
        assert "boom" in result["error"]

    def test_unserializable_state_reset(self, executor: SandboxExecutor, make_context: ContextFactory) -> None:
        result = executor.execute("ctx.state['fn'] = len", make_context())
        assert result["success"] is True
        assert result["final_state"] == {}
        assert result["logs"][-1]["level"] == "warn"

    def test_state_size_limit(self, make_context: ContextFactory) -> None:
        result = SandboxExecutor(timeout=2, max_state_chars=50).execute(
            "ctx.state['blob'] = 'x' * 100", make_context()
        )
        assert result["success"] is False
        assert result["error_type"] == "state"

    def test_runs_do_not_share_globals(self, executor: SandboxExecutor, make_context: ContextFactory) -> None:
        executor.execute("leak = 1", make_context())
        result = executor.execute("ctx.log(leak)", make_context())
        assert result["success"] is False
        assert "NameError" in result["error"]


class TestLogs:
    """Tests for ctx.log / warn / error limits."""

    def test_levels(self, executor: SandboxExecutor, make_context: ContextFactory) -> None:
        result = executor.execute("ctx.log('a')\nctx.warn('b')\nctx.error('c')", make_context())
        assert [log["level"] for log in result["logs"]] == ["info", "warn", "error"]

    def test_long_message_truncated(self, make_context: ContextFactory) -> None:
        ctx = make_context(max_log_chars=10)
        ctx.log("x" * 50)
        assert ctx.recorded_logs()[0]["message"] == "x" * 10 + "... [truncated]"

    def test_log_count_bounded(self, make_context: ContextFactory) -> None:
        ctx = make_context(max_logs=3)
        for n in range(5):
            ctx.log(n)
        assert [log["message"] for log in ctx.recorded_logs()] == ["2", "3", "4"]


class TestVerbs:
    """Tests for ctx verbs validated against the projected view."""

    def test_create_then_commit_in_one_run(self, make_context: ContextFactory) -> None:
        ctx = make_context()
        tx_id = ctx.create_transaction(provider="agent-2", amount_micro=5, service="echo")
        ctx.transition_state(tx_id, "COMMITTED")
        ops = ctx.queued_ops()
        assert tx_id == "tx-1"
        assert [op["type"] for op in ops] == ["CREATE_TX", "TRANSITION_STATE"]
        assert ops[0]["tx"]["provider"] == "agent-2"
        assert ops[1] == {"type": "TRANSITION_STATE", "tx_id": "tx-1", "state": "COMMITTED"}

    def test_camel_case_aliases(self, make_context: ContextFactory) -> None:
        ctx = make_context()
        tx_id = ctx.createTransaction({"provider": "agent-2", "amountMicro": 5, "service": "echo"})
        ctx.cancelTransaction(tx_id)
        assert [op["type"] for op in ctx.queued_ops()] == ["CREATE_TX", "CANCEL"]

    def test_unknown_provider_rejected(self, make_context: ContextFactory) -> None:
        with pytest.raises(CapabilityError, match="not found"):
            make_context().create_transaction(provider="agent-9", amount_micro=5, service="echo")

    def test_source_cannot_be_spoofed(self, make_context: ContextFactory) -> None:
        ctx = make_context()
        tx_id = ctx.create_transaction(source="agent-2", provider="agent-2", amount_micro=5, service="x")
        assert [v["id"] for v in ctx.transactions] == []
        assert ctx.queued_ops()[0]["tx"]["id"] == tx_id
        # source is always the calling agent, so this is a self transaction
        with pytest.raises(CapabilityError):
            ctx.create_transaction(source="agent-2", provider="agent-1", amount_micro=5, service="x")

    def test_duplicate_create_warns(self, make_context: ContextFactory) -> None:
        ctx = make_context()
        ctx.create_transaction(provider="agent-2", amount_micro=5, service="echo")
        ctx.create_transaction(provider="agent-2", amount_micro=5, service="echo")
        assert any(log["level"] == "warn" for log in ctx.recorded_logs())
        assert len(ctx.queued_ops()) == 2

    def test_illegal_transition_raises_synchronously(
        self, make_context: ContextFactory, make_tx: Callable[..., Transaction]
    ) -> None:
        tx = make_tx()
        with pytest.raises(IllegalTransitionError):
            make_context().transition_state(tx.id, "SETTLED")

    def test_disputed_transaction_cannot_be_moved_by_agents(
        self, make_context: ContextFactory, make_tx: Callable[..., Transaction]
    ) -> None:
        tx = make_tx(state=S.DISPUTED, escrow_locked=True)
        ctx = make_context()
        with pytest.raises(IllegalTransitionError):
            ctx.transition_state(tx.id, "SETTLED")
        with pytest.raises(IllegalTransitionError):
            ctx.release_escrow(tx.id)

    def test_foreign_transaction_invisible(self, ledger: Ledger, make_tx: Callable[..., Transaction]) -> None:
        from canvas_runtime.world.actions import AddAgent
        from canvas_runtime.world.models import Agent

        ledger.apply(AddAgent(Agent(id="agent-3", name="Carol")))
        tx = make_tx()
        ctx = AgentContext(
            agent=ledger.get_agent("agent-3"), tick=1, now_ms=0, balance=0,
            transactions=list(ledger.transactions.values()), state={},
            ids=DeterministicIdGenerator(), agent_ids=list(ledger.agents),
        )
        assert ctx.transactions == ()
        with pytest.raises(CapabilityError, match="not found"):
            ctx.cancel_transaction(tx.id)

    def test_views_are_read_only(self, make_context: ContextFactory, make_tx: Callable[..., Transaction]) -> None:
        make_tx()
        ctx = make_context()
        with pytest.raises(TypeError):
            ctx.transactions[0]["state"] = "SETTLED"  # type: ignore[index]

    def test_incoming_and_outgoing(self, make_context: ContextFactory, make_tx: Callable[..., Transaction]) -> None:
        make_tx()
        assert len(make_context("agent-1").outgoing_transactions) == 1
        assert make_context("agent-1").incoming_transactions == ()
        assert len(make_context("agent-2").incoming_transactions) == 1

    def test_projected_view_tracks_queued_moves(
        self, make_context: ContextFactory, make_tx: Callable[..., Transaction]
    ) -> None:
        tx = make_tx(state=S.COMMITTED, escrow_locked=True)
        ctx = make_context("agent-2")
        ctx.transition_state(tx.id, "IN_PROGRESS")
        ctx.transition_state(tx.id, "DELIVERED")
        with pytest.raises(IllegalTransitionError):
            ctx.transition_state(tx.id, "IN_PROGRESS")

    def test_op_limit(self, make_context: ContextFactory) -> None:
        ctx = make_context(max_ops=1)
        ctx.create_transaction(provider="agent-2", amount_micro=5, service="echo")
        with pytest.raises(CapabilityError, match="Operation limit"):
            ctx.create_transaction(provider="agent-2", amount_micro=5, service="other")


class TestServices:
    """Tests for ctx.services submissions."""

    def test_submit_returns_job_id(self, make_context: ContextFactory) -> None:
        ctx = make_context()
        job_id = ctx.services.translate({"text": "hi", "to": "fr"})
        assert job_id == "job-1"
        op = ctx.queued_ops()[0]
        assert op == {"type": "SUBMIT_JOB", "job": {"id": "job-1", "job_type": "translate",
                                                    "params": {"text": "hi", "to": "fr"}}}

    def test_keyword_params(self, make_context: ContextFactory) -> None:
        ctx = make_context()
        ctx.services.echo(value=3)
        assert ctx.queued_ops()[0]["job"]["params"] == {"value": 3}

    def test_bad_params_rejected(self, make_context: ContextFactory) -> None:
        with pytest.raises(CapabilityError, match="text"):
            make_context().services.translate({"to": "fr"})

    def test_unknown_service(self, make_context: ContextFactory) -> None:
        with pytest.raises(AttributeError):
            make_context().services.summarize({})

    def test_queue_full(self, make_context: ContextFactory) -> None:
        queue = ServiceJobQueue(max_queue_size=1, max_jobs_per_tick=1)
        ctx = make_context(job_queue=queue)
        ctx.services.echo({})
        with pytest.raises(QueueFullError):
            ctx.services.echo({})

    def test_ids_shared_with_runtime_generator(self, make_context: ContextFactory) -> None:
        ids = DeterministicIdGenerator({"job": 4})
        assert make_context(ids=ids).services.echo({}) == "job-4"
        assert ids.peek("job") == 5


BYSTANDER = "ctx.state['ran'] = ctx.tick\nctx.log('bystander ran')\n"


def _tick_beside_bystander(code: str, timeout: int = 2) -> CanvasSession:
    """One tick with ``code`` as agent-1 and a well-behaved agent-2."""
    session = CanvasSession(mode="step", executor=SandboxExecutor(timeout=timeout))
    session.add_agent("Misbehaving", code=code)
    session.add_agent("Bystander", code=BYSTANDER)
    session.step()
    return session


def _first_error(session: CanvasSession) -> RuntimeEvent:
    return next(
        e for e in session.ledger.events if e.agent_id == "agent-1" and e.type is RuntimeEventType.ERROR
    )


def _assert_contained(session: CanvasSession) -> None:
    report = session.last_report
    assert report is not None
    assert report.agents_run == ["agent-1", "agent-2"]
    assert report.failed_agents == ["agent-1"]
    assert set(session.agents) == {"agent-1", "agent-2"}
    assert session.agents["agent-1"].status is AgentStatus.ERROR
    assert session.get_agent_state("agent-2") == {"ran": 1}
    assert session.ledger.tick == 1


class TestIsolation:
    """A misbehaving script fails alone; the rest of the tick carries on."""

    def test_system_exit(self) -> None:
        session = _tick_beside_bystander("raise SystemExit(3)")
        _assert_contained(session)
        error = _first_error(session)
        assert "NameError" in error.message

    @pytest.mark.parametrize("name", ["SystemExit", "KeyboardInterrupt", "GeneratorExit", "BaseException"])
    def test_exit_exceptions_not_in_builtins(
        self, executor: SandboxExecutor, make_context: ContextFactory, name: str
    ) -> None:
        result = executor.execute(f"ctx.log({name})", make_context())
        assert result["success"] is False
        assert "NameError" in result["error"]

    def test_base_exception_from_host_call_becomes_failure(
        self, executor: SandboxExecutor, make_context: ContextFactory
    ) -> None:
        queue = MagicMock(spec=ServiceJobQueue)
        queue.job_types = ["echo"]
        queue.validate.side_effect = SystemExit(3)
        result = executor.execute("ctx.services.echo({})", make_context(job_queue=queue))
        assert result["success"] is False
        assert result["error_type"] == "runtime"
        assert "SystemExit" in result["error"]

    def test_real_keyboard_interrupt_propagates(
        self, executor: SandboxExecutor, make_context: ContextFactory
    ) -> None:
        queue = MagicMock(spec=ServiceJobQueue)
        queue.job_types = ["echo"]
        queue.validate.side_effect = KeyboardInterrupt()
        with pytest.raises(KeyboardInterrupt):
            executor.execute("ctx.services.echo({})", make_context(job_queue=queue))

    @pytest.mark.parametrize("code", [
        "json.dumps = lambda *a, **k: 'PWNED'",
        "m = json\nm.loads = len",
        "json.JSONEncoder.default = len",
        "del math.pi",
        "type(ctx).log = len",
    ])
    def test_module_and_class_mutation(self, code: str) -> None:
        session = _tick_beside_bystander(code)
        _assert_contained(session)
        assert json.dumps([1]) == "[1]"
        assert json.loads("[1]") == [1]
        assert math.pi > 3

    def test_module_views_are_per_run_and_read_only(self) -> None:
        view = ModuleView(json)
        with pytest.raises(AttributeError, match="read-only"):
            view.dumps = len
        with pytest.raises(AttributeError):
            del view.loads
        assert view.dumps([1]) == "[1]"
        assert "decoder" not in dir(view)
        assert ModuleView(json) is not view

    @pytest.mark.parametrize("code", [
        "operator.attrgetter('state')(ctx)",
        "operator.methodcaller('log', 'x')(ctx)",
        "string.Formatter().get_field('0.state', (ctx,), {})",
    ])
    def test_string_attribute_lookups_hidden(
        self, executor: SandboxExecutor, make_context: ContextFactory, code: str
    ) -> None:
        result = executor.execute(code, make_context())
        assert result["success"] is False
        assert "has no attribute" in result["error"]

    def test_swallowed_timeout(self) -> None:
        code = (
            "while True:\n"
            "    try:\n"
            "        while True:\n"
            "            pass\n"
            "    except Exception:\n"
            "        pass\n"
        )
        session = _tick_beside_bystander(code, timeout=1)
        _assert_contained(session)
        error = _first_error(session)
        assert error.payload["error_type"] == "timeout"

    def test_timer_and_handler_restored(self, make_context: ContextFactory) -> None:
        before = signal.getsignal(signal.SIGALRM)
        result = SandboxExecutor(timeout=1).execute("while True:\n    pass", make_context())
        assert result["error_type"] == "timeout"
        assert signal.getsignal(signal.SIGALRM) is before
        assert signal.getitimer(signal.ITIMER_REAL) == (0.0, 0.0)

    @pytest.mark.parametrize("code", [
        "try:\n    pass\nexcept:\n    pass\n",
        "try:\n    pass\nexcept BaseException:\n    pass\n",
        "try:\n    pass\nexcept undefined_name:\n    pass\n",
        "try:\n    pass\nexcept (ValueError, 5):\n    pass\n",
        "ValueError = 5\ntry:\n    pass\nexcept ValueError:\n    pass\n",
        "try:\n    pass\nfinally:\n    pass\n",
        "class Quiet:\n    def __exit__(self, *exc):\n        return True\n",
        "class Slow:\n    def __del__(self):\n        pass\n",
    ])
    def test_timeout_cannot_be_absorbed(self, code: str) -> None:
        assert check_syntax(ast.parse(code))

    @pytest.mark.parametrize("code", [
        "try:\n    pass\nexcept (ValueError, KeyError) as e:\n    ctx.log(e)\n",
        "try:\n    json.loads('x')\nexcept json.JSONDecodeError:\n    pass\n",
        "import json\ntry:\n    pass\nexcept json.JSONDecodeError:\n    pass\n",
        "ctx.state = {'reset': True}\n",
    ])
    def test_ordinary_handlers_allowed(self, code: str) -> None:
        assert check_syntax(ast.parse(code)) == []

    def test_frame_walk(self) -> None:
        code = (
            "def gen():\n"
            "    yield 1\n"
            "\n"
            "frame = gen().gi_frame\n"
            "while frame is not None:\n"
            "    if 'self' in frame.f_locals:\n"
            "        frame.f_locals['self'].ledger.agents.clear()\n"
            "    frame = frame.f_back\n"
        )
        session = _tick_beside_bystander(code)
        _assert_contained(session)

    @pytest.mark.parametrize("expr", [
        "g.gi_frame", "g.gi_code", "c.cr_frame", "c.cr_code", "a.ag_frame", "a.ag_code",
        "tb.tb_frame", "tb.tb_next", "f.f_back", "f.f_locals", "f.f_globals", "f.f_builtins", "f.f_code",
    ])
    def test_frame_attributes_forbidden(self, expr: str) -> None:
        problems = check_syntax(ast.parse(expr))
        assert problems == [f"line 1: access to frame attribute '{expr.split('.')[1]}'"]

    def test_match_class_attributes_checked(self) -> None:
        code = "match ctx:\n    case object(gi_frame=f, _AgentContext__ops=ops):\n        pass\n"
        assert len(check_syntax(ast.parse(code))) == 2
