"""Unit tests for the service job queue."""

import pytest

from canvas_runtime.world.errors import DuplicateIdError, QueueFullError
from canvas_runtime.world.services import JobStatus, ServiceHandler, ServiceJobQueue
from canvas_runtime.world.state_store import AgentStateStore


@pytest.fixture
def queue() -> ServiceJobQueue:
    return ServiceJobQueue(latency_ticks=3, max_queue_size=5, max_jobs_per_tick=2, max_output_size=100)


class TestSubmit:
    """Tests for queueing jobs."""

    def test_submit_assigns_ids_and_ready_tick(self, queue: ServiceJobQueue) -> None:
        job_id = queue.submit("agent-1", "translate", {"text": "hi", "to": "es"}, tick=1)
        assert job_id == "job-1"
        job = queue.get(job_id)
        assert job is not None
        assert job.status is JobStatus.PENDING
        assert job.ready_tick == 4

    def test_explicit_job_id(self, queue: ServiceJobQueue) -> None:
        assert queue.submit("agent-1", "echo", {}, job_id="job-7") == "job-7"
        with pytest.raises(DuplicateIdError):
            queue.submit("agent-1", "echo", {}, job_id="job-7")

    def test_unknown_type_rejected(self, queue: ServiceJobQueue) -> None:
        with pytest.raises(ValueError, match="Unknown service"):
            queue.submit("agent-1", "summarize", {})

    def test_params_copied(self, queue: ServiceJobQueue) -> None:
        params = {"text": "hi", "to": "es"}
        job_id = queue.submit("agent-1", "translate", params)
        params["text"] = "changed"
        job = queue.get(job_id)
        assert job is not None and job.params["text"] == "hi"

    def test_capacity(self, queue: ServiceJobQueue) -> None:
        for _ in range(5):
            queue.submit("agent-1", "echo", {})
        with pytest.raises(QueueFullError):
            queue.submit("agent-1", "echo", {})


class TestProcess:
    """Tests for completing jobs."""

    def test_not_due_before_latency(self, queue: ServiceJobQueue) -> None:
        queue.submit("agent-1", "translate", {"text": "Hello", "to": "es"}, tick=1)
        assert queue.process(3) == []
        done = queue.process(4)
        assert len(done) == 1
        assert done[0].status is JobStatus.COMPLETED
        assert done[0].result["text"] == "[ES] Hello"
        assert done[0].completed_tick == 4

    def test_per_tick_limit_oldest_first(self, queue: ServiceJobQueue) -> None:
        ids = [queue.submit("agent-1", "echo", {"n": n}) for n in range(3)]
        first = queue.process(10)
        assert [job.id for job in first] == ids[:2]
        assert [job.id for job in queue.process(10)] == ids[2:]

    def test_handler_failure_fails_job(self, queue: ServiceJobQueue) -> None:
        def explode(params: dict) -> None:
            raise RuntimeError("backend down")

        queue.handlers["flaky"] = ServiceHandler(validate=lambda p: None, run=explode)
        job_id = queue.submit("agent-1", "flaky", {})
        queue.process(3)
        job = queue.get(job_id)
        assert job is not None
        assert job.status is JobStatus.FAILED
        assert job.error == "backend down"

    def test_oversized_output_fails_job(self, queue: ServiceJobQueue) -> None:
        job_id = queue.submit("agent-1", "translate", {"text": "x" * 200, "to": "es"})
        queue.process(3)
        job = queue.get(job_id)
        assert job is not None and job.status is JobStatus.FAILED
        assert "too large" in (job.error or "")

    def test_deterministic_results(self) -> None:
        a, b = ServiceJobQueue(latency_ticks=0), ServiceJobQueue(latency_ticks=0)
        for q in (a, b):
            q.submit("agent-1", "translate", {"text": "Hi", "to": "fr"})
            q.process(0)
        assert a.snapshot() == b.snapshot()


class TestPublish:
    """Tests for writing job status into agent state."""

    def test_publish_pending_then_completed(self, queue: ServiceJobQueue) -> None:
        store = AgentStateStore()
        job_id = queue.submit("agent-1", "echo", {"v": 1}, tick=0)
        queue.publish(store)
        assert store.get("agent-1")["jobs"][job_id] == {"status": "pending", "result": None, "error": None}

        queue.process(3)
        queue.publish(store)
        assert store.get("agent-1")["jobs"][job_id]["result"] == {"v": 1}

    def test_clear_completed_keeps_pending(self, queue: ServiceJobQueue) -> None:
        queue.submit("agent-1", "echo", {}, tick=0)
        queue.submit("agent-1", "echo", {}, tick=5)
        queue.process(3)
        assert queue.clear_completed() == 1
        assert len(queue) == 1
        assert queue.pending_count() == 1

    def test_snapshot_restore(self, queue: ServiceJobQueue) -> None:
        queue.submit("agent-1", "echo", {"a": 1})
        saved = queue.snapshot()
        queue.clear()
        assert len(queue) == 0
        queue.restore(saved)
        assert queue.snapshot() == saved
