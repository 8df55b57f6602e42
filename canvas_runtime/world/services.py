"""Service job queue - emulated long-running external work.

Agent scripts have no way to wait. A script submits a job with
``ctx.services.<job_type>(params)``, gets a ``job-N`` id back immediately,
and polls ``ctx.state["jobs"][job_id]`` on later ticks. The queue
completes a job once ``latency_ticks`` ticks have passed and publishes
``{status, result, error}`` into the owning agent's state.

Handlers are deterministic mocks: the same params always give the same
result, so recorded sessions replay exactly.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable

from ..config import get
from .errors import DuplicateIdError, QueueFullError
from .state_store import AgentStateStore

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ServiceJob:
    """One submitted job and its outcome."""

    id: str
    job_type: str
    params: dict[str, Any]
    agent_id: str
    status: JobStatus = JobStatus.PENDING
    result: Any = None
    error: str | None = None
    submitted_tick: int = 0
    ready_tick: int = 0
    completed_tick: int | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServiceJob":
        completed = data.get("completed_tick")
        return cls(
            id=str(data["id"]),
            job_type=str(data["job_type"]),
            params=copy.deepcopy(dict(data.get("params") or {})),
            agent_id=str(data["agent_id"]),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            result=copy.deepcopy(data.get("result")),
            error=data.get("error"),
            submitted_tick=int(data.get("submitted_tick", 0)),
            ready_tick=int(data.get("ready_tick", 0)),
            completed_tick=int(completed) if completed is not None else None,
        )

    def published(self) -> dict[str, Any]:
        """The entry the owner sees under ``state["jobs"][id]``."""
        return {"status": self.status.value, "result": copy.deepcopy(self.result), "error": self.error}


# =============================================================================
# Handlers
# =============================================================================


def _validate_translate(params: dict[str, Any]) -> None:
    text = params.get("text")
    if not isinstance(text, str) or not text:
        raise ValueError('Missing or invalid "text" parameter')
    to = params.get("to")
    if not isinstance(to, str) or not to:
        raise ValueError('Missing or invalid "to" parameter')
    source = params.get("from")
    if source is not None and not isinstance(source, str):
        raise ValueError('Invalid "from" parameter')


def _translate(params: dict[str, Any]) -> dict[str, Any]:
    _validate_translate(params)
    return {
        "text": f"[{params['to'].upper()}] {params['text']}",
        "from": params.get("from") or "en",
        "to": params["to"],
        "backend": "mock",
    }


def _validate_echo(params: dict[str, Any]) -> None:
    return None


def _echo(params: dict[str, Any]) -> dict[str, Any]:
    return copy.deepcopy(params)


@dataclass(frozen=True)
class ServiceHandler:
    """A job type: how to check params at submit time and how to run the job."""

    validate: Callable[[dict[str, Any]], None]
    run: Callable[[dict[str, Any]], Any]


DEFAULT_HANDLERS: dict[str, ServiceHandler] = {
    "translate": ServiceHandler(validate=_validate_translate, run=_translate),
    "echo": ServiceHandler(validate=_validate_echo, run=_echo),
}


def _output_size(result: Any) -> int:
    if isinstance(result, dict) and isinstance(result.get("text"), str):
        return len(result["text"])
    return len(json.dumps(result, sort_keys=True, default=str))


# =============================================================================
# Queue
# =============================================================================


@dataclass
class ServiceJobQueue:
    """Pending and recently finished jobs, in submission order.

    Owned by the session and passed to the runtime; never module-global.
    """

    latency_ticks: int = field(default_factory=lambda: int(get("services.latency_ticks", 3)))
    max_queue_size: int = field(default_factory=lambda: int(get("services.max_queue_size", 100)))
    max_jobs_per_tick: int = field(default_factory=lambda: int(get("services.max_jobs_per_tick", 10)))
    max_output_size: int = field(default_factory=lambda: int(get("services.max_output_size", 10_000)))
    handlers: dict[str, ServiceHandler] = field(default_factory=lambda: dict(DEFAULT_HANDLERS))
    _jobs: dict[str, ServiceJob] = field(default_factory=dict, repr=False)
    _submitted: int = field(default=0, repr=False)

    @property
    def job_types(self) -> list[str]:
        return sorted(self.handlers)

    def validate(self, job_type: str, params: Any) -> dict[str, Any]:
        """Check a submission without queueing it; returns a private copy of params.

        Raises:
            ValueError: unknown job type or malformed params.
        """
        handler = self.handlers.get(job_type)
        if handler is None:
            raise ValueError(f"Unknown service {job_type!r}. Available: {self.job_types}")
        if not isinstance(params, dict):
            raise ValueError(f"{job_type} params must be a dict, got {type(params).__name__}")
        try:
            json.dumps(params)
        except (TypeError, ValueError) as e:
            raise ValueError(f"{job_type} params are not JSON-serializable: {e}") from e
        handler.validate(params)
        return copy.deepcopy(params)

    def submit(
        self,
        agent_id: str,
        job_type: str,
        params: dict[str, Any],
        job_id: str | None = None,
        tick: int = 0,
    ) -> str:
        """Queue a job and return its id.

        Raises:
            QueueFullError: the queue holds ``max_queue_size`` jobs.
            DuplicateIdError: ``job_id`` is already queued.
            ValueError: unknown job type or malformed params.
        """
        if len(self._jobs) >= self.max_queue_size:
            raise QueueFullError(self.max_queue_size)
        clean = self.validate(job_type, params)
        if job_id is None:
            self._submitted += 1
            job_id = f"job-{self._submitted}"
        if job_id in self._jobs:
            raise DuplicateIdError("Job", job_id)

        self._jobs[job_id] = ServiceJob(
            id=job_id,
            job_type=job_type,
            params=clean,
            agent_id=agent_id,
            submitted_tick=tick,
            ready_tick=tick + self.latency_ticks,
        )
        logger.debug("Queued %s (%s) for %s, ready at tick %d", job_id, job_type, agent_id, tick + self.latency_ticks)
        return job_id

    def process(self, tick: int) -> list[ServiceJob]:
        """Complete due jobs, oldest first, at most ``max_jobs_per_tick``."""
        due = [
            job for job in self._jobs.values()
            if job.status is JobStatus.PENDING and job.ready_tick <= tick
        ][: self.max_jobs_per_tick]

        for job in due:
            handler = self.handlers.get(job.job_type)
            try:
                if handler is None:
                    raise ValueError(f"Unknown service {job.job_type!r}")
                result = handler.run(copy.deepcopy(job.params))
                size = _output_size(result)
                if size > self.max_output_size:
                    raise ValueError(f"Output too large ({size} > {self.max_output_size} chars)")
            except Exception as e:  # exception-ok: handler failures become failed jobs
                job.status = JobStatus.FAILED
                job.error = str(e)
                job.result = None
            else:
                job.status = JobStatus.COMPLETED
                job.result = result
            job.completed_tick = tick
        return due

    def publish(self, state_store: AgentStateStore) -> None:
        """Write every job's status into its owner's ``state["jobs"]``."""
        for job in self._jobs.values():
            state_store.update_job(job.agent_id, job.id, job.published())

    def clear_completed(self) -> int:
        done = [jid for jid, job in self._jobs.items() if job.status is not JobStatus.PENDING]
        for jid in done:
            del self._jobs[jid]
        return len(done)

    def get(self, job_id: str) -> ServiceJob | None:
        return self._jobs.get(job_id)

    def jobs(self) -> list[ServiceJob]:
        return list(self._jobs.values())

    def pending_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status is JobStatus.PENDING)

    def clear(self) -> None:
        self._jobs.clear()

    def snapshot(self) -> list[dict[str, Any]]:
        return [job.to_dict() for job in self._jobs.values()]

    def restore(self, jobs: list[dict[str, Any]]) -> None:
        restored = [ServiceJob.from_dict(d) for d in jobs]
        self._jobs = {job.id: job for job in restored}

    def __len__(self) -> int:
        return len(self._jobs)
