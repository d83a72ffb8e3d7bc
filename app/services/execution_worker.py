import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.core.id_utils import generate_short_token
from app.core.observability import log_event

logger = logging.getLogger("studycafe.automation")


@dataclass(frozen=True)
class ExecutionJob:
    dispatch_id: str
    flow_id: str
    branch_id: str
    action: str
    target_phones: list[str]
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HandoffResult:
    worker: str
    handoff_id: str
    status: str


class ExecutionWorker(Protocol):
    name: str

    def hand_off(self, job: ExecutionJob) -> HandoffResult:
        ...


class OutboxExecutionWorker:
    """Leaves the job on the dispatch row; a pull-based worker reads it from there."""

    name = "outbox"

    def hand_off(self, job: ExecutionJob) -> HandoffResult:
        log_event(
            logger,
            "automation_job_queued",
            dispatch_id=job.dispatch_id,
            flow_id=job.flow_id,
            action=job.action,
            target_count=len(job.target_phones),
        )
        return HandoffResult(worker=self.name, handoff_id=job.dispatch_id, status="queued")


class StubExecutionWorker:
    name = "stub"

    def hand_off(self, job: ExecutionJob) -> HandoffResult:
        return HandoffResult(
            worker=self.name,
            handoff_id=f"job-{generate_short_token(14)}",
            status="accepted",
        )


_EXECUTION_WORKERS: dict[str, ExecutionWorker] = {
    "outbox": OutboxExecutionWorker(),
    "stub": StubExecutionWorker(),
}


def get_execution_worker(name: str) -> ExecutionWorker:
    normalized = (name or "").strip().lower()
    worker = _EXECUTION_WORKERS.get(normalized)
    if not worker:
        available = ", ".join(sorted(_EXECUTION_WORKERS))
        raise ValueError(f"Unknown execution worker '{name}'. Available: {available}")
    return worker
