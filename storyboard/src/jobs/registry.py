from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Literal, Optional
from uuid import uuid4

from ..errors import CapabilityError, GenerationTimeoutError, InputValidationError, JobNotFoundError

logger = logging.getLogger(__name__)

JobStatus = Literal["processing", "completed", "failed"]
ErrorCode = Literal["timeout", "capability", "validation", "internal"]
ProgressCallback = Callable[[int], None]
JobWork = Callable[[ProgressCallback], Awaitable[Any]]


def error_code_for(exc: BaseException) -> ErrorCode:
    if isinstance(exc, GenerationTimeoutError):
        return "timeout"
    if isinstance(exc, CapabilityError):
        return "capability"
    if isinstance(exc, InputValidationError):
        return "validation"
    return "internal"


@dataclass(frozen=True)
class JobSnapshot:
    id: str
    kind: str
    status: JobStatus
    progress: int = 0
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None

    @property
    def done(self) -> bool:
        return self.status != "processing"


@dataclass
class _JobRecord:
    snapshot: JobSnapshot
    task: Optional["asyncio.Task[Any]"] = None
    finished_at: Optional[float] = None


class JobRegistry:
    """Process-wide, in-memory registry of asynchronous jobs.

    Jobs are created before their work starts, move ``processing ->
    completed | failed`` exactly once, and are evicted ``retention_seconds``
    after reaching a terminal state. Only the task that owns a job writes to
    it.
    """

    def __init__(self, retention_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._jobs: Dict[str, _JobRecord] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def submit(self, work: JobWork, kind: str = "job") -> str:
        """Schedule ``work`` on the running loop and return its job id immediately."""
        self.evict_expired()
        job_id = str(uuid4())
        record = _JobRecord(snapshot=JobSnapshot(id=job_id, kind=kind, status="processing"))
        self._jobs[job_id] = record
        record.task = asyncio.create_task(self._run(job_id, work), name=f"{kind}:{job_id}")
        logger.info("Submitted %s job %s", kind, job_id)
        return job_id

    def poll(self, job_id: str) -> JobSnapshot:
        self.evict_expired()
        record = self._jobs.get(job_id)
        if record is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return record.snapshot

    async def join(self, job_id: str) -> JobSnapshot:
        """Wait for the job to reach a terminal state and return its snapshot."""
        record = self._jobs.get(job_id)
        if record is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if record.task is not None and not record.snapshot.done:
            await asyncio.wait({record.task})
        return record.snapshot

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [
            job_id
            for job_id, record in self._jobs.items()
            if record.finished_at is not None and now - record.finished_at >= self.retention_seconds
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug("Evicted %d expired job(s)", len(expired))
        return len(expired)

    def _progress(self, job_id: str) -> ProgressCallback:
        def report(progress: int) -> None:
            record = self._jobs.get(job_id)
            if record is None or record.snapshot.done:
                return
            record.snapshot = replace(record.snapshot, progress=max(0, min(100, int(progress))))

        return report

    def _finish(self, job_id: str, **changes: Any) -> None:
        record = self._jobs.get(job_id)
        if record is None or record.snapshot.done:
            return
        record.snapshot = replace(record.snapshot, **changes)
        record.finished_at = self._clock()

    async def _run(self, job_id: str, work: JobWork) -> None:
        kind = self._jobs[job_id].snapshot.kind
        try:
            data = await work(self._progress(job_id))
        except Exception as exc:
            code = error_code_for(exc)
            if code == "internal":
                logger.exception("%s job %s failed", kind, job_id)
            else:
                logger.warning("%s job %s failed (%s): %s", kind, job_id, code, exc)
            self._finish(job_id, status="failed", error=str(exc) or type(exc).__name__, error_code=code)
            return
        self._finish(job_id, status="completed", progress=100, data=data)
        logger.info("%s job %s completed", kind, job_id)
