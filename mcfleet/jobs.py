from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock, Thread
from typing import Any, Callable

from .db import log_event
from .errors import JobBusyError, JobNotFoundError
from .events import EventBus
from .models import utc_now


KEEP_FINISHED_JOBS = 20


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class Job:
    id: str
    workload_id: str
    kind: str
    status: JobStatus = JobStatus.RUNNING
    message: str = ""
    result: dict[str, Any] = field(default_factory=dict)
    started_at: str = field(default_factory=utc_now)
    finished_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.id,
            "workloadId": self.workload_id,
            "type": self.kind,
            "status": self.status.value,
            "message": self.message,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            **self.result,
        }


class JobManager:
    """Runs long tasks (archive compress/extract) in background threads.

    At most one job per workload is in flight; a second submit is rejected
    with JobBusyError rather than queued. Progress is published on the bus.
    Only the newest ``keep_finished`` finished jobs of each workload stay
    queryable.
    """

    def __init__(self, bus: EventBus, keep_finished: int = KEEP_FINISHED_JOBS):
        self.bus = bus
        self.keep_finished = keep_finished
        self._lock = Lock()
        self._jobs: dict[str, Job] = {}
        self._active: dict[str, str] = {}  # workload_id -> job id

    def submit(self, workload_id: str, kind: str, fn: Callable[[], dict[str, Any] | None]) -> Job:
        with self._lock:
            busy = self._active.get(workload_id)
            if busy is not None:
                raise JobBusyError(f"Server '{workload_id}' already has job {busy} running.")
            self._prune(workload_id)
            job = Job(id=f"job_{secrets.token_hex(6)}", workload_id=workload_id, kind=kind, message=f"{kind} running")
            self._jobs[job.id] = job
            self._active[workload_id] = job.id

        self._publish(job)
        Thread(target=self._run, args=(job, fn), name=f"job-{job.id}", daemon=True).start()
        return job

    def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Unknown job '{job_id}'.")
        return job

    def active_job(self, workload_id: str) -> Job | None:
        with self._lock:
            job_id = self._active.get(workload_id)
            return self._jobs.get(job_id) if job_id else None

    def _prune(self, workload_id: str) -> None:
        finished = [j.id for j in self._jobs.values() if j.workload_id == workload_id and j.status is not JobStatus.RUNNING]
        for job_id in finished[: max(0, len(finished) - self.keep_finished)]:
            del self._jobs[job_id]

    def _run(self, job: Job, fn: Callable[[], dict[str, Any] | None]) -> None:
        try:
            result = fn() or {}
        except Exception as e:
            self._finish(job, JobStatus.ERROR, f"{type(e).__name__}: {e}")
            log_event("ERROR", f"Job {job.id} ({job.kind}) failed: {job.message}", workload_id=job.workload_id)
        else:
            self._finish(job, JobStatus.COMPLETED, f"{job.kind} completed", dict(result))
            log_event("INFO", f"Job {job.id} ({job.kind}) completed", workload_id=job.workload_id)
        self._publish(job)

    def _finish(self, job: Job, status: JobStatus, message: str, result: dict[str, Any] | None = None) -> None:
        # The workload is free again as soon as the job reports a final status.
        with self._lock:
            job.status = status
            job.message = message
            if result is not None:
                job.result = result
            job.finished_at = utc_now()
            if self._active.get(job.workload_id) == job.id:
                del self._active[job.workload_id]

    def _publish(self, job: Job) -> None:
        with self._lock:
            event = {"type": "job", **job.to_dict()}
        self.bus.publish(event)
