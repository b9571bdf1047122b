from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    GENERATING = "GENERATING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.EXPIRED})
ACTIVE = frozenset({JobStatus.QUEUED, JobStatus.GENERATING, JobStatus.PROCESSING})

# EXPIRED is never written; see effective_status
TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.GENERATING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.GENERATING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
}


class InvalidTransition(RuntimeError):
    def __init__(self, job_id: str | None, current: JobStatus | str, target: JobStatus | str) -> None:
        current = JobStatus(current)
        target = JobStatus(target)
        super().__init__(f"job {job_id}: cannot move {current.value} -> {target.value}")
        self.job_id = job_id
        self.current = current
        self.target = target


def is_terminal(status: JobStatus | str) -> bool:
    return JobStatus(status) in TERMINAL


def can_transition(current: JobStatus | str, target: JobStatus | str) -> bool:
    return JobStatus(target) in TRANSITIONS.get(JobStatus(current), frozenset())


def ensure_transition(current: JobStatus | str, target: JobStatus | str, job_id: str | None = None) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(job_id, current, target)


def effective_status(status: JobStatus | str, download_expires_at: datetime | None, at: datetime) -> JobStatus:
    """Status as observed at ``at``: a COMPLETED job whose download link lapsed reads as EXPIRED."""
    status = JobStatus(status)
    if status is JobStatus.COMPLETED and download_expires_at is not None and download_expires_at <= at:
        return JobStatus.EXPIRED
    return status
