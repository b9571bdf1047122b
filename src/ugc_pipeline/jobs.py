import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel

from ugc_pipeline.config import settings
from ugc_pipeline.db import iso, now, reading, unit_of_work
from ugc_pipeline.prompts import VideoStyle
from ugc_pipeline.states import ACTIVE, InvalidTransition, JobStatus, effective_status, ensure_transition

logger = logging.getLogger(__name__)


class JobOwnershipLost(InvalidTransition):
    """The job is still in the expected status but another worker holds its lease."""


class JobAsset(BaseModel):
    public_id: str
    secure_url: str
    thumbnail_url: str | None = None
    download_url: str | None = None
    download_expires_at: datetime | None = None


class JobError(BaseModel):
    code: str
    message: str


class VideoJob(BaseModel):
    id: str
    user_id: str
    status: JobStatus
    style: VideoStyle
    script: str
    visual_summary: str | None = None
    reference_image_url: str | None = None
    prompt: str
    external_job_id: str | None = None
    credits_used: int = 0
    asset: JobAsset | None = None
    error: JobError | None = None
    poll_attempts: int = 0
    retry_of: str | None = None
    created_at: datetime
    updated_at: datetime
    generation_started_at: datetime | None = None
    completed_at: datetime | None = None
    heartbeat_at: datetime | None = None
    worker_id: str | None = None
    lease_expires_at: datetime | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "VideoJob":
        data = dict(row)
        asset = None
        if data.get("asset_public_id"):
            asset = JobAsset(
                public_id=data["asset_public_id"],
                secure_url=data["asset_secure_url"],
                thumbnail_url=data.get("asset_thumbnail_url"),
                download_url=data.get("download_url"),
                download_expires_at=data.get("download_expires_at"),
            )
        error = None
        if data.get("error_code"):
            error = JobError(code=data["error_code"], message=data.get("error_message") or "")
        for col in (
            "asset_public_id",
            "asset_secure_url",
            "asset_thumbnail_url",
            "download_url",
            "download_expires_at",
            "error_code",
            "error_message",
        ):
            data.pop(col, None)
        return cls(**data, asset=asset, error=error)

    def observed(self, at: datetime | None = None) -> "VideoJob":
        expires = self.asset.download_expires_at if self.asset else None
        status = effective_status(self.status, expires, at or now())
        if status is self.status:
            return self
        return self.model_copy(update={"status": status})


# written with COALESCE so the first value sticks
_SET_ONCE = frozenset({"generation_started_at", "completed_at"})

_UPDATABLE = frozenset(
    {
        "generation_started_at",
        "completed_at",
        "heartbeat_at",
        "asset_public_id",
        "asset_secure_url",
        "asset_thumbnail_url",
        "download_url",
        "download_expires_at",
        "error_code",
        "error_message",
    }
)


class JobStore:
    def __init__(self, database_path: str | None = None) -> None:
        self._database_path = database_path

    @property
    def database_path(self) -> str:
        return self._database_path or settings.database_path

    def create(
        self,
        job_id: str,
        user_id: str,
        style: VideoStyle,
        script: str,
        prompt: str,
        credits_used: int,
        visual_summary: str | None = None,
        reference_image_url: str | None = None,
        retry_of: str | None = None,
        worker_id: str | None = None,
        lease_sec: float | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        created = now()
        ts = iso(created)
        lease = iso(created + timedelta(seconds=lease_sec)) if worker_id and lease_sec is not None else None
        with unit_of_work(conn, self.database_path) as c:
            c.execute(
                """
                INSERT INTO video_jobs (
                  id, user_id, status, style, script, visual_summary, reference_image_url,
                  prompt, credits_used, retry_of, created_at, updated_at, worker_id, lease_expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    user_id,
                    JobStatus.QUEUED.value,
                    VideoStyle(style).value,
                    script,
                    visual_summary,
                    reference_image_url,
                    prompt,
                    credits_used,
                    retry_of,
                    ts,
                    ts,
                    worker_id if lease else None,
                    lease,
                ),
            )

    def get(self, job_id: str) -> VideoJob | None:
        with reading(self.database_path) as conn:
            row = conn.execute("SELECT * FROM video_jobs WHERE id = ?", (job_id,)).fetchone()
        return VideoJob.from_row(row) if row else None

    def list_for_user(self, user_id: str, page: int = 1, limit: int = 20) -> tuple[list[VideoJob], int]:
        offset = max(page - 1, 0) * limit
        with reading(self.database_path) as conn:
            rows = conn.execute(
                "SELECT * FROM video_jobs WHERE user_id = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (user_id, limit, offset),
            ).fetchall()
            total = conn.execute("SELECT COUNT(*) c FROM video_jobs WHERE user_id = ?", (user_id,)).fetchone()["c"]
        return [VideoJob.from_row(r) for r in rows], int(total)

    def transition(
        self,
        job_id: str,
        expected: JobStatus,
        target: JobStatus,
        unsubmitted_only: bool = False,
        owner: str | None = None,
        **fields: Any,
    ) -> VideoJob:
        """Compare-and-swap ``expected -> target``.

        Raises ``InvalidTransition`` when the move is illegal or when the stored
        status no longer equals ``expected``; nothing is written in either case.
        With ``unsubmitted_only`` the write also requires that no external job
        id has been recorded yet. With ``owner`` it requires that this worker
        still holds the job's lease, and raises ``JobOwnershipLost`` otherwise.
        """
        ensure_transition(expected, target, job_id)
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"unknown job fields: {sorted(unknown)}")

        ts = iso()
        assignments = ["status = ?", "updated_at = ?"]
        values: list[Any] = [JobStatus(target).value, ts]
        for col, value in fields.items():
            if isinstance(value, datetime):
                value = iso(value)
            assignments.append(f"{col} = COALESCE({col}, ?)" if col in _SET_ONCE else f"{col} = ?")
            values.append(value)
        values.extend([job_id, JobStatus(expected).value])
        guard = " AND external_job_id IS NULL" if unsubmitted_only else ""
        if owner is not None:
            guard += " AND worker_id = ?"
            values.append(owner)

        with unit_of_work(None, self.database_path) as conn:
            cur = conn.execute(
                f"UPDATE video_jobs SET {', '.join(assignments)} WHERE id = ? AND status = ?{guard}",
                tuple(values),
            )
            if cur.rowcount == 0:
                row = conn.execute("SELECT status, worker_id FROM video_jobs WHERE id = ?", (job_id,)).fetchone()
                if not row:
                    raise KeyError(job_id)
                if owner is not None and row["status"] == JobStatus(expected).value and row["worker_id"] != owner:
                    raise JobOwnershipLost(job_id, row["status"], target)
                raise InvalidTransition(job_id, row["status"], target)
            row = conn.execute("SELECT * FROM video_jobs WHERE id = ?", (job_id,)).fetchone()
        logger.info("Job %s: %s -> %s", job_id, JobStatus(expected).value, JobStatus(target).value)
        return VideoJob.from_row(row)

    def record_external_job_id(self, job_id: str, external_job_id: str, owner: str | None = None) -> bool:
        guard = " AND worker_id = ?" if owner is not None else ""
        params: tuple = (external_job_id, iso(), iso(), job_id, JobStatus.QUEUED.value)
        with unit_of_work(None, self.database_path) as conn:
            cur = conn.execute(
                f"""
                UPDATE video_jobs SET external_job_id = ?, updated_at = ?, heartbeat_at = ?
                WHERE id = ? AND external_job_id IS NULL AND status = ?{guard}
                """,
                params + ((owner,) if owner is not None else ()),
            )
        return cur.rowcount == 1

    def claim(self, job_id: str, worker_id: str, lease_sec: float) -> VideoJob | None:
        """Take the lease on an active job.

        Succeeds when the job is unowned, already ours, or its lease has
        lapsed. Returns the claimed job, or None when another worker still
        holds a live lease or the job is no longer active.
        """
        at = now()
        statuses = [s.value for s in ACTIVE]
        with unit_of_work(None, self.database_path) as conn:
            cur = conn.execute(
                f"""
                UPDATE video_jobs SET worker_id = ?, heartbeat_at = ?, lease_expires_at = ?
                WHERE id = ?
                  AND status IN ({", ".join("?" for _ in statuses)})
                  AND (worker_id IS NULL OR worker_id = ? OR lease_expires_at IS NULL OR lease_expires_at < ?)
                """,
                (
                    worker_id,
                    iso(at),
                    iso(at + timedelta(seconds=lease_sec)),
                    job_id,
                    *statuses,
                    worker_id,
                    iso(at),
                ),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM video_jobs WHERE id = ?", (job_id,)).fetchone()
        return VideoJob.from_row(row)

    def renew_lease(self, job_id: str, worker_id: str, lease_sec: float) -> bool:
        """Extend our lease; False means another worker has taken the job."""
        at = now()
        with unit_of_work(None, self.database_path) as conn:
            cur = conn.execute(
                "UPDATE video_jobs SET heartbeat_at = ?, lease_expires_at = ? WHERE id = ? AND worker_id = ?",
                (iso(at), iso(at + timedelta(seconds=lease_sec)), job_id, worker_id),
            )
        return cur.rowcount == 1

    def record_poll(self, job_id: str) -> int:
        """Consume one poll attempt and refresh the worker heartbeat."""
        with unit_of_work(None, self.database_path) as conn:
            ts = iso()
            conn.execute(
                "UPDATE video_jobs SET poll_attempts = poll_attempts + 1, heartbeat_at = ?, updated_at = ? WHERE id = ?",
                (ts, ts, job_id),
            )
            row = conn.execute("SELECT poll_attempts FROM video_jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            raise KeyError(job_id)
        return int(row["poll_attempts"])

    def list_stale(self, at: datetime, before: datetime, limit: int = 100) -> list[VideoJob]:
        """Active jobs nobody is driving.

        A leased job is stale once its lease lapses at ``at``. A job without a
        lease falls back to its last sign of life being older than ``before``.
        """
        statuses = [s.value for s in ACTIVE]
        with reading(self.database_path) as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM video_jobs
                WHERE status IN ({", ".join("?" for _ in statuses)})
                  AND (
                    (lease_expires_at IS NOT NULL AND lease_expires_at < ?)
                    OR (lease_expires_at IS NULL AND COALESCE(heartbeat_at, generation_started_at, created_at) < ?)
                  )
                ORDER BY created_at
                LIMIT ?
                """,
                (*statuses, iso(at), iso(before), limit),
            ).fetchall()
        return [VideoJob.from_row(r) for r in rows]

    def list_unrefunded(self, limit: int = 100) -> list[VideoJob]:
        with reading(self.database_path) as conn:
            rows = conn.execute(
                """
                SELECT j.* FROM video_jobs j
                WHERE j.status IN ('FAILED', 'CANCELLED')
                  AND j.credits_used > 0
                  AND EXISTS (
                    SELECT 1 FROM credit_transactions t WHERE t.related_job_id = j.id AND t.type = 'DEBIT'
                  )
                  AND NOT EXISTS (
                    SELECT 1 FROM credit_transactions t WHERE t.related_job_id = j.id AND t.type = 'REFUND'
                  )
                ORDER BY j.updated_at
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [VideoJob.from_row(r) for r in rows]

    def count(self) -> int:
        with reading(self.database_path) as conn:
            return int(conn.execute("SELECT COUNT(*) c FROM video_jobs").fetchone()["c"])
