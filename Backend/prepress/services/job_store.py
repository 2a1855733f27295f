import json
import logging
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from prepress.core.config import settings
from prepress.core.errors import EmptyUploadError, UploadTooLargeError
from prepress.core.redis_client import get_redis
from prepress.db import dialect, get_async_db_connection, parse_timestamp, utcnow
from prepress.services.adapters import InputAdapter, LocalInputAdapter

logger = logging.getLogger(__name__)


def publish_update(job_id: str, data: Dict[str, Any]):
    """Publish a job state change to Redis. Best-effort."""
    client = get_redis()
    if client:
        try:
            client.publish(f"prepress:job:{job_id}", json.dumps(data, default=str))
        except Exception as e:
            logger.error(f"Redis publish failed: {e}")


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobMode(str, Enum):
    CHECK = "check"
    CHECK_AND_FIX = "check_and_fix"


@dataclass
class Job:
    id: str
    status: JobStatus
    mode: JobMode
    original_filename: str
    content_type: str
    size_bytes: int
    created_at: datetime
    expires_at: datetime
    organization_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    report_summary: Optional[Dict[str, Any]] = None
    output_manifest: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    progress_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        def ts(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "status": self.status.value,
            "mode": self.mode.value,
            "originalFilename": self.original_filename,
            "contentType": self.content_type,
            "sizeBytes": self.size_bytes,
            "createdAt": ts(self.created_at),
            "startedAt": ts(self.started_at),
            "finishedAt": ts(self.finished_at),
            "expiresAt": ts(self.expires_at),
            "reportSummary": self.report_summary,
            "outputManifest": self.output_manifest,
            "error": self.error,
            "progressMessage": self.progress_message,
        }


def _load_json(value: Any) -> Optional[Dict[str, Any]]:
    if value is None or isinstance(value, dict):
        return value
    return json.loads(value)


def _dump_json(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _row_to_job(row) -> Job:
    r = dict(row)
    return Job(
        id=r["id"],
        organization_id=r["organization_id"],
        status=JobStatus(r["status"]),
        mode=JobMode(r["mode"]),
        original_filename=r["original_filename"],
        content_type=r["content_type"],
        size_bytes=r["size_bytes"],
        created_at=parse_timestamp(r["created_at"]),
        started_at=parse_timestamp(r["started_at"]),
        finished_at=parse_timestamp(r["finished_at"]),
        expires_at=parse_timestamp(r["expires_at"]),
        report_summary=_load_json(r["report_summary"]),
        output_manifest=_load_json(r["output_manifest"]),
        error=_load_json(r["error"]),
        progress_message=r["progress_message"],
    )


class JobStore:
    """
    Durable job rows and the job state machine:

        queued -> running -> succeeded | failed
        queued -> cancelled

    The only cross-process coordination is the atomic claim.
    """

    async def create_job(
        self,
        original_filename: str,
        content_type: str,
        size_bytes: int,
        mode: JobMode = JobMode.CHECK,
        organization_id: Optional[str] = None,
        job_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        job_id = job_id or str(uuid.uuid4())
        created_at = now or utcnow()
        # TTL is fixed at creation and never extended
        expires_at = created_at + timedelta(hours=settings.JOB_TTL_HOURS)
        mode = JobMode(mode)

        query = """
            INSERT INTO prepress_jobs
                (id, organization_id, status, mode, original_filename, content_type,
                 size_bytes, created_at, expires_at, progress_message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        args = (
            job_id, organization_id, JobStatus.QUEUED.value, mode.value, original_filename,
            content_type, size_bytes, created_at, expires_at, "Queued",
        )
        async with get_async_db_connection() as conn:
            await conn.execute(query, args)
            await conn.commit()

        logger.info(f"Job {job_id} created ({mode.value}, {size_bytes} bytes).")
        publish_update(job_id, {"job_id": job_id, "status": JobStatus.QUEUED.value})
        return Job(
            id=job_id,
            organization_id=organization_id,
            status=JobStatus.QUEUED,
            mode=mode,
            original_filename=original_filename,
            content_type=content_type,
            size_bytes=size_bytes,
            created_at=created_at,
            expires_at=expires_at,
            progress_message="Queued",
        )

    async def get_job(self, job_id: str, organization_id: Optional[str] = None) -> Optional[Job]:
        """Fetch one job. When organization_id is given, other tenants' jobs are invisible."""
        query = "SELECT * FROM prepress_jobs WHERE id = ?"
        args: tuple = (job_id,)
        if organization_id is not None:
            query += " AND organization_id = ?"
            args += (organization_id,)

        async with get_async_db_connection() as conn:
            cursor = await conn.execute(query, args)
            row = await cursor.fetchone()
        return _row_to_job(row) if row else None

    async def list_jobs(self, organization_id: Optional[str] = None, limit: int = 100) -> List[Job]:
        """Newest first. organization_id=None lists every job (standalone mode)."""
        if organization_id is None:
            query, args = "SELECT * FROM prepress_jobs ORDER BY created_at DESC LIMIT ?", (limit,)
        else:
            query = "SELECT * FROM prepress_jobs WHERE organization_id = ? ORDER BY created_at DESC LIMIT ?"
            args = (organization_id, limit)

        async with get_async_db_connection() as conn:
            cursor = await conn.execute(query, args)
            rows = await cursor.fetchall()
        return [_row_to_job(r) for r in rows]

    async def claim(self, progress_message: str = "Processing...") -> Optional[Job]:
        """
        Atomically move the oldest queued job to running.
        Returns None when nothing is queued or another worker won the race.
        """
        if dialect() == "postgres":
            pick = "SELECT id FROM prepress_jobs WHERE status = ? ORDER BY created_at LIMIT 1 FOR UPDATE SKIP LOCKED"
        else:
            pick = "SELECT id FROM prepress_jobs WHERE status = ? ORDER BY created_at LIMIT 1"

        query = f"""
            UPDATE prepress_jobs
            SET status = ?, started_at = ?, progress_message = ?
            WHERE id = ({pick}) AND status = ?
            RETURNING *
        """
        args = (
            JobStatus.RUNNING.value, utcnow(), progress_message,
            JobStatus.QUEUED.value, JobStatus.QUEUED.value,
        )

        async with get_async_db_connection() as conn:
            await conn.begin_write()
            cursor = await conn.execute(query, args)
            rows = await cursor.fetchall()
            await conn.commit()

        if not rows:
            return None

        job = _row_to_job(rows[0])
        logger.info(f"Claimed job {job.id}")
        publish_update(job.id, {"job_id": job.id, "status": JobStatus.RUNNING.value, "message": progress_message})
        return job

    async def complete_job(
        self,
        job_id: str,
        report_summary: Dict[str, Any],
        output_manifest: Dict[str, Any],
        progress_message: str = "Completed successfully",
    ) -> bool:
        return await self._finish(
            job_id,
            JobStatus.SUCCEEDED,
            progress_message,
            report_summary=report_summary,
            output_manifest=output_manifest,
        )

    async def fail_job(self, job_id: str, error: Dict[str, Any]) -> bool:
        message = f"Failed: {error.get('message', 'unknown error')}"
        finished = await self._finish(job_id, JobStatus.FAILED, message, error=error)
        if finished:
            logger.error(f"Job {job_id} marked as FAILED in DB: {error.get('message')}")
        return finished

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        progress_message: str,
        report_summary: Optional[Dict[str, Any]] = None,
        output_manifest: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Terminal transition. Only a running job can finish."""
        query = """
            UPDATE prepress_jobs
            SET status = ?, finished_at = ?, report_summary = ?, output_manifest = ?,
                error = ?, progress_message = ?
            WHERE id = ? AND status = ?
            RETURNING id
        """
        args = (
            status.value, utcnow(), _dump_json(report_summary), _dump_json(output_manifest),
            _dump_json(error), progress_message, job_id, JobStatus.RUNNING.value,
        )
        async with get_async_db_connection() as conn:
            cursor = await conn.execute(query, args)
            rows = await cursor.fetchall()
            await conn.commit()

        if not rows:
            logger.warning(f"Job {job_id} was not running; {status.value} transition skipped.")
            return False

        publish_update(job_id, {
            "job_id": job_id,
            "status": status.value,
            "message": progress_message,
            "report_summary": report_summary,
            "error": error,
        })
        return True

    async def cancel_job(self, job_id: str, organization_id: Optional[str] = None) -> bool:
        """Cancel a job that no worker has claimed yet."""
        query = """
            UPDATE prepress_jobs
            SET status = ?, finished_at = ?, progress_message = ?
            WHERE id = ? AND status = ?
        """
        args: tuple = (JobStatus.CANCELLED.value, utcnow(), "Cancelled", job_id, JobStatus.QUEUED.value)
        if organization_id is not None:
            query += " AND organization_id = ?"
            args += (organization_id,)
        query += " RETURNING id"

        async with get_async_db_connection() as conn:
            cursor = await conn.execute(query, args)
            rows = await cursor.fetchall()
            await conn.commit()

        if rows:
            logger.info(f"Job {job_id} cancelled.")
            publish_update(job_id, {"job_id": job_id, "status": JobStatus.CANCELLED.value})
        return bool(rows)

    async def list_expired(
        self,
        now: Optional[datetime] = None,
        limit: int = 100,
        running_grace: timedelta = timedelta(0),
    ) -> List[Job]:
        """
        Jobs whose TTL has passed. Running jobs additionally need to be past
        the grace period, so a live worker does not lose its directory.
        """
        now = now or utcnow()
        query = """
            SELECT * FROM prepress_jobs
            WHERE (status <> ? AND expires_at < ?)
               OR (status = ? AND expires_at < ?)
            ORDER BY expires_at
            LIMIT ?
        """
        args = (
            JobStatus.RUNNING.value, now,
            JobStatus.RUNNING.value, now - running_grace,
            limit,
        )
        async with get_async_db_connection() as conn:
            cursor = await conn.execute(query, args)
            rows = await cursor.fetchall()
        return [_row_to_job(r) for r in rows]

    async def delete_job(self, job_id: str) -> None:
        """Delete the row; findings and fix logs cascade."""
        async with get_async_db_connection() as conn:
            await conn.execute("DELETE FROM prepress_jobs WHERE id = ?", (job_id,))
            await conn.commit()


job_store = JobStore()


# ─── Submission ──────────────────────────────────────────────────────────────

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def sanitize_filename(filename: Optional[str]) -> str:
    """Strip directories and anything outside [a-zA-Z0-9_.-]."""
    base_name = os.path.basename(filename or "")
    safe_filename = _UNSAFE_FILENAME_CHARS.sub("_", base_name)
    return safe_filename or "unnamed_file.pdf"


async def submit_job(
    data: bytes,
    filename: str,
    content_type: str,
    mode: JobMode = JobMode.CHECK,
    organization_id: Optional[str] = None,
    store: Optional[JobStore] = None,
    input_adapter: Optional[InputAdapter] = None,
) -> Job:
    """
    Store the input bytes under the new job id, then create the queued row.
    The row never exists without its input.
    """
    max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    if len(data) > max_bytes:
        raise UploadTooLargeError(
            f"File too large. Max size: {settings.MAX_UPLOAD_SIZE_MB}MB",
            {"sizeBytes": len(data), "maxBytes": max_bytes},
        )
    if not data:
        raise EmptyUploadError("Uploaded file is empty")

    store = store or job_store
    job_id = str(uuid.uuid4())
    input_adapter = input_adapter or LocalInputAdapter()
    await input_adapter.store_input(job_id, data)

    try:
        return await store.create_job(
            sanitize_filename(filename),
            content_type or "application/octet-stream",
            len(data),
            mode=mode,
            organization_id=organization_id,
            job_id=job_id,
        )
    except Exception:
        await input_adapter.delete_input(job_id)
        raise
