"""
Job Routes: submission, listing, status and cancellation.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from prepress.api.deps import get_input_adapter, get_job_store, get_organization_id, load_job
from prepress.core.config import settings
from prepress.core.errors import UploadTooLargeError
from prepress.core.limiter import STATUS_LIMIT, SUBMIT_LIMIT, limiter
from prepress.services.adapters import InputAdapter
from prepress.services.job_store import JobMode, JobStore, submit_job

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/jobs", status_code=201)
@limiter.limit(SUBMIT_LIMIT)
async def create_job(
    request: Request,
    filename: str = Query("upload.pdf"),
    mode: JobMode = Query(JobMode.CHECK),
    organization_id: Optional[str] = Depends(get_organization_id),
    store: JobStore = Depends(get_job_store),
    input_adapter: InputAdapter = Depends(get_input_adapter),
):
    """
    Submit a file for preflight. The request body is the raw file; its
    Content-Type header is recorded as the declared MIME type.
    """
    # Reject before buffering when the client announces an oversized body
    declared = request.headers.get("content-length")
    max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise UploadTooLargeError(f"File too large. Max size: {settings.MAX_UPLOAD_SIZE_MB}MB")

    data = await request.body()
    content_type = request.headers.get("content-type", "application/octet-stream")

    job = await submit_job(
        data, filename, content_type,
        mode=mode, organization_id=organization_id, store=store, input_adapter=input_adapter,
    )
    return job.to_dict()


@router.get("/jobs")
@limiter.limit(STATUS_LIMIT)
async def list_jobs(
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    organization_id: Optional[str] = Depends(get_organization_id),
    store: JobStore = Depends(get_job_store),
):
    jobs = await store.list_jobs(organization_id, limit=limit)
    return [job.to_dict() for job in jobs]


@router.get("/jobs/{job_id}")
@limiter.limit(STATUS_LIMIT)
async def get_job(
    request: Request,
    job_id: str,
    organization_id: Optional[str] = Depends(get_organization_id),
    store: JobStore = Depends(get_job_store),
):
    job = await load_job(store, job_id, organization_id)
    return job.to_dict()


@router.post("/jobs/{job_id}/cancel")
@limiter.limit(STATUS_LIMIT)
async def cancel_job(
    request: Request,
    job_id: str,
    organization_id: Optional[str] = Depends(get_organization_id),
    store: JobStore = Depends(get_job_store),
):
    """Only queued jobs can be cancelled; running jobs finish normally."""
    job = await load_job(store, job_id, organization_id)
    if not await store.cancel_job(job.id, organization_id):
        current = await store.get_job(job.id, organization_id)
        status = current.status.value if current else job.status.value
        raise HTTPException(status_code=409, detail=f"Job cannot be cancelled in status '{status}'")
    return (await store.get_job(job.id, organization_id)).to_dict()
