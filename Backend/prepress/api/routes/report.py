"""
Report Routes: preflight report JSON and artifact downloads.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response

from prepress.api.deps import get_job_store, get_organization_id, get_output_adapter, load_job
from prepress.core.limiter import REPORT_LIMIT, limiter
from prepress.services.adapters import OutputAdapter
from prepress.services.job_store import JobStatus, JobStore
from prepress.services.storage import OUTPUT_FILENAMES

logger = logging.getLogger(__name__)
router = APIRouter()

MEDIA_TYPES = {
    "report_json": "application/json",
    "proof_png": "image/png",
    "fixed_pdf": "application/pdf",
}


@router.get("/jobs/{job_id}/report")
@limiter.limit(REPORT_LIMIT)
async def get_report(
    request: Request,
    job_id: str,
    organization_id: Optional[str] = Depends(get_organization_id),
    store: JobStore = Depends(get_job_store),
    output_adapter: OutputAdapter = Depends(get_output_adapter),
):
    """The stored prepress_report_v1 document. Only succeeded jobs have one."""
    job = await load_job(store, job_id, organization_id)
    if job.status != JobStatus.SUCCEEDED:
        raise HTTPException(status_code=409, detail=f"Report not available; job is {job.status.value}")

    # OutputMissingError maps to 404
    return json.loads(await output_adapter.read_output(job.id, "report_json"))


@router.get("/jobs/{job_id}/download/{kind}")
@limiter.limit(REPORT_LIMIT)
async def download_output(
    request: Request,
    job_id: str,
    kind: str,
    organization_id: Optional[str] = Depends(get_organization_id),
    store: JobStore = Depends(get_job_store),
    output_adapter: OutputAdapter = Depends(get_output_adapter),
):
    if kind not in OUTPUT_FILENAMES:
        raise HTTPException(status_code=404, detail=f"Unknown output kind: {kind}")

    job = await load_job(store, job_id, organization_id)
    if not (job.output_manifest or {}).get(kind):
        raise HTTPException(status_code=404, detail=f"Job has no {kind} output")

    data = await output_adapter.read_output(job.id, kind)

    stem = job.original_filename.rsplit(".", 1)[0]
    return Response(
        content=data,
        media_type=MEDIA_TYPES[kind],
        headers={"Content-Disposition": f"attachment; filename={stem}_{OUTPUT_FILENAMES[kind]}"},
    )
