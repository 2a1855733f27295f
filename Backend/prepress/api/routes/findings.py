"""
Findings Routes: persisted findings and fix audit trail of a job.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request

from prepress.api.deps import findings_organization, get_findings_store, get_job_store, get_organization_id, load_job
from prepress.core.limiter import STATUS_LIMIT, limiter
from prepress.services.findings import FindingsStore
from prepress.services.job_store import JobStore

router = APIRouter()


@router.get("/jobs/{job_id}/findings")
@limiter.limit(STATUS_LIMIT)
async def get_findings(
    request: Request,
    job_id: str,
    organization_id: Optional[str] = Depends(get_organization_id),
    store: JobStore = Depends(get_job_store),
    findings: FindingsStore = Depends(get_findings_store),
):
    job = await load_job(store, job_id, organization_id)
    rows = await findings.get_job_findings(job.id, findings_organization(organization_id or job.organization_id))
    return [row.to_dict() for row in rows]


@router.get("/jobs/{job_id}/fixes")
@limiter.limit(STATUS_LIMIT)
async def get_fix_logs(
    request: Request,
    job_id: str,
    organization_id: Optional[str] = Depends(get_organization_id),
    store: JobStore = Depends(get_job_store),
    findings: FindingsStore = Depends(get_findings_store),
):
    job = await load_job(store, job_id, organization_id)
    rows = await findings.get_job_fix_logs(job.id, findings_organization(organization_id or job.organization_id))
    return [row.to_dict() for row in rows]
