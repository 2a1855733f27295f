"""
Shared route dependencies. Tests override these through
app.dependency_overrides.
"""
from functools import lru_cache
from typing import Optional, Tuple

from fastapi import Header, HTTPException

from prepress.core.config import settings
from prepress.services.adapters import InputAdapter, OutputAdapter, build_adapters
from prepress.services.findings import FindingsStore, findings_store
from prepress.services.job_store import Job, JobStore, job_store
from prepress.services.pipeline import STANDALONE_ORGANIZATION
from prepress.services.toolchain import SubprocessToolRunner, ToolRunner


def get_organization_id(x_organization_id: Optional[str] = Header(None)) -> Optional[str]:
    """
    Tenant scoping is done upstream; this service only trusts the header.
    No header means standalone mode, where job reads are unscoped.
    """
    return x_organization_id or None


def findings_organization(organization_id: Optional[str]) -> str:
    """Findings are always stored under an organization; standalone jobs use a fixed one."""
    return organization_id or STANDALONE_ORGANIZATION


def get_job_store() -> JobStore:
    return job_store


def get_findings_store() -> FindingsStore:
    return findings_store


def get_tool_runner() -> ToolRunner:
    return SubprocessToolRunner()


@lru_cache(maxsize=1)
def _adapters() -> Tuple[InputAdapter, OutputAdapter]:
    return build_adapters(settings)


def get_input_adapter() -> InputAdapter:
    return _adapters()[0]


def get_output_adapter() -> OutputAdapter:
    return _adapters()[1]


async def load_job(store: JobStore, job_id: str, organization_id: Optional[str]) -> Job:
    job = await store.get_job(job_id, organization_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job
