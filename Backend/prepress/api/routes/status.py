"""
Status Routes: toolchain availability of this host.
"""
import logging

from fastapi import APIRouter, Depends, Request

from prepress.api.deps import get_tool_runner
from prepress.core.limiter import TOOLS_LIMIT, limiter
from prepress.services.toolchain import ToolRunner, detect_tools

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/tools")
@limiter.limit(TOOLS_LIMIT)
async def get_tools(request: Request, runner: ToolRunner = Depends(get_tool_runner)):
    """Which preflight checks this host can run. Missing tools degrade jobs to warnings."""
    status = await detect_tools(runner)
    return {"toolAvailability": status.availability, "toolVersions": status.versions}
