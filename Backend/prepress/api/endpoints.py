from fastapi import APIRouter

from prepress.api.routes import findings, jobs, report, status

router = APIRouter()

router.include_router(jobs.router)
router.include_router(report.router)
router.include_router(findings.router)
router.include_router(status.router)
