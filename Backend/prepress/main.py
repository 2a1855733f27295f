import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from prepress.api import endpoints
from prepress.core.config import settings
from prepress.core.errors import PrepressError
from prepress.core.limiter import limiter
from prepress.db import close_async_db, init_async_db, init_db

logger = logging.getLogger(__name__)

# PrepressError code -> HTTP status
ERROR_STATUS = {
    "FILE_TOO_LARGE": 413,
    "EMPTY_FILE": 400,
    "INPUT_MISSING": 404,
    "OUTPUT_MISSING": 404,
    "JOB_FINALIZED": 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: Initialize Database
    try:
        init_db()
        await init_async_db()
    except Exception as e:
        logging.getLogger("uvicorn").error(f"DATABASE INIT FAILED: {e}")

    runtime = None
    if settings.EMBEDDED_WORKER:
        from prepress.services.worker_runtime import WorkerRuntime
        runtime = WorkerRuntime.from_settings(settings)
        runtime.start()
        logger.info("Embedded preflight worker started.")

    yield

    if runtime is not None:
        await runtime.stop()
    await close_async_db()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# Rate Limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(PrepressError)
async def prepress_error_handler(request: Request, exc: PrepressError):
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.code, 400),
        content={"code": exc.code, "message": exc.message, "details": exc.details},
    )


# Set all CORS enabled origins (with production-aware guard)
_cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]

if settings.DATABASE_URL and any("localhost" in o for o in _cors_origins):
    logging.getLogger("cors").warning(
        "⚠ CORS allows localhost origins while DATABASE_URL is set (production?). "
        "Set CORS_ORIGINS env var to restrict origins in production."
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(endpoints.router, prefix="/api/prepress", tags=["prepress"])


@app.get("/health")
def health_check():
    return {"status": "healthy", "project": settings.PROJECT_NAME}
