"""
Job processor: claim one queued job, run the pipeline, finalize the row.
"""
import logging
import traceback
from typing import Any, Dict

from prepress.services.job_store import Job, JobStore
from prepress.services.pipeline import PreflightPipeline, build_output_manifest, build_report_summary

logger = logging.getLogger(__name__)


def error_payload(exc: BaseException) -> Dict[str, Any]:
    """Error column contents for a failed job."""
    return {
        "message": str(exc) or exc.__class__.__name__,
        "code": getattr(exc, "code", None) or "PROCESSING_ERROR",
        "details": {
            "type": exc.__class__.__name__,
            "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        },
    }


class JobProcessor:
    def __init__(self, store: JobStore, pipeline: PreflightPipeline):
        self.store = store
        self.pipeline = pipeline

    async def process_one_job(self) -> bool:
        """Claim and process a single job. False when nothing was queued."""
        job = await self.store.claim("Processing...")
        if job is None:
            return False
        await self.process_job(job)
        return True

    async def process_job(self, job: Job) -> bool:
        """
        Run a claimed job to a terminal state. Returns True on success,
        False on failure. Never raises for pipeline errors.
        """
        logger.info(f"Processing job {job.id} ({job.mode.value}, {job.original_filename})")
        try:
            result = await self.pipeline.run(job)
            await self.store.complete_job(
                job.id,
                report_summary=build_report_summary(result.report),
                output_manifest=build_output_manifest(result),
            )
            logger.info(f"Job {job.id} succeeded (score {result.report['summary']['score']})")
            return True
        except Exception as e:
            logger.exception(f"Job {job.id} failed: {e}")
            await self.store.fail_job(job.id, error_payload(e))
            return False
        finally:
            # Input bytes are scratch data whatever the outcome
            try:
                await self.pipeline.input_adapter.delete_input(job.id)
            except Exception as e:
                logger.warning(f"Scratch cleanup failed for job {job.id}: {e}")
