import asyncio
from datetime import timedelta

import pytest

from conftest import FakeToolRunner, make_pdf
from prepress.core.config import settings
from prepress.db import utcnow
from prepress.services.adapters import LocalInputAdapter, LocalOutputAdapter
from prepress.services.cleanup import cleanup_expired_jobs
from prepress.services.job_store import JobStatus, submit_job
from prepress.services.processor import JobProcessor, error_payload
from prepress.services.storage import get_job_paths, initialize_job_directory, write_file
from prepress.services.worker_runtime import CleanupSweeper, Poller, WorkerRuntime, _PeriodicLoop


class ExplodingPipeline:
    input_adapter = LocalInputAdapter()
    output_adapter = LocalOutputAdapter()

    async def run(self, job):
        raise RuntimeError("renderer crashed")


async def _wait_for_status(store, job_id, status, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        job = await store.get_job(job_id)
        if job.status == status:
            return job
        await asyncio.sleep(0.02)
    raise AssertionError(f"job {job_id} never reached {status}")


# ─── Processor ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_processor_success_finalizes_and_drops_input(store, pipeline):
    job = await submit_job(make_pdf(), "flyer.pdf", "application/pdf", store=store)
    processor = JobProcessor(store, pipeline)

    assert await processor.process_one_job()
    done = await store.get_job(job.id)
    assert done.status == JobStatus.SUCCEEDED
    assert done.report_summary == {"score": 100, "counts": {"BLOCKER": 0, "WARNING": 0, "INFO": 0}, "pageCount": 1}
    assert done.output_manifest == {"report_json": True, "proof_png": True, "fixed_pdf": False}

    paths = get_job_paths(job.id)
    assert not paths.input_file.exists()
    assert paths.report_json.exists()


@pytest.mark.asyncio
async def test_processor_idle(store, pipeline):
    assert not await JobProcessor(store, pipeline).process_one_job()


@pytest.mark.asyncio
async def test_processor_failure_records_error(store):
    job = await submit_job(make_pdf(), "flyer.pdf", "application/pdf", store=store)
    processor = JobProcessor(store, ExplodingPipeline())

    assert await processor.process_one_job()
    failed = await store.get_job(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error["message"] == "renderer crashed"
    assert failed.error["code"] == "PROCESSING_ERROR"
    assert failed.error["details"]["type"] == "RuntimeError"
    assert "Traceback" in failed.error["details"]["stack"]
    assert not get_job_paths(job.id).input_file.exists()


@pytest.mark.asyncio
async def test_missing_input_fails_with_code(store, pipeline):
    job = await store.create_job("ghost.pdf", "application/pdf", 10)
    await JobProcessor(store, pipeline).process_one_job()

    failed = await store.get_job(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error["code"] == "INPUT_MISSING"


def test_error_payload_without_message():
    payload = error_payload(KeyError())
    assert payload["message"] == "KeyError"
    assert payload["code"] == "PROCESSING_ERROR"


# ─── Poller ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_poller_tick_runs_up_to_concurrency(store, pipeline):
    jobs = [await submit_job(make_pdf(), f"f{i}.pdf", "application/pdf", store=store) for i in range(3)]
    poller = Poller(JobProcessor(store, pipeline), interval_ms=10, concurrency=2)

    assert await poller.tick() == 2
    assert await poller.tick() == 1
    assert await poller.tick() == 0
    for job in jobs:
        assert (await store.get_job(job.id)).status == JobStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_poller_tick_survives_processor_errors(store):
    class BrokenProcessor:
        async def process_one_job(self):
            raise RuntimeError("database is locked")

    assert await Poller(BrokenProcessor(), concurrency=3).tick() == 0


@pytest.mark.asyncio
async def test_poller_start_and_stop_are_idempotent(store, pipeline):
    job = await submit_job(make_pdf(), "flyer.pdf", "application/pdf", store=store)
    poller = Poller(JobProcessor(store, pipeline), interval_ms=60_000)

    poller.start()
    poller.start()
    assert poller.running
    # First tick runs immediately, not after the interval
    await _wait_for_status(store, job.id, JobStatus.SUCCEEDED)

    await poller.stop()
    await poller.stop()
    assert not poller.running


# ─── Cleanup ─────────────────────────────────────────────────────────────────

async def _job_with_directory(store, created_at):
    job = await store.create_job("old.pdf", "application/pdf", 4, now=created_at)
    write_file(initialize_job_directory(job.id).input_file, b"%PDF")
    return job


@pytest.mark.asyncio
async def test_cleanup_removes_expired_jobs(store):
    past = utcnow() - timedelta(hours=settings.JOB_TTL_HOURS + 1)
    expired = await _job_with_directory(store, past)
    fresh = await _job_with_directory(store, utcnow())

    assert await cleanup_expired_jobs(store) == 1
    assert await store.get_job(expired.id) is None
    assert not get_job_paths(expired.id).job_dir.exists()
    assert await store.get_job(fresh.id) is not None
    assert get_job_paths(fresh.id).input_file.exists()


@pytest.mark.asyncio
async def test_cleanup_continues_past_a_failing_job(store):
    past = utcnow() - timedelta(hours=settings.JOB_TTL_HOURS + 1)
    stuck = await _job_with_directory(store, past - timedelta(minutes=1))
    other = await _job_with_directory(store, past)

    class BusyOutputAdapter(LocalOutputAdapter):
        async def delete_job(self, job_id):
            if job_id == stuck.id:
                raise PermissionError("directory busy")
            await super().delete_job(job_id)

    assert await cleanup_expired_jobs(store, BusyOutputAdapter()) == 1
    assert await store.get_job(stuck.id) is not None
    assert await store.get_job(other.id) is None


@pytest.mark.asyncio
async def test_sweeper_tick(store):
    past = utcnow() - timedelta(hours=settings.JOB_TTL_HOURS + 1)
    await _job_with_directory(store, past)
    sweeper = CleanupSweeper(store, interval_ms=60_000, batch_size=10, running_grace_minutes=0)
    assert await sweeper.tick() == 1
    assert await sweeper.tick() == 0


# ─── Runtime ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_runtime_processes_submitted_jobs(store):
    runtime = WorkerRuntime.from_settings(settings, runner=FakeToolRunner())
    job = await submit_job(make_pdf(), "flyer.pdf", "application/pdf", store=store)

    runtime.start()
    assert runtime.running
    try:
        done = await _wait_for_status(store, job.id, JobStatus.SUCCEEDED)
    finally:
        await runtime.stop()

    assert not runtime.running
    assert done.output_manifest["report_json"] is True


def test_periodic_loop_requires_tick():
    class NoWork(_PeriodicLoop):
        pass

    with pytest.raises(TypeError):
        NoWork(interval_ms=10)


@pytest.mark.asyncio
async def test_runtime_sweeper_uses_pipeline_storage(store):
    runtime = WorkerRuntime.from_settings(settings, runner=FakeToolRunner())
    assert runtime.sweeper.output_adapter is runtime.processor.pipeline.output_adapter
