import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from prepress.core import redis_client
from prepress.core.config import settings
from prepress.core.errors import EmptyUploadError, UploadTooLargeError
from prepress.db import utcnow
from prepress.services import job_store
from prepress.services.adapters import LocalInputAdapter
from prepress.services.job_store import JobMode, JobStatus, sanitize_filename, submit_job
from prepress.services.storage import get_job_paths


async def _queued(store, **kwargs):
    return await store.create_job("flyer.pdf", "application/pdf", 1024, **kwargs)


# ─── Creation ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_sets_ttl_from_creation_time(store):
    now = utcnow()
    job = await _queued(store, now=now)
    assert job.status == JobStatus.QUEUED
    assert job.expires_at == now + timedelta(hours=settings.JOB_TTL_HOURS)

    stored = await store.get_job(job.id)
    assert stored.expires_at == job.expires_at
    assert stored.started_at is None
    assert stored.finished_at is None


@pytest.mark.asyncio
async def test_to_dict_is_camel_case(store):
    data = (await _queued(store, mode=JobMode.CHECK_AND_FIX)).to_dict()
    assert data["mode"] == "check_and_fix"
    assert data["originalFilename"] == "flyer.pdf"
    assert data["sizeBytes"] == 1024
    assert data["startedAt"] is None


# ─── Claiming ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_claim_with_nothing_queued_returns_none(store):
    assert await store.claim() is None
    assert await store.claim() is None
    assert await store.list_jobs() == []


@pytest.mark.asyncio
async def test_claim_takes_oldest_first(store):
    now = utcnow()
    newer = await _queued(store, now=now)
    older = await _queued(store, now=now - timedelta(minutes=5))

    claimed = await store.claim("Processing...")
    assert claimed.id == older.id
    assert claimed.status == JobStatus.RUNNING
    assert claimed.started_at is not None
    assert claimed.progress_message == "Processing..."
    assert (await store.get_job(newer.id)).status == JobStatus.QUEUED


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(store):
    job = await _queued(store)
    results = await asyncio.gather(*(store.claim() for _ in range(8)))
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].id == job.id


# ─── Terminal transitions ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_complete_job(store):
    job = await _queued(store)
    await store.claim()
    summary = {"score": 98, "counts": {"BLOCKER": 0, "WARNING": 1, "INFO": 0}, "pageCount": 1}
    manifest = {"report_json": True, "proof_png": True, "fixed_pdf": False}

    assert await store.complete_job(job.id, summary, manifest)
    done = await store.get_job(job.id)
    assert done.status == JobStatus.SUCCEEDED
    assert done.finished_at is not None
    assert done.report_summary == summary
    assert done.output_manifest == manifest


@pytest.mark.asyncio
async def test_only_running_jobs_finish(store):
    job = await _queued(store)
    assert not await store.complete_job(job.id, {}, {})
    assert not await store.fail_job(job.id, {"message": "x", "code": "PROCESSING_ERROR"})
    assert (await store.get_job(job.id)).status == JobStatus.QUEUED


@pytest.mark.asyncio
async def test_fail_job_records_error(store):
    job = await _queued(store)
    await store.claim()
    error = {"message": "boom", "code": "PROCESSING_ERROR", "details": {"type": "RuntimeError"}}
    assert await store.fail_job(job.id, error)
    failed = await store.get_job(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error == error


# ─── Cancellation ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_only_from_queued(store):
    queued = await _queued(store)
    assert await store.cancel_job(queued.id)
    cancelled = await store.get_job(queued.id)
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.finished_at is not None
    assert not await store.cancel_job(queued.id)

    running = await _queued(store)
    await store.claim()
    assert not await store.cancel_job(running.id)
    assert (await store.get_job(running.id)).status == JobStatus.RUNNING


@pytest.mark.asyncio
async def test_cancelled_jobs_are_not_claimed(store):
    job = await _queued(store)
    await store.cancel_job(job.id)
    assert await store.claim() is None


# ─── Organization scoping ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reads_are_scoped_to_organization(store):
    mine = await _queued(store, organization_id="org-a")
    theirs = await _queued(store, organization_id="org-b")

    assert await store.get_job(theirs.id, "org-a") is None
    assert (await store.get_job(mine.id, "org-a")).id == mine.id
    assert [j.id for j in await store.list_jobs("org-a")] == [mine.id]
    assert {j.id for j in await store.list_jobs()} == {mine.id, theirs.id}
    assert not await store.cancel_job(theirs.id, "org-a")


# ─── Expiry ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_expired_respects_running_grace(store):
    past = utcnow() - timedelta(hours=settings.JOB_TTL_HOURS + 1)
    expired = await _queued(store, now=past)
    fresh = await _queued(store)
    running = await _queued(store, now=past - timedelta(minutes=1))
    assert (await store.claim()).id == running.id

    ids = [j.id for j in await store.list_expired(running_grace=timedelta(hours=2))]
    assert ids == [expired.id]

    ids = {j.id for j in await store.list_expired(running_grace=timedelta(0))}
    assert ids == {expired.id, running.id}
    assert fresh.id not in ids


# ─── Submission ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_submit_writes_input_then_queues(store):
    job = await submit_job(b"%PDF-1.4 body", "../../etc/my flyer.pdf", "application/pdf", store=store)
    assert job.original_filename == "my_flyer.pdf"
    assert job.size_bytes == len(b"%PDF-1.4 body")
    assert get_job_paths(job.id).input_file.read_bytes() == b"%PDF-1.4 body"


@pytest.mark.asyncio
async def test_submit_rejects_empty_and_oversized(store, monkeypatch):
    with pytest.raises(EmptyUploadError):
        await submit_job(b"", "a.pdf", "application/pdf", store=store)

    monkeypatch.setattr(settings, "MAX_UPLOAD_SIZE_MB", 1)
    with pytest.raises(UploadTooLargeError) as exc_info:
        await submit_job(b"x" * (1024 * 1024 + 1), "a.pdf", "application/pdf", store=store)
    assert exc_info.value.code == "FILE_TOO_LARGE"
    assert await store.list_jobs() == []


def test_sanitize_filename():
    assert sanitize_filename("C:\\x/y/Über file.pdf") == "_ber_file.pdf"
    assert sanitize_filename("") == "unnamed_file.pdf"


# ─── Status publishing ───────────────────────────────────────────────────────

def test_publish_update_uses_job_channel(monkeypatch):
    client = MagicMock()
    monkeypatch.setattr(redis_client, "_client", client)
    job_store.publish_update("job-1", {"job_id": "job-1", "status": "running"})
    client.publish.assert_called_once_with("prepress:job:job-1", '{"job_id": "job-1", "status": "running"}')


def test_publish_failure_is_swallowed(monkeypatch):
    client = MagicMock()
    client.publish.side_effect = ConnectionError("redis went away")
    monkeypatch.setattr(redis_client, "_client", client)
    job_store.publish_update("job-1", {"status": "failed"})


@pytest.fixture
def fresh_redis(monkeypatch):
    monkeypatch.setattr(redis_client, "_client", None)
    monkeypatch.setattr(redis_client, "_disabled", False)
    monkeypatch.setattr(settings, "REDIS_URL", "redis://cache:6379/0")
    connections = []

    def from_url(url, **kwargs):
        client = MagicMock()
        connections.append(client)
        return client

    monkeypatch.setattr(redis_client.redis, "from_url", from_url)
    return connections


def test_publisher_reuses_shared_connection(fresh_redis):
    shared = redis_client.get_redis()
    job_store.publish_update("job-1", {"status": "queued"})
    job_store.publish_update("job-1", {"status": "running"})

    assert fresh_redis == [shared]
    assert shared.ping.call_count == 1
    assert shared.publish.call_count == 2


def test_unreachable_redis_is_tried_once(fresh_redis, monkeypatch):
    def refused(url, **kwargs):
        fresh_redis.append(url)
        raise ConnectionError("connection refused")

    monkeypatch.setattr(redis_client.redis, "from_url", refused)
    assert redis_client.get_redis() is None
    job_store.publish_update("job-1", {"status": "queued"})
    assert fresh_redis == ["redis://cache:6379/0"]


# ─── Submission failures ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_failed_row_insert_removes_stored_input(store, monkeypatch):
    stored = []

    class RecordingInputAdapter(LocalInputAdapter):
        async def store_input(self, job_id, data):
            stored.append(job_id)
            await super().store_input(job_id, data)

    async def broken_create(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(store, "create_job", broken_create)
    with pytest.raises(RuntimeError):
        await submit_job(b"%PDF-1.4", "a.pdf", "application/pdf", store=store, input_adapter=RecordingInputAdapter())

    assert len(stored) == 1
    assert not get_job_paths(stored[0]).job_dir.exists()
