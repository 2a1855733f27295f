import pytest

from prepress.core.errors import FindingsLockedError
from prepress.services.findings import is_operational_spot_color


async def _running_job(store, organization_id="org-a"):
    job = await store.create_job("art.pdf", "application/pdf", 10, organization_id=organization_id)
    await store.claim()
    return job


@pytest.mark.asyncio
async def test_missing_dpi_finding(store, findings):
    job = await _running_job(store)
    finding = await findings.log_missing_dpi(job.id, "org-a", detected_dpi=72)
    assert finding.finding_type == "missing_dpi"
    assert finding.severity == "info"
    assert finding.required_dpi == 300

    rows = await findings.get_job_findings(job.id, "org-a")
    assert [(r.finding_type, r.detected_dpi, r.required_dpi) for r in rows] == [("missing_dpi", 72, 300)]
    assert rows[0].metadata["detectedDpi"] == 72


@pytest.mark.parametrize("name", ["CutContour", "  spotwhite ", "WHITE", "Cut", "Dieline"])
def test_operational_spot_colors(name):
    assert is_operational_spot_color(name)


@pytest.mark.asyncio
async def test_operational_spot_colors_are_not_recorded(store, findings):
    job = await _running_job(store)
    assert await findings.log_spot_color(job.id, "org-a", "CutContour") is None
    recorded = await findings.log_spot_color(job.id, "org-a", "PANTONE 185 C", page_number=2)
    assert recorded.spot_color_name == "PANTONE 185 C"
    assert recorded.color_model == "Spot"

    rows = await findings.get_job_findings(job.id, "org-a")
    assert [r.spot_color_name for r in rows] == ["PANTONE 185 C"]


@pytest.mark.asyncio
async def test_fix_log_round_trip(store, findings):
    job = await _running_job(store)
    await findings.log_fix(
        job.id, "org-a", "pdf_normalize", "Normalized PDF",
        before_snapshot={"issues": 3}, after_snapshot={"tool": "ghostscript"},
    )
    logs = await findings.get_job_fix_logs(job.id, "org-a")
    assert len(logs) == 1
    assert logs[0].fixed_by_user_id is None
    assert logs[0].before_snapshot == {"issues": 3}
    assert logs[0].to_dict()["fixType"] == "pdf_normalize"


@pytest.mark.asyncio
async def test_unknown_types_are_rejected(store, findings):
    job = await _running_job(store)
    with pytest.raises(ValueError):
        await findings.create_finding(job.id, "org-a", "bleed_missing", "nope")
    with pytest.raises(ValueError):
        await findings.create_fix_log(job.id, "org-a", "magic", "nope")


@pytest.mark.asyncio
async def test_findings_are_locked_once_job_is_terminal(store, findings):
    job = await _running_job(store)
    await findings.log_missing_dpi(job.id, "org-a", detected_dpi=100)
    await store.complete_job(job.id, {"score": 100}, {"report_json": True})

    with pytest.raises(FindingsLockedError) as exc_info:
        await findings.log_missing_dpi(job.id, "org-a", detected_dpi=50)
    assert exc_info.value.code == "JOB_FINALIZED"
    with pytest.raises(FindingsLockedError):
        await findings.log_fix(job.id, "org-a", "other", "late fix")

    assert len(await findings.get_job_findings(job.id, "org-a")) == 1


@pytest.mark.asyncio
async def test_reads_are_scoped_to_organization(store, findings):
    job = await _running_job(store)
    await findings.log_spot_color(job.id, "org-a", "Gold")
    await findings.log_fix(job.id, "org-a", "other", "manual touch-up", fixed_by_user_id="user-1")

    assert await findings.get_job_findings(job.id, "org-b") == []
    assert await findings.get_job_fix_logs(job.id, "org-b") == []


@pytest.mark.asyncio
async def test_deleting_the_job_cascades(store, findings):
    job = await _running_job(store)
    await findings.log_spot_color(job.id, "org-a", "Gold")
    await findings.log_fix(job.id, "org-a", "other", "manual touch-up")

    await store.delete_job(job.id)
    assert await findings.get_job_findings(job.id, "org-a") == []
    assert await findings.get_job_fix_logs(job.id, "org-a") == []
