"""
Preflight Pipeline Orchestrator

Runs the preflight checks for one job and stores the report and derived
artifacts through the output adapter.

Fail-soft: a missing tool produces a TOOL_MISSING warning and its check is
skipped; a failing analysis tool produces a warning; a failing structural
validation or normalization produces a blocker. Only unexpected internal
errors (including a missing input) escape, and those fail the job.

Every stage takes the issues collected so far and returns a new tuple.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Tuple

from prepress.core.config import settings
from prepress.db import utcnow
from prepress.services.adapters import InputAdapter, OutputAdapter
from prepress.services.findings import FindingsStore
from prepress.services.issues import Issues, summarize, tool_missing_warning, warning
from prepress.services.job_store import Job, JobMode
from prepress.services.storage import OUTPUT_FILENAMES
from prepress.services.toolchain.colorspace import scan_color_spaces
from prepress.services.toolchain.detector import ToolStatus, detect_tools, log_tool_availability
from prepress.services.toolchain.ghostscript import repair_pdf
from prepress.services.toolchain.normalizer import NormalizationResult, normalize_file
from prepress.services.toolchain.pdfinfo import run_pdffonts, run_pdfinfo
from prepress.services.toolchain.qpdf import run_qpdf
from prepress.services.toolchain.renderer import render_proof
from prepress.services.toolchain.runner import ToolRunner

logger = logging.getLogger(__name__)

REPORT_VERSION = "prepress_report_v1"
STANDALONE_ORGANIZATION = "standalone"


@dataclass
class PipelineResult:
    report: Dict[str, Any]
    outputs: FrozenSet[str] = field(default_factory=frozenset)


def _empty_analysis() -> Dict[str, Any]:
    return {
        "pageCount": 0,
        "pageSizes": [],
        "fontsEmbedded": "unknown",
        "images": "not_analyzed",
        "colorSpace": "not_analyzed",
    }


class PreflightPipeline:
    """
    One pipeline per process; it holds no per-job state, so the poller can
    run several jobs through it concurrently.
    """

    def __init__(
        self,
        runner: ToolRunner,
        input_adapter: InputAdapter,
        output_adapter: OutputAdapter,
        findings: Optional[FindingsStore] = None,
    ):
        self.runner = runner
        self.input_adapter = input_adapter
        self.output_adapter = output_adapter
        self.findings = findings or FindingsStore()

    async def run(self, job: Job) -> PipelineResult:
        tools = await detect_tools(self.runner)
        log_tool_availability(tools)

        data = await self.input_adapter.fetch_input(job.id)
        normalization = await normalize_file(
            data, job.content_type, job.original_filename, self.runner, tools
        )

        issues: Issues = normalization.issues
        analysis = _empty_analysis()
        outputs = set()

        if normalization.normalized_buffer is None:
            logger.info(f"Normalization failed for job {job.id}, skipping PDF preflight")
            report = self._build_report(job, issues, analysis, tools, normalization)
            await self._store_report(job, report)
            return PipelineResult(report=report, outputs=frozenset({"report_json"}))

        pdf = normalization.normalized_buffer

        issues = await self._check_structure(pdf, tools, issues)
        issues = await self._check_metadata(pdf, tools, issues, analysis)
        await self._record_dpi(job, normalization)
        issues = await self._check_fonts(pdf, tools, issues, analysis)
        await self._scan_colors(job, pdf, analysis)
        issues, rendered = await self._render_proof(job, pdf, tools, issues)
        if rendered:
            outputs.add("proof_png")

        fix = None
        if job.mode == JobMode.CHECK_AND_FIX:
            issues, fix = await self._auto_fix(job, pdf, tools, issues)
            if fix is not None:
                outputs.add("fixed_pdf")

        report = self._build_report(job, issues, analysis, tools, normalization, fix)
        await self._store_report(job, report)
        outputs.add("report_json")
        return PipelineResult(report=report, outputs=frozenset(outputs))

    # ─── Stages ──────────────────────────────────────────────────────────────

    async def _check_structure(self, pdf: bytes, tools: ToolStatus, issues: Issues) -> Issues:
        if not tools.available("qpdf"):
            return issues + (tool_missing_warning("qpdf"),)
        result = await run_qpdf(self.runner, pdf)
        return issues + result.issues

    async def _check_metadata(self, pdf: bytes, tools: ToolStatus, issues: Issues, analysis: Dict[str, Any]) -> Issues:
        if not tools.available("pdfinfo"):
            return issues + (tool_missing_warning("pdfinfo"),)
        result = await run_pdfinfo(self.runner, pdf)
        analysis["pageCount"] = result.page_count
        analysis["pageSizes"] = [size.to_dict() for size in result.page_sizes]
        return issues + result.issues

    async def _record_dpi(self, job: Job, normalization: NormalizationResult):
        metadata = normalization.metadata
        if metadata is None or not metadata.dpi:
            return
        if metadata.dpi >= settings.MIN_REQUIRED_DPI:
            return
        try:
            await self.findings.log_missing_dpi(
                job.id,
                job.organization_id or STANDALONE_ORGANIZATION,
                detected_dpi=metadata.dpi,
                required_dpi=settings.MIN_REQUIRED_DPI,
                message=f"Image DPI ({metadata.dpi}) is below recommended {settings.MIN_REQUIRED_DPI} DPI",
            )
            logger.info(f"Logged missing DPI finding for job {job.id}")
        except Exception as e:
            logger.error(f"Failed to log DPI finding for job {job.id}: {e}")

    async def _check_fonts(self, pdf: bytes, tools: ToolStatus, issues: Issues, analysis: Dict[str, Any]) -> Issues:
        if not tools.available("pdffonts"):
            return issues + (tool_missing_warning("pdffonts"),)
        result = await run_pdffonts(self.runner, pdf)
        analysis["fontsEmbedded"] = result.all_embedded
        return issues + result.issues

    async def _scan_colors(self, job: Job, pdf: bytes, analysis: Dict[str, Any]):
        try:
            scan = await asyncio.to_thread(scan_color_spaces, pdf)
        except Exception as e:
            logger.warning(f"Colour-space scan failed for job {job.id}: {e}")
            return
        analysis["colorSpace"] = scan.to_dict()

        for spot in scan.spot_colors:
            try:
                await self.findings.log_spot_color(
                    job.id,
                    job.organization_id or STANDALONE_ORGANIZATION,
                    spot.name,
                    page_number=spot.page,
                )
            except Exception as e:
                logger.error(f"Failed to log spot color {spot.name!r} for job {job.id}: {e}")

    async def _render_proof(self, job: Job, pdf: bytes, tools: ToolStatus, issues: Issues) -> Tuple[Issues, bool]:
        if not tools.available("pdftocairo"):
            return issues + (tool_missing_warning("pdftocairo"),), False
        try:
            proof = await render_proof(self.runner, pdf, page=1, dpi=settings.PROOF_DPI)
            await self.output_adapter.store_output(job.id, "proof_png", proof)
        except Exception as e:
            logger.warning(f"Proof render failed for job {job.id}: {e}")
            return issues + (warning("PROOF_RENDER_FAILED", f"Failed to render proof image: {e}"),), False
        logger.info(f"Generated proof image for job {job.id}")
        return issues, True

    async def _auto_fix(
        self, job: Job, pdf: bytes, tools: ToolStatus, issues: Issues
    ) -> Tuple[Issues, Optional[Dict[str, Any]]]:
        if not tools.available("ghostscript"):
            return issues + (
                tool_missing_warning("ghostscript"),
                warning("AUTO_FIX_UNAVAILABLE", "Auto-fix requested but Ghostscript is not available"),
            ), None

        before = summarize(issues)
        logger.info(f"Running auto-fix for job {job.id}")
        try:
            repaired = await repair_pdf(self.runner, pdf)
            after = await self._recheck(repaired, tools)
            await self.output_adapter.store_output(job.id, "fixed_pdf", repaired)
        except Exception as e:
            logger.warning(f"Auto-fix failed for job {job.id}: {e}")
            return issues + (warning("AUTO_FIX_FAILED", f"Auto-fix failed: {e}"),), None

        try:
            await self.findings.log_fix(
                job.id,
                job.organization_id or STANDALONE_ORGANIZATION,
                "pdf_normalize",
                "Normalized PDF via Ghostscript with /prepress settings",
                fixed_by_user_id=None,
                before_snapshot={"tool": "original", "issues": len(issues), "score": before["score"]},
                after_snapshot={"tool": "ghostscript", "settings": "/prepress"},
            )
        except Exception as e:
            logger.error(f"Failed to log fix action for job {job.id}: {e}")

        logger.info(f"Auto-fix complete for job {job.id}. Score: {before['score']} -> {after['score']}")
        return issues, {"before": before, "after": after, "applied": ["normalize_via_ghostscript"]}

    async def _recheck(self, repaired: bytes, tools: ToolStatus) -> Dict[str, Any]:
        """Independent summary of the repaired bytes."""
        after_issues: Issues = ()
        if tools.available("qpdf"):
            after_issues += (await run_qpdf(self.runner, repaired)).issues
        if tools.available("pdffonts"):
            after_issues += (await run_pdffonts(self.runner, repaired)).issues
        return summarize(after_issues)

    # ─── Report ──────────────────────────────────────────────────────────────

    def _build_report(
        self,
        job: Job,
        issues: Issues,
        analysis: Dict[str, Any],
        tools: ToolStatus,
        normalization: NormalizationResult,
        fix: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        report = {
            "version": REPORT_VERSION,
            "jobId": job.id,
            "mode": job.mode.value,
            "timestamp": utcnow().isoformat(),
            "input": {
                "filename": job.original_filename,
                "sizeBytes": job.size_bytes,
                "pageCount": analysis["pageCount"],
            },
            "summary": summarize(issues),
            "issues": [issue.to_dict() for issue in issues],
            "analysis": analysis,
            "toolAvailability": dict(tools.availability),
            "toolVersions": dict(tools.versions),
            "normalization": normalization.to_dict(),
        }
        if fix is not None:
            report["fix"] = fix
        return report

    async def _store_report(self, job: Job, report: Dict[str, Any]):
        payload = json.dumps(report, indent=2).encode("utf-8")
        await self.output_adapter.store_output(job.id, "report_json", payload)


def build_report_summary(report: Dict[str, Any]) -> Dict[str, Any]:
    """Job-row summary of a report."""
    return {
        "score": report["summary"]["score"],
        "counts": report["summary"]["counts"],
        "pageCount": report["input"]["pageCount"],
    }


def build_output_manifest(result: PipelineResult) -> Dict[str, bool]:
    """Which outputs the job actually produced."""
    return {kind: kind in result.outputs for kind in OUTPUT_FILENAMES}
