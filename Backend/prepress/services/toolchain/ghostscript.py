"""
Ghostscript wrapper: the safe auto-fix for check_and_fix jobs.

The rewrite re-embeds fonts, fixes minor structural damage and leaves the
colour spaces untouched (pdfwrite with /prepress settings).
"""
import logging

from prepress.services.toolchain.runner import ToolExecutionError, ToolRunner

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"


async def repair_pdf(runner: ToolRunner, pdf: bytes) -> bytes:
    """Rewrite the PDF. Raises ToolExecutionError when the output is unusable."""
    repaired = await runner.ghostscript_rewrite(pdf)
    if not repaired.startswith(PDF_MAGIC):
        raise ToolExecutionError("Ghostscript produced no valid PDF output")
    logger.info(f"Ghostscript rewrite: {len(pdf)} -> {len(repaired)} bytes")
    return repaired
