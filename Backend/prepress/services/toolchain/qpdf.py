"""
QPDF wrapper: structural validation.

A broken structure invalidates every later check, so tool failures here are
BLOCKERs rather than warnings.
"""
import logging
import re
from dataclasses import dataclass

from prepress.services.issues import Issue, Issues, blocker, warning
from prepress.services.toolchain.runner import ToolExecutionError, ToolRunner

logger = logging.getLogger(__name__)

# qpdf echoes the scratch path; keep messages stable across runs
_SCRATCH_PATH = re.compile(r"\S*input\.pdf")


@dataclass
class QPDFResult:
    valid: bool
    issues: Issues


def _clean(line: str) -> str:
    return _SCRATCH_PATH.sub("input.pdf", line.strip())


def parse_qpdf_output(stderr: str) -> list[Issue]:
    issues = []
    for line in stderr.splitlines():
        if not line.strip():
            continue
        lowered = line.lower()
        # Checked first: qpdf warnings often mention recoverable "errors"
        if "warning" in lowered:
            issues.append(warning("QPDF_WARNING", _clean(line)))
        elif "error" in lowered:
            issues.append(blocker("QPDF_ERROR", _clean(line)))
    return issues


async def run_qpdf(runner: ToolRunner, pdf: bytes) -> QPDFResult:
    """Run qpdf --check and convert its findings to issues."""
    try:
        result = await runner.qpdf_check(pdf)
    except ToolExecutionError as e:
        issues = [i for i in parse_qpdf_output(e.stderr) if i.severity == "BLOCKER"]
        issues.append(blocker("QPDF_FAILED", f"QPDF validation failed: {_clean(str(e))}"))
        return QPDFResult(valid=False, issues=tuple(issues))

    issues = parse_qpdf_output(result.stderr)
    valid = not any(i.severity == "BLOCKER" for i in issues)
    if not valid:
        logger.info("QPDF found structural errors")
    return QPDFResult(valid=valid, issues=tuple(issues))
