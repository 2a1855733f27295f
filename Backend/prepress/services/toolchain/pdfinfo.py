"""
Poppler wrappers: pdfinfo (page metadata) and pdffonts (font embedding).
Both are analysis tools, so failures degrade to WARNINGs.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import List, Union

from prepress.services.issues import Issues, warning
from prepress.services.toolchain.runner import ToolExecutionError, ToolRunner

logger = logging.getLogger(__name__)

_PAGES = re.compile(r"^Pages:\s+(\d+)")
# "Page size:" for uniform documents, "Page    3 size:" with -f/-l
_PAGE_SIZE = re.compile(r"^Page(?:\s+\d+)?\s+size:\s+([\d.]+)\s+x\s+([\d.]+)\s+pts")


@dataclass
class PageSize:
    width: float
    height: float
    unit: str = "pt"

    def to_dict(self):
        return {"width": self.width, "height": self.height, "unit": self.unit}


@dataclass
class PDFInfoResult:
    page_count: int = 0
    page_sizes: List[PageSize] = field(default_factory=list)
    issues: Issues = ()


@dataclass
class PDFFontsResult:
    # "unknown" when pdffonts could not be read
    all_embedded: Union[bool, str] = "unknown"
    issues: Issues = ()


def parse_pdfinfo_output(stdout: str) -> PDFInfoResult:
    result = PDFInfoResult()
    for line in stdout.splitlines():
        line = line.strip()
        match = _PAGES.match(line)
        if match:
            result.page_count = int(match.group(1))
            continue
        match = _PAGE_SIZE.match(line)
        if match:
            result.page_sizes.append(PageSize(float(match.group(1)), float(match.group(2))))
    return result


async def run_pdfinfo(runner: ToolRunner, pdf: bytes) -> PDFInfoResult:
    try:
        stdout = await runner.pdfinfo(pdf)
    except ToolExecutionError as e:
        return PDFInfoResult(issues=(warning("PDFINFO_FAILED", f"pdfinfo failed: {e}"),))
    return parse_pdfinfo_output(stdout)


def parse_pdffonts_output(stdout: str) -> PDFFontsResult:
    """
    pdffonts prints two header lines, then one row per font:

        name  type  encoding  emb sub uni  object ID

    The type column can contain spaces ("Type 1C"), so the emb column is
    located from the right: emb, sub, uni, then the two-token object ID.
    """
    lines = [line for line in stdout.splitlines() if line.strip()]
    issues = []
    for line in lines[2:]:
        tokens = line.split()
        if len(tokens) < 6:
            continue
        if tokens[-5].lower() == "no":
            font_name = tokens[0]
            issues.append(warning(
                "FONT_NOT_EMBEDDED",
                f"Font not fully embedded: {font_name}",
                fontName=font_name,
            ))
    return PDFFontsResult(all_embedded=not issues, issues=tuple(issues))


async def run_pdffonts(runner: ToolRunner, pdf: bytes) -> PDFFontsResult:
    try:
        stdout = await runner.pdffonts(pdf)
    except ToolExecutionError as e:
        return PDFFontsResult(issues=(warning("PDFFONTS_FAILED", f"pdffonts failed: {e}"),))
    return parse_pdffonts_output(stdout)
