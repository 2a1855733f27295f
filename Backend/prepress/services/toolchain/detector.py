"""
Tool detector.

Checks which PDF processing tools are usable on this host. Never raises:
every downstream fail-soft decision reads the availability flags.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from prepress.services.toolchain.runner import ToolRunner

logger = logging.getLogger(__name__)

TOOLS = ("qpdf", "pdfinfo", "pdffonts", "ghostscript", "pdftocairo", "imagemagick")


@dataclass
class ToolStatus:
    availability: Dict[str, bool] = field(default_factory=lambda: {tool: False for tool in TOOLS})
    versions: Dict[str, str] = field(default_factory=dict)

    def available(self, tool: str) -> bool:
        return self.availability.get(tool, False)


async def _version_output(runner: ToolRunner, tool: str) -> Optional[str]:
    """Version output, or None when the tool is unavailable."""
    try:
        return await runner.version(tool)
    except Exception as e:
        logger.debug(f"Version check failed for {tool}: {e}")
        return None


def _first_line(output: str) -> Optional[str]:
    for line in output.splitlines():
        if line.strip():
            return line.strip()
    return None


async def detect_tools(runner: ToolRunner) -> ToolStatus:
    """Check all six tools concurrently."""
    outputs = await asyncio.gather(*(_version_output(runner, tool) for tool in TOOLS))

    status = ToolStatus()
    for tool, output in zip(TOOLS, outputs):
        status.availability[tool] = output is not None
        if output is not None:
            version = _first_line(output)
            if version:
                status.versions[tool] = version
    return status


def log_tool_availability(status: ToolStatus) -> None:
    lines = []
    for tool in TOOLS:
        if status.available(tool):
            lines.append(f"  {tool}: ✓ {status.versions.get(tool, 'version unknown')}")
        else:
            lines.append(f"  {tool}: ✗ not available")
    logger.info("Tool availability:\n" + "\n".join(lines))
