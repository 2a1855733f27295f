"""
Tool runner.

Every preflight check shells out to an external binary. ToolRunner is the
single seam for that: one method per tool invocation, bytes in and bytes or
text out. SubprocessToolRunner is the real implementation; tests substitute
a fake with canned outputs.

A timeout, a non-zero exit or runaway output all surface as
ToolExecutionError, which callers convert to issues.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from prepress.core.config import settings

logger = logging.getLogger(__name__)

# Version-style invocation per tool; any failure means the tool is unavailable
VERSION_ARGS = {
    "qpdf": ["qpdf", "--version"],
    "pdfinfo": ["pdfinfo", "-v"],
    "pdffonts": ["pdffonts", "-v"],
    "ghostscript": ["gs", "--version"],
    "pdftocairo": ["pdftocairo", "-v"],
    "imagemagick": ["convert", "--version"],
}


class ToolExecutionError(Exception):
    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ToolTimeoutError(ToolExecutionError):
    pass


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


_READ_CHUNK_BYTES = 64 * 1024


def _terminate(process: asyncio.subprocess.Process):
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


class _OutputBudget:
    """
    Byte allowance shared by stdout and stderr of one process. Crossing it
    kills the process at once; the pipes are still drained (and discarded)
    so the process can be reaped.
    """

    def __init__(self, limit: int, process: asyncio.subprocess.Process):
        self.limit = limit
        self.process = process
        self.used = 0
        self.exceeded = False

    def consume(self, size: int) -> bool:
        self.used += size
        if self.used > self.limit and not self.exceeded:
            self.exceeded = True
            _terminate(self.process)
        return not self.exceeded


async def _drain(stream: asyncio.StreamReader, chunks: list[bytes], budget: _OutputBudget):
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        if budget.consume(len(chunk)):
            chunks.append(chunk)


def _read_output_file(path: Path, tool: str) -> bytes:
    """Output file of a tool that exited cleanly; a missing file is a tool failure."""
    if not path.exists():
        raise ToolExecutionError(f"{tool} exited successfully but produced no output file")
    return path.read_bytes()


async def run_command(
    args: Sequence[str],
    timeout: float | None = None,
    max_output_bytes: int | None = None,
    ok_codes: Sequence[int] = (0,),
) -> CommandResult:
    """
    Run a binary without a shell. Raises ToolExecutionError on spawn failure,
    disallowed exit code or oversized output, ToolTimeoutError on timeout.
    Both limits kill the process as soon as they are crossed.
    """
    timeout = timeout if timeout is not None else settings.TOOL_TIMEOUT_MS / 1000
    max_output_bytes = max_output_bytes or settings.TOOL_MAX_OUTPUT_BYTES

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ToolExecutionError(f"{args[0]} could not be started: {e}")

    budget = _OutputBudget(max_output_bytes, process)
    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    tasks = [
        asyncio.ensure_future(_drain(process.stdout, stdout_chunks, budget)),
        asyncio.ensure_future(_drain(process.stderr, stderr_chunks, budget)),
        asyncio.ensure_future(process.wait()),
    ]
    try:
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        timed_out = bool(pending)
        if timed_out:
            _terminate(process)
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        _terminate(process)
        raise

    if timed_out:
        raise ToolTimeoutError(f"{args[0]} timed out after {timeout:g}s")
    if budget.exceeded:
        raise ToolExecutionError(f"{args[0]} produced more than {max_output_bytes} bytes of output")

    result = CommandResult(
        returncode=process.returncode,
        stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
        stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
    )
    if result.returncode not in ok_codes:
        detail = (result.stderr or result.stdout).strip()[:500]
        raise ToolExecutionError(
            f"{args[0]} exited with code {result.returncode}: {detail}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result


class ToolRunner(abc.ABC):
    """Capability interface over the external preflight toolchain."""

    @abc.abstractmethod
    async def version(self, tool: str) -> str:
        """Version-style invocation. Returns its output; raises if the tool is unusable."""

    @abc.abstractmethod
    async def qpdf_check(self, pdf: bytes) -> CommandResult:
        """qpdf --check. Exit code 3 (warnings only) is not an error."""

    @abc.abstractmethod
    async def pdfinfo(self, pdf: bytes) -> str:
        """pdfinfo stdout."""

    @abc.abstractmethod
    async def pdffonts(self, pdf: bytes) -> str:
        """pdffonts stdout."""

    @abc.abstractmethod
    async def ghostscript_rewrite(self, pdf: bytes) -> bytes:
        """Safe pdfwrite rewrite of the document."""

    @abc.abstractmethod
    async def pdftocairo_render(self, pdf: bytes, page: int, dpi: int) -> bytes:
        """One page rendered as PNG."""

    @abc.abstractmethod
    async def identify_image(self, image: bytes, extension: str) -> str:
        """ImageMagick identify of the first frame: 'width|height|xres|units|colorspace'."""

    @abc.abstractmethod
    async def convert_image_to_pdf(self, image: bytes, extension: str, flatten: bool = False) -> bytes:
        """ImageMagick raster (or flattened PSD) to PDF."""


class SubprocessToolRunner(ToolRunner):
    """
    Runs the real binaries. Each call works in its own temporary directory,
    so concurrent jobs never share scratch files.
    """

    def __init__(self, timeout_ms: int | None = None, version_timeout_ms: int | None = None,
                 max_output_bytes: int | None = None):
        self.timeout = (timeout_ms or settings.TOOL_TIMEOUT_MS) / 1000
        self.version_timeout = (version_timeout_ms or settings.TOOL_VERSION_TIMEOUT_MS) / 1000
        self.max_output_bytes = max_output_bytes or settings.TOOL_MAX_OUTPUT_BYTES

    async def _run(self, args: Sequence[str], ok_codes: Sequence[int] = (0,)) -> CommandResult:
        return await run_command(args, self.timeout, self.max_output_bytes, ok_codes)

    async def version(self, tool: str) -> str:
        # Older poppler builds exit 99 after printing the version banner (on stderr)
        result = await run_command(VERSION_ARGS[tool], self.version_timeout, self.max_output_bytes, ok_codes=(0, 99))
        return result.stdout or result.stderr

    async def qpdf_check(self, pdf: bytes) -> CommandResult:
        with tempfile.TemporaryDirectory(prefix="qpdf-") as tmp:
            source = Path(tmp) / "input.pdf"
            source.write_bytes(pdf)
            return await self._run(["qpdf", "--check", str(source)], ok_codes=(0, 3))

    async def pdfinfo(self, pdf: bytes) -> str:
        with tempfile.TemporaryDirectory(prefix="pdfinfo-") as tmp:
            source = Path(tmp) / "input.pdf"
            source.write_bytes(pdf)
            return (await self._run(["pdfinfo", str(source)])).stdout

    async def pdffonts(self, pdf: bytes) -> str:
        with tempfile.TemporaryDirectory(prefix="pdffonts-") as tmp:
            source = Path(tmp) / "input.pdf"
            source.write_bytes(pdf)
            return (await self._run(["pdffonts", str(source)])).stdout

    async def ghostscript_rewrite(self, pdf: bytes) -> bytes:
        with tempfile.TemporaryDirectory(prefix="gs-") as tmp:
            source = Path(tmp) / "input.pdf"
            target = Path(tmp) / "output.pdf"
            source.write_bytes(pdf)
            await self._run([
                "gs",
                "-dSAFER",
                "-dBATCH",
                "-dNOPAUSE",
                "-dQUIET",
                "-sDEVICE=pdfwrite",
                "-dPDFSETTINGS=/prepress",
                "-dCompatibilityLevel=1.4",
                "-dAutoRotatePages=/None",
                "-dColorConversionStrategy=/LeaveColorUnchanged",
                "-dEmbedAllFonts=true",
                f"-sOutputFile={target}",
                str(source),
            ])
            return _read_output_file(target, "gs")

    async def pdftocairo_render(self, pdf: bytes, page: int, dpi: int) -> bytes:
        with tempfile.TemporaryDirectory(prefix="render-") as tmp:
            source = Path(tmp) / "input.pdf"
            target_base = Path(tmp) / "proof"
            source.write_bytes(pdf)
            await self._run([
                "pdftocairo", "-png",
                "-f", str(page), "-l", str(page),
                "-r", str(dpi),
                "-singlefile",
                str(source), str(target_base),
            ])
            return _read_output_file(target_base.with_suffix(".png"), "pdftocairo")

    async def identify_image(self, image: bytes, extension: str) -> str:
        with tempfile.TemporaryDirectory(prefix="identify-") as tmp:
            source = Path(tmp) / f"input.{extension}"
            source.write_bytes(image)
            result = await self._run([
                "identify", "-format", "%w|%h|%x|%U|%[colorspace]\n", f"{source}[0]",
            ])
            return result.stdout

    async def convert_image_to_pdf(self, image: bytes, extension: str, flatten: bool = False) -> bytes:
        with tempfile.TemporaryDirectory(prefix="convert-") as tmp:
            source = Path(tmp) / f"input.{extension}"
            target = Path(tmp) / "output.pdf"
            source.write_bytes(image)
            if flatten:
                # PSD frame 0 is the merged composite
                args = ["convert", f"{source}[0]", "-flatten"]
            else:
                args = ["convert", str(source)]
            result = await self._run(args + ["-compress", "Zip", "-quality", "95", str(target)])
            if result.stderr:
                logger.warning(f"ImageMagick warnings: {result.stderr[:200]}")
            return _read_output_file(target, "convert")
