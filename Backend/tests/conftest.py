"""
Shared fixtures: every test gets its own SQLite database and temp root, and
the external toolchain is replaced by FakeToolRunner.
"""
import io
import os

# Must be set before prepress.core.config is imported
os.environ["DATABASE_URL"] = ""
os.environ["REDIS_URL"] = ""
os.environ["RATE_LIMIT_ENABLED"] = "false"

import pytest
from pypdf import PdfWriter
from pypdf.generic import ArrayObject, DictionaryObject, NameObject

from prepress.core.config import settings
from prepress.db import init_db
from prepress.services.adapters import LocalInputAdapter, LocalOutputAdapter
from prepress.services.findings import FindingsStore
from prepress.services.job_store import JobStore
from prepress.services.pipeline import PreflightPipeline
from prepress.services.toolchain.detector import TOOLS
from prepress.services.toolchain.runner import CommandResult, ToolExecutionError, ToolRunner

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
JPG_BYTES = b"\xFF\xD8\xFF\xE0" + b"\x00" * 64
PSD_BYTES = b"8BPS" + b"\x00" * 64

PDFFONTS_HEADER = (
    "name                                 type              encoding         emb sub uni object ID\n"
    "------------------------------------ ----------------- ---------------- --- --- --- ---------\n"
)


def make_pdf(color_spaces=None, pages=1) -> bytes:
    """A real (blank) PDF; color_spaces is put in the first page's /ColorSpace resources."""
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    if color_spaces:
        page = writer.pages[0]
        page[NameObject("/Resources")] = DictionaryObject({
            NameObject("/ColorSpace"): DictionaryObject({
                NameObject(f"/CS{i}"): value for i, value in enumerate(color_spaces)
            }),
        })
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def separation(name: str) -> ArrayObject:
    return ArrayObject([NameObject("/Separation"), NameObject(f"/{name}"), NameObject("/DeviceCMYK")])


def device_n(*names: str) -> ArrayObject:
    return ArrayObject([
        NameObject("/DeviceN"),
        ArrayObject([NameObject(f"/{name}") for name in names]),
        NameObject("/DeviceCMYK"),
    ])


class FakeToolRunner(ToolRunner):
    """
    Canned toolchain. `available` lists the tools that answer version checks;
    `failures` maps a method name to the exception it raises.
    """

    def __init__(self, available=TOOLS):
        self.available = set(available)
        self.failures = {}
        self.calls = []
        self.qpdf_stderr = ""
        self.pdfinfo_stdout = "Producer:       test\nPages:          1\nPage size:      612 x 792 pts (letter)\n"
        self.pdffonts_stdout = PDFFONTS_HEADER + (
            "ABCDEE+Helvetica                     TrueType          WinAnsi          yes yes no       8  0\n"
        )
        self.identify_stdout = "2480|3508|300|PixelsPerInch|CMYK\n"
        self.converted_pdf = make_pdf()
        self.repaired_pdf = b"%PDF-1.4\n% repaired\n"
        self.rendered_png = PNG_BYTES

    def _call(self, name):
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    async def version(self, tool):
        if tool not in self.available:
            raise ToolExecutionError(f"{tool} could not be started: not found")
        return f"{tool} version 1.0\nCopyright\n"

    async def qpdf_check(self, pdf):
        self._call("qpdf_check")
        return CommandResult(returncode=3 if self.qpdf_stderr else 0, stdout="", stderr=self.qpdf_stderr)

    async def pdfinfo(self, pdf):
        self._call("pdfinfo")
        return self.pdfinfo_stdout

    async def pdffonts(self, pdf):
        self._call("pdffonts")
        return self.pdffonts_stdout

    async def ghostscript_rewrite(self, pdf):
        self._call("ghostscript_rewrite")
        return self.repaired_pdf

    async def pdftocairo_render(self, pdf, page, dpi):
        self._call("pdftocairo_render")
        return self.rendered_png

    async def identify_image(self, image, extension):
        self._call("identify_image")
        return self.identify_stdout

    async def convert_image_to_pdf(self, image, extension, flatten=False):
        self._call("convert_image_to_pdf")
        return self.converted_pdf


@pytest.fixture(autouse=True)
def isolated_storage(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DB_PATH", str(tmp_path / "prepress.db"))
    monkeypatch.setattr(settings, "PREPRESS_TEMP_DIR", str(tmp_path / "jobs"))
    init_db()
    return tmp_path


@pytest.fixture
def runner():
    return FakeToolRunner()


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def findings():
    return FindingsStore()


@pytest.fixture
def pipeline(runner, findings):
    return PreflightPipeline(runner, LocalInputAdapter(), LocalOutputAdapter(), findings)
