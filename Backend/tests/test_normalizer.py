import pytest

from conftest import JPG_BYTES, PNG_BYTES, PSD_BYTES, FakeToolRunner, make_pdf
from prepress.services.toolchain.detector import TOOLS, ToolStatus
from prepress.services.toolchain.normalizer import normalize_file, parse_identify_output
from prepress.services.toolchain.runner import ToolExecutionError


def _status(*missing):
    return ToolStatus(availability={tool: tool not in missing for tool in TOOLS})


def _codes(result):
    return [issue.code for issue in result.issues]


@pytest.mark.asyncio
async def test_pdf_passthrough_is_byte_identical():
    pdf = make_pdf()
    result = await normalize_file(pdf, "application/pdf", "doc.pdf", FakeToolRunner(available=()), _status(*TOOLS))
    assert result.original_format == "pdf"
    assert result.normalized_format == "pdf"
    assert result.normalized_buffer is pdf
    assert result.issues == ()


@pytest.mark.asyncio
async def test_jpg_at_72_dpi_warns_and_converts():
    runner = FakeToolRunner()
    runner.identify_stdout = "1000|800|72|PixelsPerInch|sRGB\n"
    result = await normalize_file(JPG_BYTES, "image/jpeg", "test.jpg", runner, _status())

    assert result.normalized_format == "pdf"
    assert result.normalized_buffer == runner.converted_pdf
    assert result.metadata.dpi == 72
    assert "LOW_DPI" in _codes(result)
    assert "RGB_COLORSPACE" in _codes(result)
    low_dpi = next(i for i in result.issues if i.code == "LOW_DPI")
    assert low_dpi.severity == "WARNING"


@pytest.mark.asyncio
async def test_marginal_dpi_is_info():
    runner = FakeToolRunner()
    runner.identify_stdout = "1000|800|200|PixelsPerInch|CMYK\n"
    result = await normalize_file(PNG_BYTES, "image/png", "a.png", runner, _status())
    assert [(i.severity, i.code) for i in result.issues] == [("INFO", "MARGINAL_DPI")]


def test_identify_converts_pixels_per_centimeter():
    metadata = parse_identify_output("100|100|118.11|PixelsPerCentimeter|CMYK")
    assert metadata.dpi == 300
    assert metadata.color_space == "CMYK"


def test_identify_garbage_is_none():
    assert parse_identify_output("") is None
    assert parse_identify_output("not identify output") is None


@pytest.mark.asyncio
async def test_raster_without_imagemagick():
    result = await normalize_file(JPG_BYTES, "image/jpeg", "a.jpg", FakeToolRunner(), _status("imagemagick"))
    assert result.normalized_buffer is None
    assert result.normalized_format is None
    assert [(i.severity, i.code) for i in result.issues] == [
        ("WARNING", "TOOL_MISSING"),
        ("BLOCKER", "NORMALIZATION_FAILED"),
    ]


@pytest.mark.asyncio
async def test_raster_conversion_failure_is_blocker():
    runner = FakeToolRunner()
    runner.failures["convert_image_to_pdf"] = ToolExecutionError("convert exited with code 1")
    result = await normalize_file(JPG_BYTES, "image/jpeg", "a.jpg", runner, _status())
    assert result.normalized_buffer is None
    assert _codes(result) == ["NORMALIZATION_FAILED"]


@pytest.mark.asyncio
async def test_identify_failure_still_converts():
    runner = FakeToolRunner()
    runner.failures["identify_image"] = ToolExecutionError("identify exited with code 1")
    result = await normalize_file(JPG_BYTES, "image/jpeg", "a.jpg", runner, _status())
    assert result.normalized_format == "pdf"
    assert result.metadata is None


@pytest.mark.asyncio
async def test_ai_passes_through_with_info():
    data = b"%PDF-1.5\n%illustrator"
    result = await normalize_file(data, "application/postscript", "logo.ai", FakeToolRunner(), _status())
    assert result.original_format == "ai"
    assert result.normalized_buffer is data
    assert _codes(result) == ["AI_FILE_DETECTED"]
    assert "PDF/X-4" in result.issues[0].meta["note"]


@pytest.mark.asyncio
async def test_psd_is_flattened():
    result = await normalize_file(PSD_BYTES, "image/vnd.adobe.photoshop", "a.psd", FakeToolRunner(), _status())
    assert result.normalized_format == "pdf"
    assert _codes(result) == ["PSD_FLATTENED"]


@pytest.mark.asyncio
async def test_psd_without_imagemagick():
    result = await normalize_file(PSD_BYTES, "", "a.psd", FakeToolRunner(), _status("imagemagick"))
    assert result.normalized_buffer is None
    assert _codes(result) == ["TOOL_MISSING", "PSD_NORMALIZATION_FAILED"]


@pytest.mark.asyncio
async def test_unsupported_format_is_blocker():
    result = await normalize_file(b"GIF89a" + b"\x00" * 10, "image/gif", "a.gif", FakeToolRunner(), _status())
    assert result.normalized_buffer is None
    assert [(i.severity, i.code) for i in result.issues] == [("BLOCKER", "UNSUPPORTED_FORMAT")]
    assert result.to_dict()["originalFormat"] == "gif"
