"""
File format normalizer.

Converts the supported print formats (JPG, PNG, TIF, AI, PSD) into PDF for
the downstream preflight checks. Never raises: missing tools and failed
conversions are reported as issues.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from prepress.core.file_validation import detect_file_format
from prepress.services.issues import Issue, Issues, blocker, info, tool_missing_warning, warning
from prepress.services.toolchain.detector import ToolStatus
from prepress.services.toolchain.runner import ToolRunner

logger = logging.getLogger(__name__)

LOW_DPI_THRESHOLD = 150
RECOMMENDED_DPI = 300

_NUMBER = re.compile(r"[-+]?\d*\.?\d+")


@dataclass
class ImageMetadata:
    width: int | None = None
    height: int | None = None
    dpi: int | None = None
    color_space: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {"dpi": self.dpi, "width": self.width, "height": self.height, "colorSpace": self.color_space}
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class NormalizationResult:
    original_format: str
    normalized_format: str | None
    normalized_buffer: bytes | None
    notes: list[str] = field(default_factory=list)
    issues: Issues = ()
    metadata: ImageMetadata | None = None

    def to_dict(self) -> dict[str, Any]:
        """Report shape (the buffer is never serialized)."""
        data: dict[str, Any] = {
            "originalFormat": self.original_format,
            "normalizedFormat": self.normalized_format,
            "notes": list(self.notes),
        }
        if self.metadata is not None:
            data["metadata"] = self.metadata.to_dict()
        return data


def parse_identify_output(output: str) -> ImageMetadata | None:
    """Parse 'width|height|xres|units|colorspace' from identify."""
    line = output.strip().splitlines()[0] if output.strip() else ""
    parts = line.split("|")
    if len(parts) < 5:
        return None

    def number(value: str) -> float | None:
        match = _NUMBER.search(value)
        return float(match.group()) if match else None

    width, height, resolution = number(parts[0]), number(parts[1]), number(parts[2])
    units = parts[3].strip()

    dpi = None
    if resolution:
        if units == "PixelsPerCentimeter":
            resolution *= 2.54
        dpi = round(resolution)

    return ImageMetadata(
        width=int(width) if width is not None else None,
        height=int(height) if height is not None else None,
        dpi=dpi,
        color_space=parts[4].strip() or None,
    )


def _dpi_issues(dpi: int) -> list[Issue]:
    if dpi < LOW_DPI_THRESHOLD:
        return [warning(
            "LOW_DPI",
            f"Image DPI is {dpi}, recommended minimum is {RECOMMENDED_DPI} for print",
            dpi=dpi, recommended=RECOMMENDED_DPI,
        )]
    if dpi < RECOMMENDED_DPI:
        return [info(
            "MARGINAL_DPI",
            f"Image DPI is {dpi}, recommended is {RECOMMENDED_DPI} for optimal print quality",
            dpi=dpi, recommended=RECOMMENDED_DPI,
        )]
    return []


async def _normalize_raster(data: bytes, fmt: str, runner: ToolRunner, tools: ToolStatus) -> NormalizationResult:
    result = NormalizationResult(original_format=fmt, normalized_format=None, normalized_buffer=None)
    issues: list[Issue] = []

    if not tools.available("imagemagick"):
        result.notes.append("ImageMagick not available; conversion skipped")
        result.issues = (
            tool_missing_warning("imagemagick"),
            blocker(
                "NORMALIZATION_FAILED",
                f"Failed to convert {fmt.upper()} to PDF. ImageMagick is not installed.",
                suggestion="Install ImageMagick or upload a PDF file instead",
            ),
        )
        return result

    try:
        metadata = parse_identify_output(await runner.identify_image(data, fmt))
    except Exception as e:
        logger.warning(f"identify failed for {fmt} input: {e}")
        metadata = None

    if metadata:
        result.metadata = metadata
        result.notes.append(f"Original dimensions: {metadata.width}x{metadata.height}px")
        if metadata.dpi:
            result.notes.append(f"DPI: {metadata.dpi}")
            issues.extend(_dpi_issues(metadata.dpi))
        else:
            result.notes.append("DPI metadata not available")

        if metadata.color_space:
            result.notes.append(f"Color space: {metadata.color_space}")
            if "rgb" in metadata.color_space.lower():
                issues.append(info(
                    "RGB_COLORSPACE",
                    "Image is in RGB color space. CMYK is preferred for print.",
                    colorSpace=metadata.color_space,
                ))

    try:
        result.normalized_buffer = await runner.convert_image_to_pdf(data, fmt)
        result.normalized_format = "pdf"
        result.notes.append("Converted to PDF using ImageMagick")
    except Exception as e:
        issues.append(blocker(
            "NORMALIZATION_FAILED",
            f"Failed to convert {fmt.upper()} to PDF.",
            error=str(e),
            suggestion="Install ImageMagick or upload a PDF file instead",
        ))
        result.notes.append("ImageMagick conversion failed")

    result.issues = tuple(issues)
    return result


def _normalize_ai(data: bytes) -> NormalizationResult:
    # AI files are PDF-based, so they pass through unchanged
    return NormalizationResult(
        original_format="ai",
        normalized_format="pdf",
        normalized_buffer=data,
        notes=["Adobe Illustrator file (PDF-based) passed through for preflight"],
        issues=(info(
            "AI_FILE_DETECTED",
            "Adobe Illustrator file detected. File will be processed as PDF.",
            note="For best results, export as PDF/X-4 from Illustrator before upload",
        ),),
    )


async def _normalize_psd(data: bytes, runner: ToolRunner, tools: ToolStatus) -> NormalizationResult:
    result = NormalizationResult(original_format="psd", normalized_format=None, normalized_buffer=None)
    failure = blocker(
        "PSD_NORMALIZATION_FAILED",
        "Failed to convert PSD to PDF. ImageMagick may not be installed or PSD format is unsupported.",
        suggestion="Flatten layers and export as PDF, TIFF, or JPG from Photoshop",
    )

    if not tools.available("imagemagick"):
        result.notes.append("ImageMagick not available; PSD conversion skipped")
        result.issues = (tool_missing_warning("imagemagick"), failure)
        return result

    try:
        result.normalized_buffer = await runner.convert_image_to_pdf(data, "psd", flatten=True)
    except Exception as e:
        result.notes.append("ImageMagick PSD conversion failed")
        result.issues = (blocker(failure.code, failure.message, error=str(e), **(failure.meta or {})),)
        return result

    result.normalized_format = "pdf"
    result.notes.append("Converted to PDF using ImageMagick (flattened to single layer)")
    result.issues = (warning(
        "PSD_FLATTENED",
        "PSD file was flattened to a single layer during conversion. Layer information was lost.",
        suggestion="For better control, flatten and export as PDF or TIFF from Photoshop before upload",
    ),)
    return result


async def normalize_file(
    data: bytes,
    mime_type: str,
    filename: str,
    runner: ToolRunner,
    tools: ToolStatus,
) -> NormalizationResult:
    """Main normalization entry point."""
    detection = detect_file_format(data, mime_type, filename)
    logger.info(f"Detected format: {detection.format} (confidence: {detection.confidence})")

    if detection.format == "pdf":
        return NormalizationResult(
            original_format="pdf",
            normalized_format="pdf",
            normalized_buffer=data,
            notes=["PDF file, no normalization needed"],
        )
    if detection.format in ("jpg", "png", "tif"):
        return await _normalize_raster(data, detection.format, runner, tools)
    if detection.format == "ai":
        return _normalize_ai(data)
    if detection.format == "psd":
        return await _normalize_psd(data, runner, tools)

    return NormalizationResult(
        original_format=detection.format,
        normalized_format=None,
        normalized_buffer=None,
        notes=[f"Unknown format: {detection.format}"],
        issues=(blocker(
            "UNSUPPORTED_FORMAT",
            f"File format '{detection.format}' is not supported",
            detectedFormat=detection.format,
            suggestion="Please upload PDF, JPG, PNG, TIF, AI, or PSD files",
        ),),
    )
