"""
file_validation.py
~~~~~~~~~~~~~~~~~~
Input format detection for preflight uploads.
Trusts file content (Magic Numbers) over the declared MIME type, and the MIME
type over the filename extension.
"""
import logging
import os
from dataclasses import dataclass
from typing import Literal

logger = logging.getLogger(__name__)

Confidence = Literal["high", "medium", "low"]

SUPPORTED_FORMATS = ("pdf", "jpg", "png", "tif", "ai", "psd")

# Magic Numbers (File Signatures)
SIGNATURES = {
    "pdf":  b"%PDF-",
    "jpg":  b"\xFF\xD8\xFF",
    "png":  b"\x89PNG",
    "tif_le": b"II*\x00",
    "tif_be": b"MM\x00*",
    "psd":  b"8BPS",
}

# Recognizable but not printable artwork; reported as unsupported instead of
# falling through to the PDF default.
UNSUPPORTED_SIGNATURES = {
    "gif":  (b"GIF87a", b"GIF89a"),
    # Office Open XML (xlsx, docx, pptx) - technically ZIP archives
    "zip":  (b"\x50\x4B\x03\x04",),
    # Legacy Microsoft Office (xls, doc, ppt) - OLE2 Compound File
    "ole2": (b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1",),
    "bmp":  (b"BM",),
}

CANONICAL_MIME = {
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "png": "image/png",
    "tif": "image/tiff",
    "ai": "application/postscript",
    "psd": "image/vnd.adobe.photoshop",
}

_EXTENSIONS = {
    ".pdf": "pdf",
    ".jpg": "jpg",
    ".jpeg": "jpg",
    ".png": "png",
    ".tif": "tif",
    ".tiff": "tif",
    ".ai": "ai",
    ".psd": "psd",
}


@dataclass(frozen=True)
class FormatDetection:
    format: str
    mime_type: str
    confidence: Confidence

    @property
    def supported(self) -> bool:
        return self.format in SUPPORTED_FORMATS


def _from_magic(header: bytes, ext: str) -> str | None:
    if header.startswith(SIGNATURES["pdf"]):
        # Illustrator files are PDF-compatible; only the extension tells them apart
        return "ai" if ext == ".ai" else "pdf"
    if header.startswith(SIGNATURES["jpg"]):
        return "jpg"
    if header.startswith(SIGNATURES["png"]):
        return "png"
    if header.startswith(SIGNATURES["tif_le"]) or header.startswith(SIGNATURES["tif_be"]):
        return "tif"
    if header.startswith(SIGNATURES["psd"]):
        return "psd"
    for name, signatures in UNSUPPORTED_SIGNATURES.items():
        if any(header.startswith(sig) for sig in signatures):
            return name
    return None


def _from_mime(mime_type: str) -> str | None:
    mime = (mime_type or "").lower()
    if "pdf" in mime:
        return "pdf"
    if "jpeg" in mime or "jpg" in mime:
        return "jpg"
    if "png" in mime:
        return "png"
    if "tif" in mime:
        return "tif"
    if "photoshop" in mime:
        return "psd"
    if "illustrator" in mime:
        return "ai"
    return None


def detect_file_format(data: bytes, mime_type: str, filename: str) -> FormatDetection:
    """
    Detect the real format of an upload.
    Precedence: magic bytes > declared MIME type > extension > PDF default.
    """
    ext = os.path.splitext(filename or "")[1].lower()
    header = data[:16]

    fmt = _from_magic(header, ext)
    if fmt:
        return FormatDetection(fmt, CANONICAL_MIME.get(fmt, "application/octet-stream"), "high")

    fmt = _from_mime(mime_type)
    if fmt:
        return FormatDetection(fmt, mime_type, "medium")

    fmt = _EXTENSIONS.get(ext)
    if fmt:
        return FormatDetection(fmt, CANONICAL_MIME[fmt], "low")

    logger.warning(f"Could not detect format of {filename!r} ({mime_type}); assuming PDF.")
    return FormatDetection("pdf", mime_type or CANONICAL_MIME["pdf"], "low")
