import pytest

from prepress.core.file_validation import SIGNATURES, detect_file_format


def test_magic_bytes_beat_mime_and_extension():
    detection = detect_file_format(b"%PDF-1.7\n...", "image/png", "x.png")
    assert detection.format == "pdf"
    assert detection.confidence == "high"
    assert detection.mime_type == "application/pdf"


def test_pdf_signature_with_ai_extension_is_illustrator():
    detection = detect_file_format(b"%PDF-1.5\n", "application/pdf", "Logo.AI")
    assert detection.format == "ai"


@pytest.mark.parametrize("header, expected", [
    (SIGNATURES["jpg"] + b"\xE0", "jpg"),
    (SIGNATURES["png"] + b"\r\n\x1a\n", "png"),
    (SIGNATURES["tif_le"], "tif"),
    (SIGNATURES["tif_be"], "tif"),
    (SIGNATURES["psd"], "psd"),
])
def test_signatures(header, expected):
    assert detect_file_format(header + b"\x00" * 16, "application/octet-stream", "upload.bin").format == expected


@pytest.mark.parametrize("header, expected", [
    (b"GIF89a", "gif"),
    (b"PK\x03\x04", "zip"),
    (b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1", "ole2"),
])
def test_known_unsupported_signatures_are_not_supported(header, expected):
    detection = detect_file_format(header + b"\x00" * 16, "application/pdf", "file.pdf")
    assert detection.format == expected
    assert not detection.supported


def test_mime_fallback_is_canonical():
    detection = detect_file_format(b"\x00\x01\x02", "image/jpeg", "photo")
    assert detection.format == "jpg"
    assert detection.confidence == "medium"
    assert detect_file_format(b"\x00\x01\x02", "image/tiff", "scan").format == "tif"


def test_extension_fallback():
    detection = detect_file_format(b"\x00\x01\x02", "", "artwork.tiff")
    assert detection.format == "tif"
    assert detection.confidence == "low"


def test_unknown_input_defaults_to_pdf():
    detection = detect_file_format(b"\x00\x01\x02", "", "mystery")
    assert detection.format == "pdf"
    assert detection.confidence == "low"
