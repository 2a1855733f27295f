"""
Colour-space scan.

Walks page resources with pypdf and records which colour families the
document declares: device/calibrated RGB, CMYK and named spot colours
(Separation / DeviceN). Colour set directly by content-stream operators
without a resource entry is not seen. Best-effort: callers treat any
exception as "not analyzed".
"""
import io
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from pypdf import PdfReader
from pypdf.generic import ArrayObject, DictionaryObject, NameObject

logger = logging.getLogger(__name__)

RGB_FAMILIES = {"/DeviceRGB", "/CalRGB"}
CMYK_FAMILIES = {"/DeviceCMYK"}
# Separation pseudo-colorants, not inks
_RESERVED_COLORANTS = {"All", "None"}


@dataclass
class SpotColor:
    name: str
    page: int


@dataclass
class ColorSpaceScan:
    has_rgb: bool = False
    has_cmyk: bool = False
    spot_colors: List[SpotColor] = field(default_factory=list)

    @property
    def has_spot(self) -> bool:
        return bool(self.spot_colors)

    def add_spot(self, name: str, page: int):
        if name in _RESERVED_COLORANTS:
            return
        if any(spot.name == name for spot in self.spot_colors):
            return
        self.spot_colors.append(SpotColor(name=name, page=page))

    def to_dict(self) -> Dict[str, bool]:
        return {"hasRGB": self.has_rgb, "hasCMYK": self.has_cmyk, "hasSpot": self.has_spot}


def _resolve(obj):
    return obj.get_object() if hasattr(obj, "get_object") else obj


def _colorant_name(obj) -> str:
    return str(_resolve(obj)).lstrip("/")


def _classify(color_space, scan: ColorSpaceScan, page: int, depth: int = 0):
    if depth > 4:
        return
    color_space = _resolve(color_space)

    if isinstance(color_space, NameObject):
        if color_space in RGB_FAMILIES:
            scan.has_rgb = True
        elif color_space in CMYK_FAMILIES:
            scan.has_cmyk = True
        return

    if not isinstance(color_space, ArrayObject) or not color_space:
        return

    family = _resolve(color_space[0])
    if family in RGB_FAMILIES:
        scan.has_rgb = True
    elif family == "/Separation" and len(color_space) > 1:
        scan.add_spot(_colorant_name(color_space[1]), page)
    elif family == "/DeviceN" and len(color_space) > 1:
        for colorant in _resolve(color_space[1]):
            name = _colorant_name(colorant)
            if name in ("Cyan", "Magenta", "Yellow", "Black"):
                scan.has_cmyk = True
            else:
                scan.add_spot(name, page)
    elif family == "/ICCBased" and len(color_space) > 1:
        components = _resolve(color_space[1]).get("/N")
        if components == 3:
            scan.has_rgb = True
        elif components == 4:
            scan.has_cmyk = True
    elif family in ("/Indexed", "/Pattern") and len(color_space) > 1:
        _classify(color_space[1], scan, page, depth + 1)


def _color_spaces(resources: Optional[DictionaryObject], seen: set) -> Iterator:
    """Colour spaces declared by a resource dictionary and its form/image XObjects."""
    resources = _resolve(resources)
    if not isinstance(resources, DictionaryObject):
        return

    declared = _resolve(resources.get("/ColorSpace"))
    if isinstance(declared, DictionaryObject):
        for value in declared.values():
            yield value

    xobjects = _resolve(resources.get("/XObject"))
    if not isinstance(xobjects, DictionaryObject):
        return
    for ref in xobjects.values():
        key = getattr(ref, "idnum", None)
        if key is not None:
            if key in seen:
                continue
            seen.add(key)
        xobject = _resolve(ref)
        subtype = xobject.get("/Subtype")
        if subtype == "/Image" and "/ColorSpace" in xobject:
            yield xobject["/ColorSpace"]
        elif subtype == "/Form":
            yield from _color_spaces(xobject.get("/Resources"), seen)


def scan_color_spaces(pdf: bytes) -> ColorSpaceScan:
    reader = PdfReader(io.BytesIO(pdf))
    scan = ColorSpaceScan()
    seen: set = set()
    for page_number, page in enumerate(reader.pages, start=1):
        for color_space in _color_spaces(page.get("/Resources"), seen):
            _classify(color_space, scan, page_number)
    logger.debug(
        f"Colour scan: rgb={scan.has_rgb} cmyk={scan.has_cmyk} "
        f"spots={[spot.name for spot in scan.spot_colors]}"
    )
    return scan
