"""QR vector graphic generation on top of the ``qrcode`` library."""
from __future__ import annotations

import base64
from dataclasses import dataclass
import logging
from pathlib import Path
import xml.etree.ElementTree as ET
from typing import Optional, Tuple

import qrcode
import qrcode.image.svg
from qrcode.constants import ERROR_CORRECT_H, ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q
from qrcode.exceptions import DataOverflowError

from .qrmerge import (
    GeneratorFailure,
    MalformedQRGraphic,
    format_number,
    parse_document,
    serialize_document,
)

log = logging.getLogger("qrmerge.generator")

ERROR_CORRECTION_LEVELS = {
    "L": ERROR_CORRECT_L,
    "M": ERROR_CORRECT_M,
    "Q": ERROR_CORRECT_Q,
    "H": ERROR_CORRECT_H,
}


@dataclass(frozen=True)
class QRStyle:
    error_correction: str = "H"
    border: int = 1
    box_size: int = 10
    logo_ratio: float = 0.25
    # Extra clearance around the logo, in modules.
    logo_margin: float = 0.5


DEFAULT_STYLE = QRStyle()


def generate_qr_svg(
    data: str,
    *,
    logo_svg: Optional[str] = None,
    style: QRStyle = DEFAULT_STYLE,
) -> str:
    """Return a standalone black-on-white QR SVG for ``data``.

    When ``logo_svg`` is given, modules under a centered square covering
    ``style.logo_ratio`` of the QR width are cleared and the logo is drawn there.
    """
    if not data:
        raise GeneratorFailure(data or "", "payload is empty")
    level = ERROR_CORRECTION_LEVELS.get(style.error_correction.upper())
    if level is None:
        raise GeneratorFailure(data, f"unknown error correction level {style.error_correction!r}")

    log.debug("Generating QR for: %s", data)
    qr = qrcode.QRCode(
        error_correction=level,
        box_size=style.box_size,
        border=style.border,
        image_factory=qrcode.image.svg.SvgPathFillImage,
    )
    try:
        qr.add_data(data)
        qr.make(fit=True)
    except (DataOverflowError, ValueError, TypeError) as exc:
        raise GeneratorFailure(data, str(exc) or exc.__class__.__name__) from exc

    logo_box = None
    if logo_svg:
        logo_box = _logo_box(qr.modules_count, style)
        _clear_modules(qr, logo_box, style)

    svg_text = qr.make_image().to_string(encoding="unicode")
    log.debug("Generated SVG length: %d", len(svg_text))
    if logo_box is None:
        return svg_text
    return _embed_logo(svg_text, logo_svg, logo_box, qr.modules_count + 2 * style.border)


def load_logo(path: Path) -> str:
    """Read a logo SVG and check that it parses."""
    text = Path(path).read_text(encoding="utf-8")
    parse_document(text)
    return text


def logo_data_uri(logo_svg: str) -> str:
    encoded = base64.b64encode(logo_svg.encode("utf-8")).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def _logo_box(modules_count: int, style: QRStyle) -> Tuple[float, float]:
    # Offset and side of the logo square in module units, border included.
    dimension = modules_count + 2 * style.border
    side = dimension * style.logo_ratio
    return (dimension - side) / 2, side


def _clear_modules(qr: qrcode.QRCode, logo_box: Tuple[float, float], style: QRStyle) -> None:
    offset, side = logo_box
    low = offset - style.logo_margin
    high = offset + side + style.logo_margin
    cleared = 0
    for row in range(qr.modules_count):
        top = row + style.border
        if not (top < high and top + 1 > low):
            continue
        for col in range(qr.modules_count):
            left = col + style.border
            if left < high and left + 1 > low and qr.modules[row][col]:
                qr.modules[row][col] = False
                cleared += 1
    log.debug("Cleared %d modules under the logo", cleared)


def _embed_logo(svg_text: str, logo_svg: str, logo_box: Tuple[float, float], dimension: int) -> str:
    root = parse_document(svg_text)
    view_box = root.get("viewBox")
    if not view_box:
        raise MalformedQRGraphic("generated QR graphic has no viewBox attribute")
    try:
        view_width = float(view_box.split()[2])
    except (IndexError, ValueError) as exc:
        raise MalformedQRGraphic(f"unreadable QR viewBox {view_box!r}") from exc

    unit = view_width / dimension
    offset, side = logo_box
    tag = "image"
    if root.tag.startswith("{"):
        tag = root.tag.split("}", 1)[0] + "}image"
    ET.SubElement(
        root,
        tag,
        {
            "x": format_number(offset * unit),
            "y": format_number(offset * unit),
            "width": format_number(side * unit),
            "height": format_number(side * unit),
            "href": logo_data_uri(logo_svg),
            "preserveAspectRatio": "xMidYMid meet",
        },
    )
    return serialize_document(root)
