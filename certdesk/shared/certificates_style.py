from __future__ import annotations

import logging
import re

from PIL import ImageFont

logger = logging.getLogger("certdesk.fonts")

_SERIF_FAMILIES = {"georgia", "times", "times new roman", "serif", "garamond", "palatino"}
_MONO_FAMILIES = {"courier", "courier new", "monospace", "consolas"}

# reportlab base-14 fonts; always available, nothing to register.
_PDF_FONTS = {
    ("sans", "normal"): "Helvetica",
    ("sans", "bold"): "Helvetica-Bold",
    ("serif", "normal"): "Times-Roman",
    ("serif", "bold"): "Times-Bold",
    ("mono", "normal"): "Courier",
    ("mono", "bold"): "Courier-Bold",
}

_FONT_PATHS = {
    ("sans", "normal"): "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    ("sans", "bold"): "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    ("serif", "normal"): "/usr/share/fonts/truetype/dejavu/DejaVuSerif.ttf",
    ("serif", "bold"): "/usr/share/fonts/truetype/dejavu/DejaVuSerif-Bold.ttf",
    ("mono", "normal"): "/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf",
    ("mono", "bold"): "/usr/share/fonts/truetype/dejavu/DejaVuSansMono-Bold.ttf",
}
_DEFAULT_FONT_PATH = _FONT_PATHS[("sans", "normal")]

_HEX_RE = re.compile(r"^#?([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def font_class(font_family: str | None) -> str:
    """Collapse a CSS font stack into sans, serif or mono."""
    families = [
        part.strip().strip("'\"").lower() for part in (font_family or "").split(",")
    ]
    for family in families:
        if family in _SERIF_FAMILIES:
            return "serif"
        if family in _MONO_FAMILIES:
            return "mono"
        if family:
            return "sans"
    return "sans"


def _weight(font_weight: str | None) -> str:
    return "bold" if (font_weight or "").lower() == "bold" else "normal"


def pdf_font_name(font_family: str | None, font_weight: str | None) -> str:
    return _PDF_FONTS[(font_class(font_family), _weight(font_weight))]


def load_preview_font(
    font_family: str | None,
    font_weight: str | None,
    size_px: float,
    warnings: list[str] | None = None,
) -> ImageFont.FreeTypeFont:
    size = max(int(round(size_px)), 1)
    path = _FONT_PATHS[(font_class(font_family), _weight(font_weight))]
    for candidate in (path, _DEFAULT_FONT_PATH):
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    logger.warning("[preview-font-fallback] family=%s path=%s", font_family, path)
    if warnings is not None:
        message = f"Font {font_family or '<default>'} unavailable for preview; using fallback rendering font."
        if message not in warnings:
            warnings.append(message)
    return ImageFont.load_default(size)


def parse_color(value: str | None) -> tuple[int, int, int] | None:
    """Hex color to an RGB tuple; ``None`` for transparent or unparseable values."""
    if not value:
        return None
    match = _HEX_RE.match(value.strip())
    if not match:
        return None
    digits = match.group(1)
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return tuple(int(digits[i : i + 2], 16) for i in (0, 2, 4))


def dash_pattern(border_style: str, border_width: float) -> tuple[float, float] | None:
    width = max(border_width, 1.0)
    if border_style == "dashed":
        return (width * 3, width * 2)
    if border_style == "dotted":
        return (width, width)
    return None
