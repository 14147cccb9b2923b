import base64
import math
import os
import re
import time
from dataclasses import dataclass
from datetime import date
from io import BytesIO

from flask import current_app
from markupsafe import Markup, escape
from PIL import Image, ImageDraw
from PyPDF2 import PdfReader

from ..shared.certificate_fields import FieldMode, resolve_fields, sample_field_values
from ..shared.certificates_layout import TRANSPARENT, snapshot_template
from ..shared.certificates_render import RenderTree, ShapeNode, TextNode, render
from ..shared.certificates_style import dash_pattern, load_preview_font, parse_color
from ..shared.storage import LocalArtifactStore, get_artifact_store

_CACHE_TTL_SECONDS = 45
_PIL_ANCHORS = {"left": "ls", "center": "ms", "right": "rs"}


@dataclass(frozen=True)
class PreviewResult:
    image_base64: str
    warnings: tuple[str, ...]

    def png_bytes(self) -> bytes:
        return base64.b64decode(self.image_base64)


_preview_cache: dict[str, tuple[float, PreviewResult]] = {}


def clear_preview_cache() -> None:
    _preview_cache.clear()


def _background_path(template, store: LocalArtifactStore, warnings: list[str]) -> str | None:
    reference = template.background_image
    if not reference:
        return None
    path = store.path_for(reference)
    if not os.path.exists(path):
        warnings.append(f"Background {reference} is missing; rendering without it.")
        return None
    return path


def build_preview_tree(
    template,
    *,
    student=None,
    enrollment=None,
    class_model=None,
    zoom: float = 1.0,
    today: date | None = None,
    store: LocalArtifactStore | None = None,
    warnings: list[str] | None = None,
) -> RenderTree:
    """Render tree for the editor, with sample values when no student is given."""
    store = store or get_artifact_store()
    warnings = warnings if warnings is not None else []
    prefix = current_app.config.get("CERTIFICATE_NUMBER_PREFIX", "CERT")
    verify_url = current_app.config.get("CERTIFICATE_VERIFY_URL")
    snapshot = snapshot_template(template, _background_path(template, store, warnings))
    if student is None:
        values = sample_field_values(
            template, today, number_prefix=prefix, verification_url_template=verify_url
        )
    else:
        values = resolve_fields(
            template,
            student,
            enrollment,
            mode=FieldMode.PREVIEW,
            issued_on=today,
            class_model=class_model,
            number_prefix=prefix,
            verification_url_template=verify_url,
        )
    tree = render(snapshot, values, zoom=zoom)
    for key in tree.unresolved_fields:
        warnings.append(f"Unknown field {key!r} renders empty.")
    return tree


# --- HTML -------------------------------------------------------------------


def _px(value: float) -> str:
    return f"{value:g}px"


def _box_style(node, z_index: int) -> list[str]:
    style = [
        "position:absolute",
        f"left:{_px(node.box.x)}",
        f"top:{_px(node.box.y)}",
        f"width:{_px(node.box.width)}",
        f"height:{_px(node.box.height)}",
        f"z-index:{z_index}",
        "box-sizing:border-box",
    ]
    if node.rotation:
        style.append(f"transform:rotate({node.rotation:g}deg)")
    if node.opacity < 1.0:
        style.append(f"opacity:{node.opacity:g}")
    return style


def _html_text(node: TextNode, z_index: int) -> str:
    style = _box_style(node, z_index) + [
        f"font-family:{node.font_family}",
        f"font-size:{_px(node.font_size)}",
        f"font-weight:{node.font_weight}",
        f"color:{node.color}",
        f"text-align:{node.text_align}",
        f"line-height:{node.line_height:g}",
        f"letter-spacing:{_px(node.letter_spacing)}",
        "white-space:pre",
    ]
    body = Markup("<br>").join(escape(line.text) for line in node.lines)
    return Markup(
        '<div class="cert-element cert-{kind}" data-element-id="{id}" style="{style}">{body}</div>'
    ).format(kind=node.source, id=node.element_id, style=";".join(style), body=body)


def _html_shape(node: ShapeNode, z_index: int) -> str:
    style = _box_style(node, z_index)
    border = f"{_px(node.border_width)} {node.border_style} {node.border_color}"
    if node.shape == "line":
        # Centered horizontal rule inside the element box.
        style[2] = f"top:{_px(node.box.y + (node.box.height - node.border_width) / 2.0)}"
        style[4] = "height:0"
        style.append(f"border-top:{border}")
    else:
        style.append(f"border:{border}")
        if node.fill_color != TRANSPARENT:
            style.append(f"background-color:{node.fill_color}")
        if node.border_radius:
            style.append(f"border-radius:{node.border_radius * 100:g}%")
    return Markup(
        '<div class="cert-element cert-shape cert-{shape}" data-element-id="{id}" style="{style}"></div>'
    ).format(shape=node.shape, id=node.element_id, style=";".join(style))


def render_html(tree: RenderTree, background_url: str | None = None) -> Markup:
    """Absolutely positioned HTML surface for the interactive editor."""
    style = [
        "position:relative",
        "overflow:hidden",
        f"width:{_px(tree.width)}",
        f"height:{_px(tree.height)}",
        f"background-color:{tree.background_color}",
    ]
    if background_url and not background_url.lower().endswith(".pdf"):
        style.append(f"background-image:url('{background_url}')")
        style.append("background-size:100% 100%")
    parts = []
    for z_index, node in enumerate(tree.nodes, start=1):
        if isinstance(node, TextNode):
            parts.append(_html_text(node, z_index))
        elif isinstance(node, ShapeNode):
            parts.append(_html_shape(node, z_index))
        else:
            raise TypeError(f"Unsupported render node {type(node).__name__}")
    return Markup('<div class="cert-canvas" style="{style}">{body}</div>').format(
        style=";".join(style), body=Markup("").join(parts)
    )


def preview_template_html(template, *, zoom: float = 1.0, student=None, enrollment=None):
    store = get_artifact_store()
    warnings: list[str] = []
    tree = build_preview_tree(
        template,
        student=student,
        enrollment=enrollment,
        zoom=zoom,
        store=store,
        warnings=warnings,
    )
    background_url = (
        store.url_for(template.background_image) if tree.background_image else None
    )
    return render_html(tree, background_url), tuple(warnings)


# --- PNG --------------------------------------------------------------------


def _render_pdf_background(path: str, size: tuple[int, int]) -> Image.Image:
    """Paint the raster images placed on the first page of a PDF background."""
    reader = PdfReader(path)
    page = reader.pages[0]
    width = float(page.mediabox.width)
    height = float(page.mediabox.height)
    scale_x = size[0] / width
    scale_y = size[1] / height
    canvas = Image.new("RGBA", size, (0, 0, 0, 0))
    content = page.get_contents()
    if content is None:
        return canvas
    if not isinstance(content, list):
        content = [content]
    commands = "".join(obj.get_object().get_data().decode("latin-1") for obj in content)
    pattern = re.compile(r"([\d\.\-\s]+)cm\s+/(Image\d+|Im\d+) Do")
    xobjects = page["/Resources"].get("/XObject") if page.get("/Resources") else None
    if not xobjects:
        return canvas
    xobjects = xobjects.get_object()
    for match in pattern.finditer(commands):
        numbers = [float(x) for x in match.group(1).strip().split()]
        if len(numbers) != 6:
            continue
        a, b, c, d, e, f = numbers
        stream = xobjects.get("/" + match.group(2))
        if not stream:
            continue
        try:
            image = Image.open(BytesIO(stream.get_object().get_data())).convert("RGBA")
        except (OSError, ValueError):
            continue
        w_px = max(1, int(round(abs(a) * scale_x)))
        h_px = max(1, int(round(abs(d) * scale_y)))
        y_top_pt = f + abs(d) if d > 0 else f
        canvas.paste(
            image.resize((w_px, h_px)),
            (int(round(e * scale_x)), int(round((height - y_top_pt) * scale_y))),
        )
    return canvas


def _background(tree: RenderTree, size: tuple[int, int], warnings: list[str]) -> Image.Image:
    color = parse_color(tree.background_color)
    base = Image.new("RGBA", size, (*color, 255) if color else (255, 255, 255, 0))
    path = tree.background_image
    if not path:
        return base
    try:
        if path.lower().endswith(".pdf"):
            layer = _render_pdf_background(path, size)
        else:
            layer = Image.open(path).convert("RGBA").resize(size)
    except (OSError, ValueError) as exc:
        current_app.logger.warning("[preview-background] %s unreadable: %s", path, exc)
        warnings.append(f"Background {os.path.basename(path)} could not be drawn in preview.")
        return base
    return Image.alpha_composite(base, layer)


def _dashed_segment(draw, start, end, dash, fill, width) -> None:
    (x0, y0), (x1, y1) = start, end
    length = math.hypot(x1 - x0, y1 - y0)
    if not length:
        return
    on, off = dash
    ux, uy = (x1 - x0) / length, (y1 - y0) / length
    pos = 0.0
    while pos < length:
        stop = min(pos + on, length)
        draw.line(
            [(x0 + ux * pos, y0 + uy * pos), (x0 + ux * stop, y0 + uy * stop)],
            fill=fill,
            width=width,
        )
        pos = stop + off


def _draw_shape(draw: ImageDraw.ImageDraw, node: ShapeNode) -> None:
    x0, y0 = node.box.x, node.box.y
    x1, y1 = x0 + node.box.width, y0 + node.box.height
    stroke = parse_color(node.border_color)
    fill = None if node.fill_color == TRANSPARENT else parse_color(node.fill_color)
    width = int(round(node.border_width))
    outline = stroke if stroke is not None and width > 0 else None
    dash = dash_pattern(node.border_style, node.border_width)

    if node.shape == "line":
        if outline is None:
            return
        mid = (y0 + y1) / 2.0
        if dash:
            _dashed_segment(draw, (x0, mid), (x1, mid), dash, outline, width)
        else:
            draw.line([(x0, mid), (x1, mid)], fill=outline, width=width)
        return

    if node.shape == "circle":
        draw.ellipse([x0, y0, x1, y1], fill=fill, outline=None if dash else outline, width=width)
        if dash and outline is not None:
            radius = max(node.box.width, node.box.height) / 2.0
            step = math.degrees((dash[0] + dash[1]) / max(radius, 1.0))
            on = math.degrees(dash[0] / max(radius, 1.0))
            angle = 0.0
            while angle < 360.0:
                draw.arc([x0, y0, x1, y1], angle, min(angle + on, 360.0), fill=outline, width=width)
                angle += step
        return

    draw.rectangle([x0, y0, x1, y1], fill=fill, outline=None if dash else outline, width=width)
    if dash and outline is not None:
        corners = [(x0, y0), (x1, y0), (x1, y1), (x0, y1), (x0, y0)]
        for start, end in zip(corners, corners[1:]):
            _dashed_segment(draw, start, end, dash, outline, width)


def _draw_text(draw: ImageDraw.ImageDraw, node: TextNode, warnings: list[str]) -> None:
    font = load_preview_font(node.font_family, node.font_weight, node.font_size, warnings)
    fill = parse_color(node.color) or (0, 0, 0)
    for line in node.lines:
        if not line.text:
            continue
        if not node.letter_spacing:
            draw.text(
                (line.anchor_x, line.baseline_y),
                line.text,
                font=font,
                fill=fill,
                anchor=_PIL_ANCHORS.get(node.text_align, "ms"),
            )
            continue
        advances = [font.getlength(ch) + node.letter_spacing for ch in line.text]
        total = sum(advances)
        if node.text_align == "left":
            x = line.anchor_x
        elif node.text_align == "right":
            x = line.anchor_x - total
        else:
            x = line.anchor_x - total / 2.0
        for ch, advance in zip(line.text, advances):
            draw.text((x, line.baseline_y), ch, font=font, fill=fill, anchor="ls")
            x += advance


def render_png(tree: RenderTree) -> PreviewResult:
    """Rasterise a render tree to PNG, one RGBA layer per element."""
    key = tree.fingerprint()
    cached = _preview_cache.get(key)
    now = time.time()
    if cached and now - cached[0] < _CACHE_TTL_SECONDS:
        return cached[1]

    size = (max(1, int(round(tree.width))), max(1, int(round(tree.height))))
    warnings: list[str] = []
    image = _background(tree, size, warnings)
    for node in tree.nodes:
        layer = Image.new("RGBA", size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        if isinstance(node, TextNode):
            _draw_text(draw, node, warnings)
        elif isinstance(node, ShapeNode):
            _draw_shape(draw, node)
        else:
            raise TypeError(f"Unsupported render node {type(node).__name__}")
        if node.rotation:
            center = (
                node.box.x + node.box.width / 2.0,
                node.box.y + node.box.height / 2.0,
            )
            layer = layer.rotate(-node.rotation, resample=Image.Resampling.BICUBIC, center=center)
        if node.opacity < 1.0:
            alpha = layer.getchannel("A").point(lambda v: int(round(v * node.opacity)))
            layer.putalpha(alpha)
        image = Image.alpha_composite(image, layer)

    buffer = BytesIO()
    image.save(buffer, format="PNG")
    result = PreviewResult(
        image_base64=base64.b64encode(buffer.getvalue()).decode("ascii"),
        warnings=tuple(warnings),
    )
    _preview_cache[key] = (now, result)
    return result


def generate_preview(
    template,
    *,
    zoom: float = 1.0,
    student=None,
    enrollment=None,
    class_model=None,
    today: date | None = None,
) -> PreviewResult:
    warnings: list[str] = []
    tree = build_preview_tree(
        template,
        student=student,
        enrollment=enrollment,
        class_model=class_model,
        zoom=zoom,
        today=today,
        warnings=warnings,
    )
    result = render_png(tree)
    if not warnings:
        return result
    merged = tuple(dict.fromkeys(warnings + list(result.warnings)))
    return PreviewResult(image_base64=result.image_base64, warnings=merged)
