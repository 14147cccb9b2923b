from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as RenderTimeout
from io import BytesIO
from typing import Mapping

from PyPDF2 import PdfReader, PdfWriter
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from ..constants import POINTS_PER_PIXEL
from .certificates_layout import TRANSPARENT, TemplateSnapshot
from .certificates_render import RenderTree, ShapeNode, TextNode, render
from .certificates_style import dash_pattern, parse_color, pdf_font_name

logger = logging.getLogger("certdesk.render")

_RENDER_WORKERS = 4


def _new_pool() -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=_RENDER_WORKERS, thread_name_prefix="cert-render")


_render_pool = _new_pool()
_pool_lock = threading.Lock()
# Futures that timed out but may still occupy a worker thread.
_stuck_renders: set = set()


class CertificateRenderError(RuntimeError):
    """PDF rendering failed or did not finish in time."""


def _rgb(value: tuple[int, int, int]) -> tuple[float, float, float]:
    return tuple(channel / 255.0 for channel in value)


def _is_pdf(path: str | None) -> bool:
    return bool(path) and path.lower().endswith(".pdf")


def _draw_background(c: canvas.Canvas, tree: RenderTree) -> None:
    image = tree.background_image
    # A PDF background is merged underneath later; an opaque fill would hide it.
    if _is_pdf(image):
        return
    color = parse_color(tree.background_color)
    if color is not None:
        c.setFillColorRGB(*_rgb(color))
        c.rect(0, 0, tree.width, tree.height, stroke=0, fill=1)
    if image:
        c.drawImage(image, 0, 0, width=tree.width, height=tree.height, mask="auto")


def _text_width(line: str, font_name: str, node: TextNode) -> float:
    return stringWidth(line, font_name, node.font_size) + node.letter_spacing * len(line)


def _draw_text(c: canvas.Canvas, node: TextNode, cx: float, cy: float) -> None:
    color = parse_color(node.color) or (0, 0, 0)
    font_name = pdf_font_name(node.font_family, node.font_weight)
    c.setFillColorRGB(*_rgb(color))
    for line in node.lines:
        if not line.text:
            continue
        width = _text_width(line.text, font_name, node)
        if node.text_align == "left":
            start = line.anchor_x
        elif node.text_align == "right":
            start = line.anchor_x - width
        else:
            start = line.anchor_x - width / 2.0
        text = c.beginText()
        text.setFont(font_name, node.font_size)
        text.setCharSpace(node.letter_spacing)
        text.setTextOrigin(start - cx, cy - line.baseline_y)
        text.textOut(line.text)
        c.drawText(text)


def _draw_shape(c: canvas.Canvas, node: ShapeNode) -> None:
    w, h = node.box.width, node.box.height
    stroke_color = parse_color(node.border_color)
    fill_color = None if node.fill_color == TRANSPARENT else parse_color(node.fill_color)
    stroke = 1 if stroke_color is not None and node.border_width > 0 else 0
    if stroke:
        c.setStrokeColorRGB(*_rgb(stroke_color))
        c.setLineWidth(node.border_width)
        dash = dash_pattern(node.border_style, node.border_width)
        if dash:
            c.setDash(list(dash), 0)
    if node.shape == "line":
        if stroke:
            c.line(-w / 2.0, 0, w / 2.0, 0)
        return
    fill = 1 if fill_color is not None else 0
    if fill:
        c.setFillColorRGB(*_rgb(fill_color))
    if not (fill or stroke):
        return
    if node.shape == "circle":
        c.ellipse(-w / 2.0, -h / 2.0, w / 2.0, h / 2.0, stroke=stroke, fill=fill)
    else:
        c.rect(-w / 2.0, -h / 2.0, w, h, stroke=stroke, fill=fill)


def _draw_node(c: canvas.Canvas, tree: RenderTree, node) -> None:
    cx = node.box.x + node.box.width / 2.0
    cy = node.box.y + node.box.height / 2.0
    c.saveState()
    # Tree coordinates grow downwards; the PDF page grows upwards.
    c.translate(cx, tree.height - cy)
    if node.rotation:
        c.rotate(-node.rotation)
    if node.opacity < 1.0:
        c.setFillAlpha(node.opacity)
        c.setStrokeAlpha(node.opacity)
    if isinstance(node, TextNode):
        _draw_text(c, node, cx, cy)
    elif isinstance(node, ShapeNode):
        _draw_shape(c, node)
    else:
        raise TypeError(f"Unsupported render node {type(node).__name__}")
    c.restoreState()


def render_tree_pdf(tree: RenderTree) -> bytes:
    """Draw a render tree onto a single fixed-size PDF page."""
    page_w = tree.width * POINTS_PER_PIXEL
    page_h = tree.height * POINTS_PER_PIXEL
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=(page_w, page_h), invariant=1)
    c.scale(POINTS_PER_PIXEL, POINTS_PER_PIXEL)
    _draw_background(c, tree)
    for node in tree.nodes:
        _draw_node(c, tree, node)
    c.showPage()
    c.save()
    overlay = buffer.getvalue()

    background = tree.background_image
    if not _is_pdf(background):
        return overlay

    base_page = PdfReader(background).pages[0]
    base_page.scale_to(page_w, page_h)
    base_page.merge_page(PdfReader(BytesIO(overlay)).pages[0])
    writer = PdfWriter()
    writer.add_page(base_page)
    out_buf = BytesIO()
    writer.write(out_buf)
    return out_buf.getvalue()


def render_pdf_bytes(snapshot: TemplateSnapshot, field_values: Mapping[str, str]) -> bytes:
    if snapshot.background_image and not os.path.exists(snapshot.background_image):
        raise CertificateRenderError(
            f"Background file {snapshot.background_image} is missing"
        )
    return render_tree_pdf(render(snapshot, field_values))


def _note_stuck_render(future) -> None:
    """Track a timed-out render; replace the pool once every worker is stuck.

    Threads cannot be killed, so a hung render keeps its worker until it
    returns. The abandoned pool finishes those renders in the background.
    """
    global _render_pool
    with _pool_lock:
        _stuck_renders.add(future)
        for done in [f for f in _stuck_renders if f.done()]:
            _stuck_renders.discard(done)
        if len(_stuck_renders) < _RENDER_WORKERS:
            return
        logger.warning(
            "[CERT-FAIL] %s renders hung; replacing render pool", len(_stuck_renders)
        )
        _render_pool.shutdown(wait=False)
        _render_pool = _new_pool()
        _stuck_renders.clear()


def render_pdf_with_timeout(
    snapshot: TemplateSnapshot,
    field_values: Mapping[str, str],
    timeout: float,
) -> bytes:
    """Render on the worker pool; give up after ``timeout`` seconds."""
    with _pool_lock:
        future = _render_pool.submit(render_pdf_bytes, snapshot, dict(field_values))
    try:
        return future.result(timeout=timeout)
    except RenderTimeout:
        if not future.cancel():
            _note_stuck_render(future)
        logger.warning("[CERT-FAIL] render timed out template=%s", snapshot.name)
        raise CertificateRenderError(
            f"Rendering certificate {snapshot.name!r} timed out after {timeout:g}s"
        ) from None
    except CertificateRenderError:
        raise
    except Exception as exc:
        raise CertificateRenderError(
            f"Rendering certificate {snapshot.name!r} failed: {exc}"
        ) from exc
