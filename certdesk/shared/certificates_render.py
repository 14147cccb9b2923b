from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass
from typing import Mapping, Union

from .certificates_layout import (
    DynamicElement,
    ShapeElement,
    TemplateSnapshot,
    TextElement,
)

# Alphabetic baseline sits this far below the middle of a CSS line box.
BASELINE_OFFSET_EM = 0.35


@dataclass(frozen=True)
class Box:
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class TextLine:
    text: str
    anchor_x: float
    baseline_y: float


@dataclass(frozen=True)
class TextNode:
    element_id: str
    source: str
    box: Box
    rotation: float
    opacity: float
    text: str
    lines: tuple[TextLine, ...]
    font_family: str
    font_size: float
    font_weight: str
    color: str
    text_align: str
    line_height: float
    letter_spacing: float
    kind: str = "text"


@dataclass(frozen=True)
class ShapeNode:
    element_id: str
    shape: str
    box: Box
    rotation: float
    opacity: float
    border_width: float
    border_color: str
    border_style: str
    fill_color: str
    border_radius: float
    kind: str = "shape"


RenderNode = Union[TextNode, ShapeNode]


@dataclass(frozen=True)
class RenderTree:
    width: float
    height: float
    zoom: float
    background_color: str
    background_image: str | None
    nodes: tuple[RenderNode, ...]
    unresolved_fields: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return asdict(self)

    def fingerprint(self) -> str:
        payload = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode()).hexdigest()


def _layout_lines(
    text: str, box: Box, font_size: float, line_height: float, align: str
) -> tuple[TextLine, ...]:
    if align == "left":
        anchor_x = box.x
    elif align == "right":
        anchor_x = box.x + box.width
    else:
        anchor_x = box.x + box.width / 2.0
    line_box = font_size * line_height
    lines = []
    for index, line in enumerate(text.split("\n")):
        baseline = box.y + (index + 0.5) * line_box + BASELINE_OFFSET_EM * font_size
        lines.append(TextLine(text=line, anchor_x=anchor_x, baseline_y=baseline))
    return tuple(lines)


def _text_node(element: TextElement | DynamicElement, text: str) -> TextNode:
    box = Box(element.x, element.y, element.width, element.height)
    return TextNode(
        element_id=element.id,
        source=element.type,
        box=box,
        rotation=element.rotation,
        opacity=element.opacity,
        text=text,
        lines=_layout_lines(
            text, box, element.font_size, element.line_height, element.text_align
        ),
        font_family=element.font_family,
        font_size=element.font_size,
        font_weight=element.font_weight,
        color=element.color,
        text_align=element.text_align,
        line_height=element.line_height,
        letter_spacing=element.letter_spacing,
    )


def _shape_node(element: ShapeElement) -> ShapeNode:
    return ShapeNode(
        element_id=element.id,
        shape=element.shape,
        box=Box(element.x, element.y, element.width, element.height),
        rotation=element.rotation,
        opacity=element.opacity,
        border_width=element.border_width,
        border_color=element.border_color,
        border_style=element.border_style,
        fill_color=element.fill_color,
        border_radius=0.5 if element.shape == "circle" else 0.0,
    )


def _scale_box(box: Box, zoom: float) -> Box:
    return Box(box.x * zoom, box.y * zoom, box.width * zoom, box.height * zoom)


def _scale_node(node: RenderNode, zoom: float) -> RenderNode:
    if isinstance(node, TextNode):
        return TextNode(
            element_id=node.element_id,
            source=node.source,
            box=_scale_box(node.box, zoom),
            rotation=node.rotation,
            opacity=node.opacity,
            text=node.text,
            lines=tuple(
                TextLine(line.text, line.anchor_x * zoom, line.baseline_y * zoom)
                for line in node.lines
            ),
            font_family=node.font_family,
            font_size=node.font_size * zoom,
            font_weight=node.font_weight,
            color=node.color,
            text_align=node.text_align,
            line_height=node.line_height,
            letter_spacing=node.letter_spacing * zoom,
        )
    if isinstance(node, ShapeNode):
        return ShapeNode(
            element_id=node.element_id,
            shape=node.shape,
            box=_scale_box(node.box, zoom),
            rotation=node.rotation,
            opacity=node.opacity,
            border_width=node.border_width * zoom,
            border_color=node.border_color,
            border_style=node.border_style,
            fill_color=node.fill_color,
            border_radius=node.border_radius,
        )
    raise TypeError(f"Unsupported render node {type(node).__name__}")


def render(
    template: TemplateSnapshot,
    field_values: Mapping[str, str],
    zoom: float = 1.0,
) -> RenderTree:
    """Lay out a template snapshot with resolved field values.

    Nodes keep list order (back to front). The layout is computed at 1:1 and
    then multiplied by ``zoom``, so a zoomed tree divided by the zoom factor
    reproduces the unscaled one.
    """
    if zoom <= 0:
        raise ValueError(f"Zoom must be positive, got {zoom!r}")
    nodes: list[RenderNode] = []
    unresolved: list[str] = []
    for element in template.elements:
        if isinstance(element, TextElement):
            node = _text_node(element, element.content)
        elif isinstance(element, DynamicElement):
            if element.field not in field_values:
                unresolved.append(element.field)
            value = field_values.get(element.field) or ""
            node = _text_node(element, f"{element.prefix}{value}{element.suffix}")
        elif isinstance(element, ShapeElement):
            node = _shape_node(element)
        else:
            raise TypeError(f"Unsupported element {type(element).__name__}")
        nodes.append(_scale_node(node, zoom) if zoom != 1.0 else node)
    return RenderTree(
        width=template.width * zoom,
        height=template.height * zoom,
        zoom=zoom,
        background_color=template.background_color,
        background_image=template.background_image,
        nodes=tuple(nodes),
        unresolved_fields=tuple(unresolved),
    )
