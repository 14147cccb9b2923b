from __future__ import annotations

import math
import secrets
from dataclasses import asdict, dataclass, fields
from dataclasses import field as dc_field
from typing import Iterable, Sequence, Union

from ..constants import CANVAS_DIMENSIONS, DEFAULT_BACKGROUND_COLOR

ELEMENT_TYPES = ("text", "dynamic", "shape")
SHAPE_KINDS = ("rectangle", "circle", "line")
BORDER_STYLES = ("solid", "dashed", "dotted")
TEXT_ALIGNMENTS = ("left", "center", "right")
FONT_WEIGHTS = ("normal", "bold")

TRANSPARENT = "transparent"


@dataclass(frozen=True)
class TextElement:
    id: str
    x: int = 100
    y: int = 100
    width: int = 400
    height: int = 50
    rotation: float = 0.0
    opacity: float = 1.0
    content: str = ""
    font_family: str = "Arial, sans-serif"
    font_size: float = 24.0
    font_weight: str = "normal"
    color: str = "#000000"
    text_align: str = "center"
    line_height: float = 1.2
    letter_spacing: float = 0.0
    type: str = dc_field(default="text", init=False)


@dataclass(frozen=True)
class DynamicElement:
    id: str
    field: str = "student_name"
    x: int = 100
    y: int = 200
    width: int = 400
    height: int = 40
    rotation: float = 0.0
    opacity: float = 1.0
    prefix: str = ""
    suffix: str = ""
    font_family: str = "Georgia, serif"
    font_size: float = 20.0
    font_weight: str = "normal"
    color: str = "#333333"
    text_align: str = "center"
    line_height: float = 1.2
    letter_spacing: float = 0.0
    type: str = dc_field(default="dynamic", init=False)


@dataclass(frozen=True)
class ShapeElement:
    id: str
    shape: str = "rectangle"
    x: int = 100
    y: int = 300
    width: int = 400
    height: int = 100
    rotation: float = 0.0
    opacity: float = 1.0
    border_width: float = 1.0
    border_color: str = "#000000"
    border_style: str = "solid"
    fill_color: str = TRANSPARENT
    type: str = dc_field(default="shape", init=False)


Element = Union[TextElement, DynamicElement, ShapeElement]


@dataclass(frozen=True)
class TemplateSnapshot:
    """Everything the renderer needs, detached from the database session."""

    name: str
    width: int
    height: int
    background_color: str = DEFAULT_BACKGROUND_COLOR
    background_image: str | None = None
    elements: tuple[Element, ...] = ()


def canvas_dimensions(size: str, orientation: str) -> tuple[int, int]:
    key = ((size or "").strip().lower(), (orientation or "").strip().lower())
    if key not in CANVAS_DIMENSIONS:
        raise ValueError(f"Unsupported canvas: size={size!r} orientation={orientation!r}")
    return CANVAS_DIMENSIONS[key]


def new_element_id(kind: str) -> str:
    return f"{kind}_{secrets.token_hex(6)}"


def _as_int(value, default: int) -> int:
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return default


def _as_float(value, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_str(value, default: str) -> str:
    if value is None:
        return default
    return str(value)


def _choice(value, allowed: Sequence[str], default: str) -> str:
    cleaned = str(value or "").strip().lower()
    return cleaned if cleaned in allowed else default


def _common(raw: dict, defaults) -> dict:
    opacity = _as_float(raw.get("opacity"), defaults.opacity)
    return {
        "x": _as_int(raw.get("x"), defaults.x),
        "y": _as_int(raw.get("y"), defaults.y),
        "width": max(0, _as_int(raw.get("width"), defaults.width)),
        "height": max(0, _as_int(raw.get("height"), defaults.height)),
        "rotation": _as_float(raw.get("rotation"), defaults.rotation),
        "opacity": min(1.0, max(0.0, opacity)),
    }


def _typography(raw: dict, defaults) -> dict:
    return {
        "font_family": _as_str(raw.get("font_family"), defaults.font_family),
        "font_size": max(1.0, _as_float(raw.get("font_size"), defaults.font_size)),
        "font_weight": _choice(raw.get("font_weight"), FONT_WEIGHTS, defaults.font_weight),
        "color": _as_str(raw.get("color"), defaults.color),
        "text_align": _choice(raw.get("text_align"), TEXT_ALIGNMENTS, defaults.text_align),
        "line_height": max(0.1, _as_float(raw.get("line_height"), defaults.line_height)),
        "letter_spacing": _as_float(raw.get("letter_spacing"), defaults.letter_spacing),
    }


def parse_element(raw: dict) -> Element:
    """Build a typed element from its stored dict form."""
    if not isinstance(raw, dict):
        raise ValueError(f"Element must be a mapping, got {type(raw).__name__}")
    kind = raw.get("type")
    element_id = str(raw.get("id") or "").strip()
    if not element_id:
        raise ValueError(f"Element of type {kind!r} is missing an id")
    if kind == "text":
        defaults = TextElement(id=element_id)
        return TextElement(
            id=element_id,
            content=_as_str(raw.get("content"), ""),
            **_common(raw, defaults),
            **_typography(raw, defaults),
        )
    if kind == "dynamic":
        defaults = DynamicElement(id=element_id)
        return DynamicElement(
            id=element_id,
            field=_as_str(raw.get("field"), "").strip(),
            prefix=_as_str(raw.get("prefix"), ""),
            suffix=_as_str(raw.get("suffix"), ""),
            **_common(raw, defaults),
            **_typography(raw, defaults),
        )
    if kind == "shape":
        defaults = ShapeElement(id=element_id)
        shape = str(raw.get("shape") or "").strip().lower()
        if shape not in SHAPE_KINDS:
            raise ValueError(f"Element {element_id}: unsupported shape {shape!r}")
        return ShapeElement(
            id=element_id,
            shape=shape,
            border_width=max(0.0, _as_float(raw.get("border_width"), defaults.border_width)),
            border_color=_as_str(raw.get("border_color"), defaults.border_color),
            border_style=_choice(raw.get("border_style"), BORDER_STYLES, defaults.border_style),
            fill_color=_as_str(raw.get("fill_color"), defaults.fill_color),
            **_common(raw, defaults),
        )
    raise ValueError(f"Element {element_id}: unsupported element type {kind!r}")


# Edits are validated strictly; parse_element stays lenient for stored data.
_NUMBER_LIMITS = {
    "x": (None, None),
    "y": (None, None),
    "width": (0, None),
    "height": (0, None),
    "rotation": (None, None),
    "opacity": (0, 1),
    "font_size": (1, None),
    "line_height": (0.1, None),
    "letter_spacing": (None, None),
    "border_width": (0, None),
}
_CHOICE_ATTRS = {
    "font_weight": FONT_WEIGHTS,
    "text_align": TEXT_ALIGNMENTS,
    "border_style": BORDER_STYLES,
    "shape": SHAPE_KINDS,
}
_ELEMENT_CLASSES = {"text": TextElement, "dynamic": DynamicElement, "shape": ShapeElement}


def _strict_number(key: str, value) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Invalid {key}: {value!r} is not a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid {key}: {value!r} is not a number") from None
    if not math.isfinite(number):
        raise ValueError(f"Invalid {key}: {value!r} is not a finite number")
    return number


def validate_element_attrs(kind: str, attrs: dict) -> None:
    """Raise ValueError naming the first attribute that is unknown or out of range."""
    element_cls = _ELEMENT_CLASSES.get(kind)
    if element_cls is None:
        raise ValueError(f"Unsupported element type {kind!r}")
    allowed = {f.name for f in fields(element_cls)} - {"id", "type"}
    for key, value in attrs.items():
        if key not in allowed:
            raise ValueError(f"{kind} element: unknown attribute {key!r}")
        if key in _CHOICE_ATTRS:
            choices = _CHOICE_ATTRS[key]
            if str(value or "").strip().lower() not in choices:
                raise ValueError(
                    f"Invalid {key}: {value!r}; expected one of {', '.join(choices)}"
                )
        elif key in _NUMBER_LIMITS:
            number = _strict_number(key, value)
            low, high = _NUMBER_LIMITS[key]
            if low is not None and number < low:
                raise ValueError(f"Invalid {key}: {value!r} is below {low:g}")
            if high is not None and number > high:
                raise ValueError(f"Invalid {key}: {value!r} is above {high:g}")
        elif not isinstance(value, str):
            raise ValueError(f"Invalid {key}: expected text, got {type(value).__name__}")


def element_to_dict(element: Element) -> dict:
    return asdict(element)


def parse_elements(raw_elements: Iterable[dict] | None) -> list[Element]:
    elements: list[Element] = []
    seen: set[str] = set()
    for raw in raw_elements or []:
        element = parse_element(raw)
        if element.id in seen:
            raise ValueError(f"Duplicate element id {element.id!r}")
        seen.add(element.id)
        elements.append(element)
    return elements


def serialize_elements(elements: Iterable[Element]) -> list[dict]:
    return [element_to_dict(element) for element in elements]


def update_element_attrs(element: Element, changes: dict) -> Element:
    """Apply validated attribute changes; ``id`` and ``type`` never change."""
    changes = {k: v for k, v in changes.items() if k not in ("id", "type")}
    try:
        validate_element_attrs(element.type, changes)
    except ValueError as exc:
        raise ValueError(f"Element {element.id}: {exc}") from None
    raw = element_to_dict(element)
    raw.update(changes)
    return parse_element(raw)


def move_up(elements: Sequence[Element], index: int) -> list[Element]:
    items = list(elements)
    if 0 < index < len(items):
        items[index - 1], items[index] = items[index], items[index - 1]
    return items


def move_down(elements: Sequence[Element], index: int) -> list[Element]:
    items = list(elements)
    if 0 <= index < len(items) - 1:
        items[index], items[index + 1] = items[index + 1], items[index]
    return items


def delete_at(elements: Sequence[Element], index: int) -> list[Element]:
    items = list(elements)
    if not 0 <= index < len(items):
        raise IndexError(f"No element at position {index}")
    del items[index]
    return items


def snapshot_template(template, background_path: str | None = None) -> TemplateSnapshot:
    return TemplateSnapshot(
        name=template.name or "",
        width=template.width,
        height=template.height,
        background_color=template.background_color or DEFAULT_BACKGROUND_COLOR,
        background_image=background_path,
        elements=tuple(parse_elements(template.elements)),
    )
