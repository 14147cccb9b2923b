import pytest

from certdesk.models import CertificateTemplate
from certdesk.shared.certificates_layout import (
    DynamicElement,
    ShapeElement,
    TextElement,
    canvas_dimensions,
    delete_at,
    move_down,
    move_up,
    parse_element,
    parse_elements,
    serialize_elements,
    update_element_attrs,
)


@pytest.mark.parametrize(
    "size,orientation,expected",
    [
        ("a4", "portrait", (793, 1122)),
        ("a4", "landscape", (1122, 793)),
        ("letter", "portrait", (816, 1056)),
        ("letter", "landscape", (1056, 816)),
    ],
)
def test_canvas_dimensions_are_fixed(size, orientation, expected):
    template = CertificateTemplate(name="t", size=size, orientation=orientation)
    assert (template.width, template.height) == expected
    assert canvas_dimensions(size.upper(), orientation) == expected


def test_model_rejects_unknown_size():
    with pytest.raises(ValueError):
        CertificateTemplate(name="t", size="a3", orientation="portrait")


def test_parse_element_fills_variant_defaults():
    text = parse_element({"id": "text_1", "type": "text", "content": "Hi"})
    dynamic = parse_element({"id": "dynamic_1", "type": "dynamic", "field": "student_name"})
    shape = parse_element({"id": "shape_1", "type": "shape", "shape": "circle"})

    assert isinstance(text, TextElement)
    assert (text.x, text.y, text.width, text.height, text.font_size) == (100, 100, 400, 50, 24)
    assert isinstance(dynamic, DynamicElement)
    assert dynamic.color == "#333333"
    assert isinstance(shape, ShapeElement)
    assert shape.fill_color == "transparent"


def test_parse_element_clamps_and_coerces():
    element = parse_element(
        {
            "id": "text_1",
            "type": "text",
            "x": "12.6",
            "opacity": 3,
            "text_align": "JUSTIFY",
            "font_weight": "bold",
        }
    )
    assert element.x == 13
    assert element.opacity == 1.0
    assert element.text_align == "center"
    assert element.font_weight == "bold"


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "text"},
        {"id": "x", "type": "image"},
        {"id": "x", "type": "shape", "shape": "star"},
    ],
)
def test_parse_element_rejects_bad_input(raw):
    with pytest.raises(ValueError):
        parse_element(raw)


def test_duplicate_ids_rejected():
    with pytest.raises(ValueError, match="Duplicate"):
        parse_elements(
            [{"id": "a", "type": "text"}, {"id": "a", "type": "shape", "shape": "line"}]
        )


def test_serialized_elements_parse_back_unchanged():
    elements = parse_elements(
        [
            {"id": "a", "type": "text", "content": "A"},
            {"id": "b", "type": "dynamic", "field": "issue_date", "suffix": "."},
        ]
    )
    assert parse_elements(serialize_elements(elements)) == elements


def _three():
    return [
        TextElement(id="a"),
        TextElement(id="b"),
        TextElement(id="c"),
    ]


def test_move_swaps_adjacent_only():
    assert [e.id for e in move_up(_three(), 2)] == ["a", "c", "b"]
    assert [e.id for e in move_down(_three(), 0)] == ["b", "a", "c"]


def test_move_at_edges_is_noop():
    assert [e.id for e in move_up(_three(), 0)] == ["a", "b", "c"]
    assert [e.id for e in move_down(_three(), 2)] == ["a", "b", "c"]


def test_delete_compacts_list():
    remaining = delete_at(_three(), 1)
    assert [e.id for e in remaining] == ["a", "c"]
    with pytest.raises(IndexError):
        delete_at(_three(), 5)


def test_update_element_keeps_identity():
    element = TextElement(id="a", content="old")
    updated = update_element_attrs(element, {"content": "new", "id": "zzz", "type": "shape"})
    assert updated.id == "a"
    assert updated.type == "text"
    assert updated.content == "new"
    with pytest.raises(ValueError):
        update_element_attrs(element, {"shape": "circle"})


@pytest.mark.parametrize(
    "changes,message",
    [
        ({"x": "not-a-number"}, "x"),
        ({"width": -50}, "width"),
        ({"opacity": 1.5}, "opacity"),
        ({"font_size": 0}, "font_size"),
        ({"text_align": "justify"}, "text_align"),
        ({"rotation": float("nan")}, "rotation"),
        ({"content": None}, "content"),
    ],
)
def test_update_element_rejects_invalid_values(changes, message):
    element = TextElement(id="a", x=300, width=200)
    with pytest.raises(ValueError, match=f"Invalid {message}"):
        update_element_attrs(element, changes)


def test_stored_data_stays_lenient():
    element = parse_element({"id": "a", "type": "text", "x": "not-a-number", "width": -50})
    assert (element.x, element.width) == (100, 0)
