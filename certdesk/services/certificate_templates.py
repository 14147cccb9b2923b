from __future__ import annotations

from flask import current_app

from ..app import db
from ..constants import (
    DEFAULT_BACKGROUND_COLOR,
    TEMPLATE_STATUS_ACTIVE,
    TEMPLATE_STATUS_ARCHIVED,
    TEMPLATE_STATUS_DRAFT,
    TEMPLATE_STATUSES,
)
from ..models import (
    CertificateIssuance,
    CertificateTemplate,
    ClassCertificate,
    CourseCertificate,
)
from ..shared.certificate_fields import parse_field_key
from ..shared.certificates_layout import (
    SHAPE_KINDS,
    Element,
    delete_at,
    move_down,
    move_up,
    new_element_id,
    parse_element,
    parse_elements,
    serialize_elements,
    update_element_attrs,
    validate_element_attrs,
)

_ALLOWED_TRANSITIONS = {
    TEMPLATE_STATUS_DRAFT: {TEMPLATE_STATUS_ACTIVE},
    TEMPLATE_STATUS_ACTIVE: {TEMPLATE_STATUS_ARCHIVED, TEMPLATE_STATUS_DRAFT},
    TEMPLATE_STATUS_ARCHIVED: {TEMPLATE_STATUS_ACTIVE, TEMPLATE_STATUS_DRAFT},
}

_EDITABLE_FIELDS = ("name", "description", "size", "orientation", "background_color", "background_image")

_SHAPE_DEFAULTS = {
    "rectangle": {"width": 400, "height": 100, "border_width": 1},
    "circle": {"width": 100, "height": 100, "border_width": 1},
    "line": {"width": 400, "height": 2, "border_width": 2},
}


class TemplateInUseError(RuntimeError):
    """The template has issuances and the change would rewrite history."""


def _issuance_count(template: CertificateTemplate) -> int:
    return (
        db.session.query(CertificateIssuance)
        .filter(CertificateIssuance.certificate_id == template.id)
        .count()
    )


def template_elements(template: CertificateTemplate) -> list[Element]:
    return parse_elements(template.elements)


def _save_elements(template: CertificateTemplate, elements: list[Element]) -> CertificateTemplate:
    template.elements = serialize_elements(elements)
    db.session.commit()
    return template


def create_template(
    name: str,
    *,
    size: str = "a4",
    orientation: str = "landscape",
    description: str | None = None,
    background_color: str = DEFAULT_BACKGROUND_COLOR,
    background_image: str | None = None,
    elements: list[dict] | None = None,
    created_by: int | None = None,
) -> CertificateTemplate:
    name = (name or "").strip()
    if not name:
        raise ValueError("Template name is required")
    template = CertificateTemplate(
        name=name,
        description=description,
        size=size,
        orientation=orientation,
        background_color=background_color or DEFAULT_BACKGROUND_COLOR,
        background_image=background_image,
        elements=serialize_elements(parse_elements(elements)),
        status=TEMPLATE_STATUS_DRAFT,
        created_by=created_by,
    )
    db.session.add(template)
    db.session.commit()
    return template


def update_template(template: CertificateTemplate, **changes) -> CertificateTemplate:
    unknown = set(changes) - set(_EDITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Cannot update template fields: {', '.join(sorted(unknown))}")
    if "name" in changes:
        changes["name"] = (changes["name"] or "").strip()
        if not changes["name"]:
            raise ValueError("Template name is required")
    try:
        for key, value in changes.items():
            setattr(template, key, value)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return template


def set_template_status(template: CertificateTemplate, status: str) -> CertificateTemplate:
    if status not in TEMPLATE_STATUSES:
        raise ValueError(f"Unsupported certificate status: {status!r}")
    if status == template.status:
        return template
    if status not in _ALLOWED_TRANSITIONS.get(template.status, set()):
        raise ValueError(f"Cannot move template from {template.status} to {status}")
    if status == TEMPLATE_STATUS_DRAFT and _issuance_count(template):
        raise TemplateInUseError(
            f"Template '{template.name}' has issued certificates and cannot return to draft"
        )
    template.status = status
    db.session.commit()
    current_app.logger.info("[CERT-TEMPLATE] id=%s status=%s", template.id, status)
    return template


def add_text_element(template: CertificateTemplate, content: str = "Sample Text", **attrs) -> Element:
    validate_element_attrs("text", {"content": content, **attrs})
    raw = {"id": new_element_id("text"), "type": "text", "content": content, **attrs}
    element = parse_element(raw)
    _save_elements(template, template_elements(template) + [element])
    return element


def add_dynamic_element(template: CertificateTemplate, field: str, **attrs) -> Element:
    key = parse_field_key(field)
    validate_element_attrs("dynamic", attrs)
    raw = {"id": new_element_id("dynamic"), "type": "dynamic", "field": key.value, **attrs}
    element = parse_element(raw)
    _save_elements(template, template_elements(template) + [element])
    return element


def add_shape_element(template: CertificateTemplate, shape: str = "rectangle", **attrs) -> Element:
    if shape not in SHAPE_KINDS:
        raise ValueError(f"Unsupported shape {shape!r}")
    validate_element_attrs("shape", attrs)
    raw = {
        "id": new_element_id("shape"),
        "type": "shape",
        "shape": shape,
        **_SHAPE_DEFAULTS[shape],
        **attrs,
    }
    element = parse_element(raw)
    _save_elements(template, template_elements(template) + [element])
    return element


def _position(elements: list[Element], element_id: str) -> int:
    for index, element in enumerate(elements):
        if element.id == element_id:
            return index
    raise LookupError(f"Element {element_id!r} not found")


def update_element(template: CertificateTemplate, element_id: str, **changes) -> Element:
    elements = template_elements(template)
    index = _position(elements, element_id)
    if "field" in changes and elements[index].type == "dynamic":
        changes["field"] = parse_field_key(changes["field"]).value
    elements[index] = update_element_attrs(elements[index], changes)
    _save_elements(template, elements)
    return elements[index]


def move_element_up(template: CertificateTemplate, element_id: str) -> list[Element]:
    elements = template_elements(template)
    elements = move_up(elements, _position(elements, element_id))
    _save_elements(template, elements)
    return elements


def move_element_down(template: CertificateTemplate, element_id: str) -> list[Element]:
    elements = template_elements(template)
    elements = move_down(elements, _position(elements, element_id))
    _save_elements(template, elements)
    return elements


def delete_element(template: CertificateTemplate, element_id: str) -> list[Element]:
    elements = template_elements(template)
    elements = delete_at(elements, _position(elements, element_id))
    _save_elements(template, elements)
    return elements


def duplicate_template(
    template: CertificateTemplate, *, created_by: int | None = None
) -> CertificateTemplate:
    """Copy the design into a new draft named "<name> (Copy)"."""
    return create_template(
        f"{template.name} (Copy)",
        size=template.size,
        orientation=template.orientation,
        description=template.description,
        background_color=template.background_color,
        background_image=template.background_image,
        elements=list(template.elements or []),
        created_by=created_by,
    )


def delete_template(template: CertificateTemplate) -> None:
    count = _issuance_count(template)
    if count:
        raise TemplateInUseError(
            f"Template '{template.name}' has {count} issuance(s) and cannot be deleted"
        )
    template_id = template.id
    db.session.query(CourseCertificate).filter_by(certificate_id=template_id).delete()
    db.session.query(ClassCertificate).filter_by(certificate_id=template_id).delete()
    db.session.expire(template)
    db.session.delete(template)
    db.session.commit()
    current_app.logger.info("[CERT-TEMPLATE] deleted id=%s", template_id)
