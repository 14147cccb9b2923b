import pytest

from certdesk.app import db
from certdesk.models import CertificateTemplate, CourseCertificate
from certdesk.services.certificate_assignments import assign_to_course
from certdesk.services.certificate_issuance import issue_certificate
from certdesk.services.certificate_templates import (
    TemplateInUseError,
    add_dynamic_element,
    add_shape_element,
    add_text_element,
    create_template,
    delete_element,
    delete_template,
    duplicate_template,
    move_element_down,
    move_element_up,
    set_template_status,
    template_elements,
    update_element,
    update_template,
)
from certdesk.shared.certificate_fields import UnknownFieldKeyError


def test_create_starts_in_draft(app):
    template = create_template("  Award  ", size="letter", orientation="portrait")
    assert template.name == "Award"
    assert template.status == "draft"
    assert (template.width, template.height) == (816, 1056)
    assert template.elements == []


def test_create_requires_name(app):
    with pytest.raises(ValueError):
        create_template("   ")


def test_changing_orientation_swaps_dimensions(app):
    template = create_template("Award")
    assert (template.width, template.height) == (1122, 793)
    update_template(template, orientation="portrait")
    assert (template.width, template.height) == (793, 1122)
    with pytest.raises(ValueError):
        update_template(template, width=500)


def test_status_transitions(app, active_template, make_student, store, clock):
    draft = create_template("New")
    with pytest.raises(ValueError):
        set_template_status(draft, "archived")
    set_template_status(draft, "active")
    set_template_status(draft, "archived")
    set_template_status(draft, "active")
    set_template_status(draft, "draft")
    assert draft.status == "draft"

    issue_certificate(active_template, make_student(), store=store, clock=clock)
    with pytest.raises(TemplateInUseError):
        set_template_status(active_template, "draft")
    assert active_template.status == "active"


def test_add_elements_use_defaults(app):
    template = create_template("Award")
    text = add_text_element(template)
    dynamic = add_dynamic_element(template, "issue_date", prefix="Issued on ")
    circle = add_shape_element(template, "circle")
    line = add_shape_element(template, "line")

    assert text.id.startswith("text_") and text.content == "Sample Text"
    assert dynamic.id.startswith("dynamic_") and dynamic.field == "issue_date"
    assert (circle.width, circle.height) == (100, 100)
    assert (line.height, line.border_width) == (2, 2)
    assert [e.id for e in template_elements(template)] == [
        text.id,
        dynamic.id,
        circle.id,
        line.id,
    ]


def test_unknown_dynamic_field_rejected(app):
    template = create_template("Award")
    with pytest.raises(UnknownFieldKeyError):
        add_dynamic_element(template, "studnet_name")
    assert template.elements == []
    element = add_dynamic_element(template, "student_name")
    with pytest.raises(UnknownFieldKeyError):
        update_element(template, element.id, field="nope")


def test_update_element_persists(app):
    template = create_template("Award")
    element = add_text_element(template, "Old")
    update_element(template, element.id, content="New", font_size=30, x=12)
    db.session.expire_all()
    stored = template_elements(db.session.get(CertificateTemplate, template.id))[0]
    assert (stored.content, stored.font_size, stored.x) == ("New", 30.0, 12)
    with pytest.raises(LookupError):
        update_element(template, "text_missing", content="x")


def test_reorder_and_delete(app):
    template = create_template("Award")
    ids = [add_text_element(template, str(i)).id for i in range(3)]

    assert [e.id for e in move_element_up(template, ids[0])] == ids
    assert [e.id for e in move_element_down(template, ids[0])] == [ids[1], ids[0], ids[2]]
    assert [e.id for e in move_element_down(template, ids[2])] == [ids[1], ids[0], ids[2]]
    remaining = delete_element(template, ids[0])
    assert [e.id for e in remaining] == [ids[1], ids[2]]
    assert len(template.elements) == 2


def test_duplicate_template_is_draft_copy(app, active_template):
    copy = duplicate_template(active_template, created_by=5)
    assert copy.id != active_template.id
    assert copy.name == "Completion Certificate (Copy)"
    assert copy.status == "draft"
    assert copy.created_by == 5
    assert copy.elements == active_template.elements


def test_delete_template_refused_with_issuances(app, active_template, make_student, store, clock):
    issue_certificate(active_template, make_student(), store=store, clock=clock)
    with pytest.raises(TemplateInUseError):
        delete_template(active_template)
    assert db.session.get(CertificateTemplate, active_template.id) is not None


def test_delete_template_removes_assignments(app, course_class):
    course, _ = course_class
    template = create_template("Unused")
    assign_to_course(template, course, is_default=True)
    template_id = template.id
    delete_template(template)
    assert db.session.get(CertificateTemplate, template_id) is None
    assert db.session.query(CourseCertificate).count() == 0


def test_invalid_edit_is_refused_and_nothing_changes(app):
    template = create_template("Award")
    element = add_text_element(template, "Name", x=300, width=250)
    with pytest.raises(ValueError, match="Invalid x"):
        update_element(template, element.id, x="not-a-number", width=-50)

    db.session.expire_all()
    stored = template_elements(db.session.get(CertificateTemplate, template.id))[0]
    assert (stored.x, stored.width) == (300, 250)


def test_add_element_validates_attributes(app):
    template = create_template("Award")
    with pytest.raises(ValueError, match="border_width"):
        add_shape_element(template, "line", border_width=-1)
    with pytest.raises(ValueError, match="font_weight"):
        add_dynamic_element(template, "student_name", font_weight="heavy")
    with pytest.raises(ValueError, match="unknown attribute"):
        add_text_element(template, "Hi", colour="#000")
    assert template.elements == []
