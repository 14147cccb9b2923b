import logging

import pytest
from sqlalchemy.exc import IntegrityError

from certdesk.app import db
from certdesk.models import ClassCertificate, CourseCertificate
from certdesk.services import certificate_assignments
from certdesk.services.certificate_assignments import (
    AssignmentConflictError,
    assign_to_class,
    assign_to_course,
    default_template_for_class,
    default_template_for_course,
    set_default_assignment,
    toggle_default_class,
    toggle_default_course,
    unassign_class,
    unassign_course,
)
from certdesk.services.certificate_templates import create_template, set_template_status


def _active(name):
    template = create_template(name)
    set_template_status(template, "active")
    return template


def _course_defaults(course):
    return (
        db.session.query(CourseCertificate)
        .filter_by(course_id=course.id, is_default=True)
        .all()
    )


def test_new_default_replaces_old_one(app, course_class):
    course, _ = course_class
    a, b = _active("A"), _active("B")
    link_a = assign_to_course(a, course, is_default=True)
    assign_to_course(b, course, is_default=True)

    defaults = _course_defaults(course)
    assert [link.certificate_id for link in defaults] == [b.id]
    db.session.refresh(link_a)
    assert link_a.is_default is False


def test_set_default_keeps_exactly_one(app, course_class, caplog):
    course, _ = course_class
    a, b = _active("A"), _active("B")
    assign_to_course(a, course, is_default=True)
    link_b = assign_to_course(b, course)
    with caplog.at_level(logging.INFO):
        set_default_assignment(link_b)
    assert [link.certificate_id for link in _course_defaults(course)] == [b.id]
    assert "[CERT-DEFAULT]" in caplog.text


def test_toggle_default_course(app, course_class):
    course, _ = course_class
    a, b = _active("A"), _active("B")
    assign_to_course(a, course, is_default=True)
    assign_to_course(b, course)

    toggle_default_course(b, course)
    assert [link.certificate_id for link in _course_defaults(course)] == [b.id]
    toggle_default_course(b, course)
    assert _course_defaults(course) == []


def test_toggle_default_class(app, course_class):
    _, class_model = course_class
    a, b = _active("A"), _active("B")
    assign_to_class(a, class_model, is_default=True)
    assign_to_class(b, class_model)
    toggle_default_class(b, class_model)
    defaults = (
        db.session.query(ClassCertificate)
        .filter_by(class_id=class_model.id, is_default=True)
        .all()
    )
    assert [link.certificate_id for link in defaults] == [b.id]


def test_toggle_requires_assignment(app, course_class):
    course, class_model = course_class
    template = _active("A")
    with pytest.raises(LookupError):
        toggle_default_course(template, course)
    with pytest.raises(LookupError):
        toggle_default_class(template, class_model)


def test_template_assigned_once_per_target(app, course_class):
    course, class_model = course_class
    template = _active("A")
    assign_to_course(template, course)
    assign_to_class(template, class_model)
    with pytest.raises(AssignmentConflictError):
        assign_to_course(template, course, is_default=True)
    with pytest.raises(AssignmentConflictError):
        assign_to_class(template, class_model)


def test_unassign(app, course_class):
    course, class_model = course_class
    template = _active("A")
    assign_to_course(template, course)
    assign_to_class(template, class_model)
    assert unassign_course(template, course) is True
    assert unassign_class(template, class_model) is True
    assert unassign_course(template, course) is False


def test_class_default_falls_back_to_course(app, course_class):
    course, class_model = course_class
    course_template = _active("Course Default")
    class_template = _active("Class Default")
    assign_to_course(course_template, course, is_default=True)

    assert default_template_for_class(class_model).id == course_template.id
    assign_to_class(class_template, class_model, is_default=True)
    assert default_template_for_class(class_model).id == class_template.id


def test_defaults_ignore_inactive_templates(app, course_class):
    course, class_model = course_class
    draft = create_template("Draft")
    assign_to_course(draft, course, is_default=True)
    assign_to_class(draft, class_model, is_default=True)
    assert default_template_for_course(course) is None
    assert default_template_for_class(class_model) is None


def test_database_allows_one_default_per_target(app, course_class):
    course, class_model = course_class
    a, b = _active("A"), _active("B")
    db.session.add_all(
        [
            CourseCertificate(certificate_id=a.id, course_id=course.id, is_default=True),
            CourseCertificate(certificate_id=b.id, course_id=course.id, is_default=True),
        ]
    )
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()

    db.session.add_all(
        [
            ClassCertificate(certificate_id=a.id, class_id=class_model.id, is_default=True),
            ClassCertificate(certificate_id=b.id, class_id=class_model.id, is_default=True),
        ]
    )
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_racing_default_is_reported_as_conflict(app, course_class, monkeypatch):
    course, _ = course_class
    a, b = _active("A"), _active("B")
    assign_to_course(a, course, is_default=True)
    link_b = assign_to_course(b, course)

    # The other request set its default after this one cleared the flag.
    monkeypatch.setattr(certificate_assignments, "_clear_course_default", lambda course_id: None)
    with pytest.raises(AssignmentConflictError, match="Another default"):
        set_default_assignment(link_b)
    assert [link.certificate_id for link in _course_defaults(course)] == [a.id]
