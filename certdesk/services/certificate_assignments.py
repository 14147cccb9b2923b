from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..app import db
from ..constants import TEMPLATE_STATUS_ACTIVE
from ..models import (
    CertificateTemplate,
    ClassCertificate,
    ClassModel,
    Course,
    CourseCertificate,
)


class AssignmentConflictError(ValueError):
    """The template is already assigned to the target."""


def _clear_course_default(course_id: int) -> None:
    db.session.query(CourseCertificate).filter(
        CourseCertificate.course_id == course_id,
        CourseCertificate.is_default.is_(True),
    ).update({"is_default": False}, synchronize_session="fetch")


def _clear_class_default(class_id: int) -> None:
    db.session.query(ClassCertificate).filter(
        ClassCertificate.class_id == class_id,
        ClassCertificate.is_default.is_(True),
    ).update({"is_default": False}, synchronize_session="fetch")


def _is_default_conflict(error: IntegrityError) -> bool:
    details = str(getattr(error, "orig", None) or error).lower()
    if "_default" in details:
        return True
    # SQLite names only the columns: the default index covers the target alone.
    return "certificate_id" not in details


def _commit_assignment(link, label: str):
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        if _is_default_conflict(exc):
            raise AssignmentConflictError(
                f"Another default certificate was set for {label} at the same time"
            ) from None
        raise AssignmentConflictError(f"Certificate is already assigned to {label}") from None
    return link


def assign_to_course(
    template: CertificateTemplate, course: Course, is_default: bool = False
) -> CourseCertificate:
    existing = (
        db.session.query(CourseCertificate)
        .filter_by(certificate_id=template.id, course_id=course.id)
        .one_or_none()
    )
    if existing is not None:
        raise AssignmentConflictError(
            f"Certificate '{template.name}' is already assigned to course '{course.name}'"
        )
    if is_default:
        _clear_course_default(course.id)
    link = CourseCertificate(
        certificate_id=template.id, course_id=course.id, is_default=is_default
    )
    db.session.add(link)
    return _commit_assignment(link, f"course '{course.name}'")


def assign_to_class(
    template: CertificateTemplate, class_model: ClassModel, is_default: bool = False
) -> ClassCertificate:
    existing = (
        db.session.query(ClassCertificate)
        .filter_by(certificate_id=template.id, class_id=class_model.id)
        .one_or_none()
    )
    if existing is not None:
        raise AssignmentConflictError(
            f"Certificate '{template.name}' is already assigned to class '{class_model.title}'"
        )
    if is_default:
        _clear_class_default(class_model.id)
    link = ClassCertificate(
        certificate_id=template.id, class_id=class_model.id, is_default=is_default
    )
    db.session.add(link)
    return _commit_assignment(link, f"class '{class_model.title}'")


def unassign_course(template: CertificateTemplate, course: Course) -> bool:
    deleted = (
        db.session.query(CourseCertificate)
        .filter_by(certificate_id=template.id, course_id=course.id)
        .delete()
    )
    db.session.commit()
    return bool(deleted)


def unassign_class(template: CertificateTemplate, class_model: ClassModel) -> bool:
    deleted = (
        db.session.query(ClassCertificate)
        .filter_by(certificate_id=template.id, class_id=class_model.id)
        .delete()
    )
    db.session.commit()
    return bool(deleted)


def set_default_assignment(link: CourseCertificate | ClassCertificate, is_default: bool = True):
    """Set or clear the default flag; the previous default is cleared in the same commit.

    The partial unique index on the target turns a concurrent second default
    into :class:`AssignmentConflictError`.
    """
    if isinstance(link, CourseCertificate):
        target, label = f"course={link.course_id}", f"course #{link.course_id}"
    else:
        target, label = f"class={link.class_id}", f"class #{link.class_id}"
    if is_default:
        if isinstance(link, CourseCertificate):
            _clear_course_default(link.course_id)
        else:
            _clear_class_default(link.class_id)
        current_app.logger.info(
            "[CERT-DEFAULT] %s certificate=%s", target, link.certificate_id
        )
    link.is_default = is_default
    return _commit_assignment(link, label)


def toggle_default_course(template: CertificateTemplate, course: Course) -> CourseCertificate:
    link = (
        db.session.query(CourseCertificate)
        .filter_by(certificate_id=template.id, course_id=course.id)
        .one_or_none()
    )
    if link is None:
        raise LookupError(
            f"Certificate '{template.name}' is not assigned to course '{course.name}'"
        )
    return set_default_assignment(link, not link.is_default)


def toggle_default_class(
    template: CertificateTemplate, class_model: ClassModel
) -> ClassCertificate:
    link = (
        db.session.query(ClassCertificate)
        .filter_by(certificate_id=template.id, class_id=class_model.id)
        .one_or_none()
    )
    if link is None:
        raise LookupError(
            f"Certificate '{template.name}' is not assigned to class '{class_model.title}'"
        )
    return set_default_assignment(link, not link.is_default)


def default_template_for_course(course: Course) -> CertificateTemplate | None:
    return (
        db.session.query(CertificateTemplate)
        .join(CourseCertificate, CourseCertificate.certificate_id == CertificateTemplate.id)
        .filter(
            CourseCertificate.course_id == course.id,
            CourseCertificate.is_default.is_(True),
            CertificateTemplate.status == TEMPLATE_STATUS_ACTIVE,
        )
        .first()
    )


def default_template_for_class(class_model: ClassModel) -> CertificateTemplate | None:
    """Class default first, then the course default; active templates only."""
    template = (
        db.session.query(CertificateTemplate)
        .join(ClassCertificate, ClassCertificate.certificate_id == CertificateTemplate.id)
        .filter(
            ClassCertificate.class_id == class_model.id,
            ClassCertificate.is_default.is_(True),
            CertificateTemplate.status == TEMPLATE_STATUS_ACTIVE,
        )
        .first()
    )
    if template is not None:
        return template
    if class_model.course is None:
        return None
    return default_template_for_course(class_model.course)
