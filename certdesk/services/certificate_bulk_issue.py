from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from flask import current_app

from ..app import db
from ..constants import ACTIVE_ENROLLMENT_STATUSES
from ..models import CertificateTemplate, ClassModel, Enrollment, Student
from ..shared.storage import LocalArtifactStore, get_artifact_store
from ..shared.time import Clock, now_utc
from .certificate_assignments import default_template_for_class
from .certificate_issuance import IssuanceOutcome, issue_certificate


@dataclass(frozen=True)
class BulkIssueError:
    student_id: int
    message: str


@dataclass
class BulkIssueResult:
    issued_count: int = 0
    skipped_count: int = 0
    errors: list[BulkIssueError] = field(default_factory=list)
    message: str = ""

    @property
    def failed_count(self) -> int:
        return len(self.errors)

    def summary(self) -> str:
        return (
            f"Issued: {self.issued_count}, Skipped: {self.skipped_count}, "
            f"Failed: {self.failed_count}"
        )


def _scoped_enrollment(
    student_id: int, class_id: int | None, course_id: int | None
) -> Enrollment | None:
    if class_id is None and course_id is None:
        return None
    query = db.session.query(Enrollment).filter(Enrollment.student_id == student_id)
    if class_id is not None:
        query = query.filter(Enrollment.class_id == class_id)
    if course_id is not None:
        query = query.filter(Enrollment.course_id == course_id)
    return query.order_by(Enrollment.id).first()


def eligible_student_ids(
    class_id: int | None = None, course_id: int | None = None
) -> list[int]:
    """Students with an active enrollment in the class or course, in enrollment order."""
    if class_id is None and course_id is None:
        raise ValueError("A class or course is required to select eligible students")
    query = db.session.query(Enrollment.student_id).filter(
        Enrollment.status.in_(ACTIVE_ENROLLMENT_STATUSES)
    )
    if class_id is not None:
        query = query.filter(Enrollment.class_id == class_id)
    if course_id is not None:
        query = query.filter(Enrollment.course_id == course_id)
    ids: list[int] = []
    for (student_id,) in query.order_by(Enrollment.id):
        if student_id not in ids:
            ids.append(student_id)
    return ids


def bulk_issue_certificates(
    template: CertificateTemplate,
    student_ids: Iterable[int],
    *,
    skip_existing: bool = True,
    class_id: int | None = None,
    course_id: int | None = None,
    actor_id: int | None = None,
    notes: str | None = None,
    store: LocalArtifactStore | None = None,
    clock: Clock = now_utc,
) -> BulkIssueResult:
    """Issue ``template`` to each student in order; one student's failure never stops the batch."""
    result = BulkIssueResult()
    if not template.is_active():
        result.message = (
            f"Cannot issue certificates: template '{template.name}' is not active "
            f"(status: {template.status})."
        )
        current_app.logger.info("[CERT-BULK] template=%s refused: inactive", template.id)
        return result

    store = store or get_artifact_store()
    template_id = template.id
    for student_id in student_ids:
        template = db.session.get(CertificateTemplate, template_id)
        student = db.session.get(Student, student_id)
        if student is None:
            result.errors.append(
                BulkIssueError(student_id, f"Student #{student_id} not found.")
            )
            current_app.logger.warning("[CERT-FAIL] bulk student=%s missing", student_id)
            continue
        try:
            enrollment = _scoped_enrollment(student.id, class_id, course_id)
            outcome = issue_certificate(
                template,
                student,
                enrollment,
                actor_id=actor_id,
                notes=notes,
                skip_existing=skip_existing,
                class_id=class_id,
                store=store,
                clock=clock,
            )
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception(
                "[CERT-FAIL] bulk template=%s student=%s", template_id, student_id
            )
            result.errors.append(
                BulkIssueError(
                    student_id, f"Issuing to {student.full_name} (#{student_id}) failed: {exc}"
                )
            )
            continue
        if outcome.outcome is IssuanceOutcome.ISSUED:
            result.issued_count += 1
        elif outcome.outcome is IssuanceOutcome.SKIPPED:
            result.skipped_count += 1
        else:
            result.errors.append(BulkIssueError(student_id, outcome.message))

    result.message = result.summary()
    current_app.logger.info(
        "[CERT-BULK] template=%s class=%s course=%s %s",
        template_id,
        class_id,
        course_id,
        result.message,
    )
    return result


def auto_issue_on_completion(
    class_model: ClassModel,
    *,
    actor_id: int | None = None,
    store: LocalArtifactStore | None = None,
    clock: Clock = now_utc,
) -> BulkIssueResult | None:
    """Issue the class's default certificate to its students once the class is completed."""
    if not class_model.is_completed():
        return None
    template = default_template_for_class(class_model)
    if template is None:
        return None
    return bulk_issue_certificates(
        template,
        eligible_student_ids(class_id=class_model.id),
        skip_existing=True,
        class_id=class_model.id,
        actor_id=actor_id,
        store=store,
        clock=clock,
    )
