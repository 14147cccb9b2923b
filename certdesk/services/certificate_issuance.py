from __future__ import annotations

import enum
import re
import secrets
from dataclasses import dataclass
from typing import Mapping

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..app import db
from ..constants import (
    ACTIVE_ENROLLMENT_STATUSES,
    AUDIT_CORRECTED,
    AUDIT_DELETED,
    AUDIT_DOWNLOADED,
    AUDIT_ISSUED,
    AUDIT_REVOKED,
    ISSUANCE_STATUS_ISSUED,
    ISSUANCE_STATUS_REVOKED,
)
from ..models import (
    CertificateIssuance,
    CertificateLog,
    CertificateTemplate,
    ClassModel,
    Enrollment,
    Student,
)
from ..shared.certificate_fields import FieldMode, build_verification_url, resolve_fields
from ..shared.certificates_layout import snapshot_template
from ..shared.certificates_pdf import CertificateRenderError, render_pdf_with_timeout
from ..shared.storage import LocalArtifactStore, certificate_reference, get_artifact_store
from ..shared.time import Clock, now_utc
from .certificate_numbers import reserve_certificate_number

_NUMBER_RETRIES = 1


class IssuanceOutcome(str, enum.Enum):
    ISSUED = "issued"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(frozen=True)
class IssuanceResult:
    outcome: IssuanceOutcome
    issuance: CertificateIssuance | None
    message: str
    warnings: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return self.outcome is IssuanceOutcome.ISSUED


class CertificateStateError(RuntimeError):
    """Raised when an issuance is not in a state that allows the operation."""


def _student_label(student: Student) -> str:
    return f"{student.full_name} (#{student.id})"


def _template_label(template: CertificateTemplate) -> str:
    return f"'{template.name}'"


def _enrollment_key(enrollment: Enrollment | None) -> int:
    return enrollment.id if enrollment is not None else 0


def find_active_issuance(
    template: CertificateTemplate,
    student: Student,
    enrollment: Enrollment | None = None,
) -> CertificateIssuance | None:
    return (
        db.session.query(CertificateIssuance)
        .filter_by(
            certificate_id=template.id,
            student_id=student.id,
            enrollment_key=_enrollment_key(enrollment),
            status=ISSUANCE_STATUS_ISSUED,
        )
        .one_or_none()
    )


def _is_triple_conflict(error: IntegrityError) -> bool:
    details = str(getattr(error, "orig", None) or error).lower()
    return "uix_certificate_issuances_active_triple" in details or (
        "certificate_issuances.certificate_id" in details
        and "certificate_issuances.student_id" in details
    )


def _is_number_conflict(error: IntegrityError) -> bool:
    details = str(getattr(error, "orig", None) or error).lower()
    return "certificate_number" in details and not _is_triple_conflict(error)


def write_audit_entry(
    action: str,
    *,
    issuance: CertificateIssuance | None,
    certificate_number: str | None,
    actor_id: int | None,
    clock: Clock = now_utc,
    details: str | None = None,
) -> str | None:
    """Append an audit row in its own commit.

    Returns a warning message instead of raising; callers surface it.
    """
    try:
        db.session.add(
            CertificateLog(
                issuance_id=issuance.id if issuance is not None else None,
                certificate_number=certificate_number,
                action=action,
                actor_id=actor_id,
                details=details,
                created_at=clock(),
            )
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception(
            "[CERT-AUDIT-FAIL] action=%s number=%s actor=%s",
            action,
            certificate_number,
            actor_id,
        )
        return f"Audit entry '{action}' for {certificate_number} was not recorded: {exc}"
    return None


def _duplicate_result(
    template: CertificateTemplate,
    student: Student,
    existing_number: str | None,
    skip_existing: bool,
) -> IssuanceResult:
    suffix = f" ({existing_number})" if existing_number else ""
    if skip_existing:
        message = (
            f"Skipped {_student_label(student)}: certificate {_template_label(template)} "
            f"already issued{suffix}."
        )
        current_app.logger.info(
            "[CERT-SKIP] template=%s student=%s existing=%s",
            template.id,
            student.id,
            existing_number,
        )
        return IssuanceResult(IssuanceOutcome.SKIPPED, None, message)
    message = (
        f"Certificate {_template_label(template)} already issued to "
        f"{_student_label(student)}{suffix}."
    )
    return IssuanceResult(IssuanceOutcome.CONFLICT, None, message)


def _failed(template: CertificateTemplate, student: Student | None, reason: str) -> IssuanceResult:
    current_app.logger.warning(
        "[CERT-FAIL] template=%s student=%s reason=%s",
        template.id,
        getattr(student, "id", None),
        reason,
    )
    return IssuanceResult(IssuanceOutcome.FAILED, None, reason)


def issue_certificate(
    template: CertificateTemplate,
    student: Student | None,
    enrollment: Enrollment | None = None,
    *,
    actor_id: int | None = None,
    notes: str | None = None,
    overrides: Mapping[str, object] | None = None,
    skip_existing: bool = False,
    class_id: int | None = None,
    store: LocalArtifactStore | None = None,
    clock: Clock = now_utc,
) -> IssuanceResult:
    """Issue ``template`` to ``student`` and persist the rendered PDF.

    The artifact is written before the row is inserted; a render or storage
    failure leaves no issuance behind. The partial unique index on
    (certificate, student, enrollment) decides concurrent duplicates.
    """
    if student is None:
        return _failed(template, None, "Student not found.")
    if not template.is_active():
        return _failed(
            template,
            student,
            f"Certificate {_template_label(template)} is not active (status: {template.status}).",
        )
    if enrollment is not None and enrollment.student_id != student.id:
        return _failed(
            template,
            student,
            f"Enrollment #{enrollment.id} does not belong to {_student_label(student)}.",
        )

    existing = find_active_issuance(template, student, enrollment)
    if existing is not None:
        return _duplicate_result(template, student, existing.certificate_number, skip_existing)

    store = store or get_artifact_store()
    class_model = db.session.get(ClassModel, class_id) if class_id else None
    if class_id is None and enrollment is not None:
        class_id = enrollment.class_id
    timeout = current_app.config.get("CERTIFICATE_RENDER_TIMEOUT", 30)
    verify_url = current_app.config.get("CERTIFICATE_VERIFY_URL")

    try:
        background = (
            store.path_for(template.background_image) if template.background_image else None
        )
        snapshot = snapshot_template(template, background)
    except ValueError as exc:
        return _failed(
            template, student, f"Certificate {_template_label(template)} is invalid: {exc}"
        )

    attempts = 0
    while True:
        issued_at = clock()
        try:
            number = reserve_certificate_number(issued_at)
        except SQLAlchemyError as exc:
            return _failed(template, student, f"Could not reserve a certificate number: {exc}")
        try:
            values = resolve_fields(
                template,
                student,
                enrollment,
                mode=FieldMode.ISSUANCE,
                certificate_number=number,
                issued_on=issued_at,
                class_model=class_model,
                overrides=overrides,
                verification_url_template=verify_url,
            )
        except ValueError as exc:
            return _failed(
                template,
                student,
                f"Could not resolve fields for {_student_label(student)}: {exc}",
            )

        reference = certificate_reference(number, issued_at)
        try:
            pdf_bytes = render_pdf_with_timeout(snapshot, values, timeout)
            # Never replace a file: it belongs to whoever holds this number.
            reference = store.store(pdf_bytes, reference, overwrite=False)
        except FileExistsError:
            if attempts < _NUMBER_RETRIES:
                attempts += 1
                current_app.logger.warning(
                    "[CERT-FAIL] artifact exists for number=%s; retrying", number
                )
                continue
            return _failed(template, student, f"Certificate number {number} is already taken.")
        except (CertificateRenderError, OSError, ValueError) as exc:
            return _failed(
                template,
                student,
                f"Certificate {_template_label(template)} for {_student_label(student)} "
                f"could not be generated: {exc}",
            )

        issuance = CertificateIssuance(
            certificate_id=template.id,
            student_id=student.id,
            enrollment_id=enrollment.id if enrollment is not None else None,
            enrollment_key=_enrollment_key(enrollment),
            class_id=class_id,
            certificate_number=number,
            issued_by=actor_id,
            issued_at=issued_at,
            file_path=reference,
            data_snapshot=dict(values),
            status=ISSUANCE_STATUS_ISSUED,
            notes=notes,
        )
        db.session.add(issuance)
        try:
            db.session.commit()
            break
        except IntegrityError as exc:
            db.session.rollback()
            store.delete(reference)
            if _is_number_conflict(exc) and attempts < _NUMBER_RETRIES:
                attempts += 1
                current_app.logger.warning(
                    "[CERT-FAIL] number collision number=%s; retrying", number
                )
                continue
            if _is_number_conflict(exc):
                return _failed(
                    template, student, f"Certificate number {number} is already taken."
                )
            existing = find_active_issuance(template, student, enrollment)
            return _duplicate_result(
                template,
                student,
                existing.certificate_number if existing else None,
                skip_existing,
            )

    current_app.logger.info(
        "[CERT-ISSUE] number=%s template=%s student=%s enrollment=%s path=%s",
        issuance.certificate_number,
        template.id,
        student.id,
        issuance.enrollment_id,
        issuance.file_path,
    )
    warnings = []
    warning = write_audit_entry(
        AUDIT_ISSUED,
        issuance=issuance,
        certificate_number=issuance.certificate_number,
        actor_id=actor_id,
        clock=clock,
        details=notes,
    )
    if warning:
        warnings.append(warning)
    return IssuanceResult(
        IssuanceOutcome.ISSUED,
        issuance,
        f"Certificate {issuance.certificate_number} issued to {_student_label(student)}.",
        tuple(warnings),
    )


def revoke_issuance(
    issuance: CertificateIssuance,
    reason: str,
    *,
    actor_id: int | None = None,
    clock: Clock = now_utc,
) -> tuple[str, ...]:
    """Revoke an issued certificate. Revocation is permanent; the PDF is kept.

    The status change is a guarded ``UPDATE ... WHERE status = 'issued'`` so
    two concurrent revokes cannot both succeed. Returns audit warnings, if any.
    """
    number = issuance.certificate_number
    if not issuance.is_issued():
        raise CertificateStateError(f"Certificate {number} is already revoked.")
    reason = (reason or "").strip()
    if not reason:
        raise ValueError("A revocation reason is required.")

    result = db.session.execute(
        update(CertificateIssuance)
        .where(
            CertificateIssuance.id == issuance.id,
            CertificateIssuance.status == ISSUANCE_STATUS_ISSUED,
        )
        .values(
            status=ISSUANCE_STATUS_REVOKED,
            revocation_reason=reason,
            revoked_by=actor_id,
            revoked_at=clock(),
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.session.rollback()
        raise CertificateStateError(f"Certificate {number} is already revoked.")
    db.session.commit()
    current_app.logger.info(
        "[CERT-REVOKE] number=%s actor=%s reason=%s",
        number,
        actor_id,
        reason,
    )
    warning = write_audit_entry(
        AUDIT_REVOKED,
        issuance=issuance,
        certificate_number=number,
        actor_id=actor_id,
        clock=clock,
        details=reason,
    )
    return (warning,) if warning else ()


def delete_issuance(
    issuance: CertificateIssuance,
    *,
    actor_id: int | None = None,
    store: LocalArtifactStore | None = None,
    clock: Clock = now_utc,
) -> bool:
    """Hard-delete an issuance, then its artifact; returns whether a file was removed.

    The row goes first: a failed commit leaves both row and PDF in place.
    """
    store = store or get_artifact_store()
    number = issuance.certificate_number
    reference = issuance.file_path
    db.session.query(CertificateLog).filter_by(issuance_id=issuance.id).update(
        {"issuance_id": None}
    )
    db.session.delete(issuance)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("[CERT-DELETE] number=%s actor=%s", number, actor_id)

    removed = False
    if reference:
        try:
            removed = store.delete(reference)
        except (OSError, ValueError):
            current_app.logger.exception("[CERT-DELETE] failed to remove %s", reference)
        else:
            if not removed:
                current_app.logger.info("[CERT-DELETE] artifact already missing %s", reference)
    write_audit_entry(
        AUDIT_DELETED,
        issuance=None,
        certificate_number=number,
        actor_id=actor_id,
        clock=clock,
    )
    return removed


def correct_student_name(
    issuance: CertificateIssuance,
    new_name: str,
    *,
    actor_id: int | None = None,
    store: LocalArtifactStore | None = None,
    clock: Clock = now_utc,
) -> tuple[str, ...]:
    """Fix the student's name on an issued certificate and regenerate its PDF.

    Number, issue date and the other snapshot values stay as issued. The
    new PDF gets its own file; the old one is removed only once the row
    points at the new one. Returns warnings, if any.
    """
    number = issuance.certificate_number
    name = (new_name or "").strip()
    if not name:
        raise ValueError("Student name is required.")
    if len(name) > 255:
        raise ValueError("Student name must be at most 255 characters.")
    if not issuance.is_issued():
        raise CertificateStateError(f"Certificate {number} is revoked; it cannot be corrected.")

    store = store or get_artifact_store()
    warnings = []
    values = dict(issuance.data_snapshot or {})
    values["student_name"] = name
    values["certificate_number"] = number
    values["verification_url"] = verification_url(issuance)

    old_reference = issuance.file_path
    new_reference = None
    template = issuance.certificate
    if template is None:
        warnings.append(f"Certificate {number} has no template; the PDF was not regenerated.")
    else:
        timeout = current_app.config.get("CERTIFICATE_RENDER_TIMEOUT", 30)
        try:
            background = (
                store.path_for(template.background_image) if template.background_image else None
            )
            snapshot = snapshot_template(template, background)
            pdf_bytes = render_pdf_with_timeout(snapshot, values, timeout)
            new_reference = store.store(
                pdf_bytes,
                certificate_reference(number, issuance.issued_at, secrets.token_hex(4)),
                overwrite=False,
            )
        except (CertificateRenderError, OSError, ValueError) as exc:
            current_app.logger.warning("[CERT-FAIL] correction number=%s: %s", number, exc)
            raise CertificateRenderError(
                f"Certificate {number} could not be regenerated: {exc}"
            ) from exc

    if issuance.student is not None:
        issuance.student.full_name = name
    issuance.data_snapshot = values
    if new_reference:
        issuance.file_path = new_reference
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        if new_reference:
            store.delete(new_reference)
        raise
    current_app.logger.info(
        "[CERT-CORRECT] number=%s actor=%s path=%s", number, actor_id, issuance.file_path
    )

    if new_reference and old_reference and old_reference != new_reference:
        try:
            store.delete(old_reference)
        except (OSError, ValueError):
            current_app.logger.exception("[CERT-CORRECT] failed to remove %s", old_reference)
    warning = write_audit_entry(
        AUDIT_CORRECTED,
        issuance=issuance,
        certificate_number=number,
        actor_id=actor_id,
        clock=clock,
        details=f"student_name={name}",
    )
    if warning:
        warnings.append(warning)
    return tuple(warnings)


def verification_url(issuance: CertificateIssuance) -> str:
    return build_verification_url(
        issuance.certificate_number, current_app.config.get("CERTIFICATE_VERIFY_URL")
    )


def artifact_url(
    issuance: CertificateIssuance, store: LocalArtifactStore | None = None
) -> str | None:
    store = store or get_artifact_store()
    if not issuance.file_path or not store.exists(issuance.file_path):
        return None
    return store.url_for(issuance.file_path)


def download_filename(issuance: CertificateIssuance) -> str:
    name = re.sub(r"[^a-zA-Z0-9\s]", "", issuance.student_name or "")
    name = name.strip().replace(" ", "_")
    phone = issuance.student.phone_number if issuance.student else None
    phone = re.sub(r"[^0-9]", "", phone) if phone else None
    parts = [part for part in (name, phone, issuance.certificate_number) if part]
    return "_".join(parts) + ".pdf"


def record_download(
    issuance: CertificateIssuance,
    *,
    actor_id: int | None = None,
    clock: Clock = now_utc,
) -> str | None:
    return write_audit_entry(
        AUDIT_DOWNLOADED,
        issuance=issuance,
        certificate_number=issuance.certificate_number,
        actor_id=actor_id,
        clock=clock,
    )


def class_certificate_stats(
    class_model: ClassModel, template: CertificateTemplate | None = None
) -> dict:
    total_students = (
        db.session.query(Enrollment)
        .filter(
            Enrollment.class_id == class_model.id,
            Enrollment.status.in_(ACTIVE_ENROLLMENT_STATUSES),
        )
        .count()
    )
    query = db.session.query(CertificateIssuance).filter(
        CertificateIssuance.class_id == class_model.id
    )
    if template is not None:
        query = query.filter(CertificateIssuance.certificate_id == template.id)
    issued = query.filter(CertificateIssuance.status == ISSUANCE_STATUS_ISSUED).count()
    revoked = query.filter(CertificateIssuance.status == ISSUANCE_STATUS_REVOKED).count()
    return {
        "total_students": total_students,
        "issued_count": issued,
        "revoked_count": revoked,
        "pending_count": max(0, total_students - issued),
        "completion_rate": round(issued / total_students * 100, 2) if total_students else 0,
    }
