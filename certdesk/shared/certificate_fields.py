from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Mapping

from .time import fmt_long_date

PREVIEW_NUMBER_SEQUENCE = "0000"


class FieldKey(str, enum.Enum):
    STUDENT_NAME = "student_name"
    STUDENT_ID = "student_id"
    STUDENT_EMAIL = "student_email"
    COURSE_NAME = "course_name"
    CLASS_NAME = "class_name"
    TEACHER_NAME = "teacher_name"
    CERTIFICATE_NAME = "certificate_name"
    CERTIFICATE_NUMBER = "certificate_number"
    ISSUE_DATE = "issue_date"
    COMPLETION_DATE = "completion_date"
    ENROLLMENT_DATE = "enrollment_date"
    CURRENT_YEAR = "current_year"
    CURRENT_DATE = "current_date"
    COURSE_DESCRIPTION = "course_description"
    VERIFICATION_URL = "verification_url"


FIELD_LABELS: dict[FieldKey, str] = {
    FieldKey.STUDENT_NAME: "Student Name",
    FieldKey.STUDENT_ID: "Student ID",
    FieldKey.STUDENT_EMAIL: "Student Email",
    FieldKey.COURSE_NAME: "Course Name",
    FieldKey.CLASS_NAME: "Class Name",
    FieldKey.TEACHER_NAME: "Teacher Name",
    FieldKey.CERTIFICATE_NAME: "Certificate Name",
    FieldKey.CERTIFICATE_NUMBER: "Certificate Number",
    FieldKey.ISSUE_DATE: "Issue Date",
    FieldKey.COMPLETION_DATE: "Completion Date",
    FieldKey.ENROLLMENT_DATE: "Enrollment Date",
    FieldKey.CURRENT_YEAR: "Current Year",
    FieldKey.CURRENT_DATE: "Current Date",
    FieldKey.COURSE_DESCRIPTION: "Course Description",
    FieldKey.VERIFICATION_URL: "Verification URL",
}


class FieldMode(str, enum.Enum):
    PREVIEW = "preview"
    ISSUANCE = "issuance"


class UnknownFieldKeyError(ValueError):
    """Raised when a dynamic element names a field outside :class:`FieldKey`."""


def parse_field_key(value: str) -> FieldKey:
    try:
        return FieldKey(str(value or "").strip())
    except ValueError:
        allowed = ", ".join(key.value for key in FieldKey)
        raise UnknownFieldKeyError(
            f"Unknown dynamic field {value!r}; expected one of: {allowed}"
        ) from None


@dataclass(frozen=True)
class FieldContext:
    template: object
    student: object | None
    enrollment: object | None
    class_model: object | None
    certificate_number: str
    issued_on: date
    verification_url: str = ""


def _enrollment_class(enrollment, class_model):
    if class_model is not None:
        return class_model
    return getattr(enrollment, "class_model", None) if enrollment else None


def _student_name(ctx: FieldContext) -> str:
    return (getattr(ctx.student, "full_name", None) or "").strip()


def _student_code(ctx: FieldContext) -> str:
    return getattr(ctx.student, "student_code", None) or ""


def _student_email(ctx: FieldContext) -> str:
    return getattr(ctx.student, "email", None) or ""


def _course(ctx: FieldContext):
    course = getattr(ctx.enrollment, "course", None) if ctx.enrollment else None
    if course is None and ctx.class_model is not None:
        course = getattr(ctx.class_model, "course", None)
    return course


def _course_name(ctx: FieldContext) -> str:
    return getattr(_course(ctx), "name", None) or ""


def _course_description(ctx: FieldContext) -> str:
    return getattr(_course(ctx), "description", None) or ""


def _class_name(ctx: FieldContext) -> str:
    return getattr(ctx.class_model, "title", None) or ""


def _teacher_name(ctx: FieldContext) -> str:
    return getattr(ctx.class_model, "teacher_name", None) or ""


def _certificate_name(ctx: FieldContext) -> str:
    return getattr(ctx.template, "name", None) or ""


def _certificate_number(ctx: FieldContext) -> str:
    return ctx.certificate_number


def _issue_date(ctx: FieldContext) -> str:
    return fmt_long_date(ctx.issued_on)


def _completion_date(ctx: FieldContext) -> str:
    completed = getattr(ctx.enrollment, "completion_date", None) if ctx.enrollment else None
    return fmt_long_date(completed or ctx.issued_on)


def _enrollment_date(ctx: FieldContext) -> str:
    enrolled = getattr(ctx.enrollment, "enrollment_date", None) if ctx.enrollment else None
    return fmt_long_date(enrolled)


def _current_year(ctx: FieldContext) -> str:
    return str(ctx.issued_on.year)


def _current_date(ctx: FieldContext) -> str:
    return fmt_long_date(ctx.issued_on)


def _verification_url(ctx: FieldContext) -> str:
    return ctx.verification_url


FIELD_RESOLVERS: dict[FieldKey, Callable[[FieldContext], str]] = {
    FieldKey.STUDENT_NAME: _student_name,
    FieldKey.STUDENT_ID: _student_code,
    FieldKey.STUDENT_EMAIL: _student_email,
    FieldKey.COURSE_NAME: _course_name,
    FieldKey.CLASS_NAME: _class_name,
    FieldKey.TEACHER_NAME: _teacher_name,
    FieldKey.CERTIFICATE_NAME: _certificate_name,
    FieldKey.CERTIFICATE_NUMBER: _certificate_number,
    FieldKey.ISSUE_DATE: _issue_date,
    FieldKey.COMPLETION_DATE: _completion_date,
    FieldKey.ENROLLMENT_DATE: _enrollment_date,
    FieldKey.CURRENT_YEAR: _current_year,
    FieldKey.CURRENT_DATE: _current_date,
    FieldKey.COURSE_DESCRIPTION: _course_description,
    FieldKey.VERIFICATION_URL: _verification_url,
}


def preview_certificate_number(issued_on: date, prefix: str = "CERT") -> str:
    return f"{prefix}-{issued_on.year}-{PREVIEW_NUMBER_SEQUENCE}"


def build_verification_url(certificate_number: str, url_template: str | None) -> str:
    """Public verification link; ``url_template`` holds a ``{number}`` placeholder."""
    if not url_template or not certificate_number:
        return ""
    return url_template.replace("{number}", certificate_number)


def resolve_fields(
    template,
    student,
    enrollment=None,
    *,
    mode: FieldMode = FieldMode.PREVIEW,
    certificate_number: str | None = None,
    issued_on: date | datetime | None = None,
    class_model=None,
    overrides: Mapping[str, object] | None = None,
    number_prefix: str = "CERT",
    verification_url_template: str | None = None,
) -> dict[str, str]:
    """Map every :class:`FieldKey` to its display value.

    Issuance mode consumes the real certificate number and refuses to run
    without one; preview mode fabricates a sample number. Overrides win over
    computed values for the same key.
    """
    if isinstance(issued_on, datetime):
        issued_on = issued_on.date()
    issued_on = issued_on or date.today()
    if mode is FieldMode.ISSUANCE:
        if not certificate_number:
            raise ValueError("Certificate number is required to resolve fields for issuance")
        number = certificate_number
    else:
        number = certificate_number or preview_certificate_number(issued_on, number_prefix)

    ctx = FieldContext(
        template=template,
        student=student,
        enrollment=enrollment,
        class_model=_enrollment_class(enrollment, class_model),
        certificate_number=number,
        issued_on=issued_on,
        verification_url=build_verification_url(number, verification_url_template),
    )
    values = {key.value: resolver(ctx) for key, resolver in FIELD_RESOLVERS.items()}
    for key, value in (overrides or {}).items():
        values[str(key)] = "" if value is None else str(value)
    return values


def sample_field_values(
    template,
    today: date | None = None,
    number_prefix: str = "CERT",
    verification_url_template: str | None = None,
) -> dict[str, str]:
    """Placeholder values for editor previews with no student selected."""
    today = today or date.today()
    number = preview_certificate_number(today, number_prefix)
    return {
        FieldKey.STUDENT_NAME.value: "Sample Student Name",
        FieldKey.STUDENT_ID.value: "STU-0001",
        FieldKey.STUDENT_EMAIL.value: "student@example.com",
        FieldKey.COURSE_NAME.value: "Sample Course",
        FieldKey.CLASS_NAME.value: "Sample Class",
        FieldKey.TEACHER_NAME.value: "Sample Teacher",
        FieldKey.CERTIFICATE_NAME.value: getattr(template, "name", None) or "Certificate",
        FieldKey.CERTIFICATE_NUMBER.value: number,
        FieldKey.ISSUE_DATE.value: fmt_long_date(today),
        FieldKey.COMPLETION_DATE.value: fmt_long_date(today),
        FieldKey.ENROLLMENT_DATE.value: fmt_long_date(today),
        FieldKey.CURRENT_YEAR.value: str(today.year),
        FieldKey.CURRENT_DATE.value: fmt_long_date(today),
        FieldKey.COURSE_DESCRIPTION.value: "A short description of the course.",
        FieldKey.VERIFICATION_URL.value: build_verification_url(
            number, verification_url_template
        ),
    }
