from __future__ import annotations

from sqlalchemy.orm import validates

from .app import db
from .constants import (
    CANVAS_DIMENSIONS,
    DEFAULT_BACKGROUND_COLOR,
    ISSUANCE_STATUS_ISSUED,
    ISSUANCE_STATUS_REVOKED,
    TEMPLATE_ORIENTATIONS,
    TEMPLATE_SIZES,
    TEMPLATE_STATUS_ACTIVE,
    TEMPLATE_STATUS_DRAFT,
    TEMPLATE_STATUSES,
)


class Student(db.Model):
    __tablename__ = "students"

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255))
    student_code = db.Column(db.String(64))
    phone_number = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    @validates("email")
    def lower_email(self, key, value):  # pragma: no cover - simple normalizer
        return value.lower() if value else value


class Course(db.Model):
    __tablename__ = "courses"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, server_default=db.func.now())


class ClassModel(db.Model):
    __tablename__ = "classes"

    id = db.Column(db.Integer, primary_key=True)
    course_id = db.Column(
        db.Integer, db.ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    course = db.relationship("Course", backref="classes")
    title = db.Column(db.String(255), nullable=False)
    teacher_name = db.Column(db.String(255))
    status = db.Column(
        db.String(16), nullable=False, default="scheduled", server_default="scheduled"
    )
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    def is_completed(self) -> bool:
        return self.status == "completed"


class Enrollment(db.Model):
    __tablename__ = "enrollments"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.Integer, db.ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    student = db.relationship("Student", backref="enrollments")
    course_id = db.Column(
        db.Integer, db.ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    course = db.relationship("Course")
    class_id = db.Column(
        db.Integer, db.ForeignKey("classes.id", ondelete="SET NULL"), nullable=True
    )
    class_model = db.relationship("ClassModel", backref="enrollments")
    enrollment_date = db.Column(db.Date)
    completion_date = db.Column(db.Date)
    status = db.Column(
        db.String(16), nullable=False, default="enrolled", server_default="enrolled"
    )


class CertificateTemplate(db.Model):
    __tablename__ = "certificate_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    size = db.Column(db.String(16), nullable=False, default="a4", server_default="a4")
    orientation = db.Column(
        db.String(16), nullable=False, default="landscape", server_default="landscape"
    )
    background_color = db.Column(
        db.String(32), nullable=False, default=DEFAULT_BACKGROUND_COLOR
    )
    background_image = db.Column(db.String(512))
    elements = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(
        db.String(16),
        nullable=False,
        default=TEMPLATE_STATUS_DRAFT,
        server_default=TEMPLATE_STATUS_DRAFT,
    )
    created_by = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime, server_default=db.func.now(), onupdate=db.func.now()
    )

    @validates("size")
    def _check_size(self, key, value):
        value = (value or "").strip().lower()
        if value not in TEMPLATE_SIZES:
            raise ValueError(f"Unsupported certificate size: {value!r}")
        return value

    @validates("orientation")
    def _check_orientation(self, key, value):
        value = (value or "").strip().lower()
        if value not in TEMPLATE_ORIENTATIONS:
            raise ValueError(f"Unsupported certificate orientation: {value!r}")
        return value

    @validates("status")
    def _check_status(self, key, value):
        if value not in TEMPLATE_STATUSES:
            raise ValueError(f"Unsupported certificate status: {value!r}")
        return value

    @property
    def width(self) -> int:
        return CANVAS_DIMENSIONS[(self.size or "a4", self.orientation or "landscape")][0]

    @property
    def height(self) -> int:
        return CANVAS_DIMENSIONS[(self.size or "a4", self.orientation or "landscape")][1]

    def is_active(self) -> bool:
        return self.status == TEMPLATE_STATUS_ACTIVE


class CertificateNumberSequence(db.Model):
    __tablename__ = "certificate_number_sequences"

    year = db.Column(db.Integer, primary_key=True, autoincrement=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)


class CertificateIssuance(db.Model):
    __tablename__ = "certificate_issuances"

    id = db.Column(db.Integer, primary_key=True)
    certificate_id = db.Column(
        db.Integer,
        db.ForeignKey("certificate_templates.id", ondelete="RESTRICT"),
        nullable=False,
    )
    certificate = db.relationship("CertificateTemplate", backref="issuances")
    student_id = db.Column(
        db.Integer, db.ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    student = db.relationship("Student")
    enrollment_id = db.Column(
        db.Integer, db.ForeignKey("enrollments.id", ondelete="SET NULL"), nullable=True
    )
    enrollment = db.relationship("Enrollment")
    # coalesce(enrollment_id, 0): NULLs never collide in a unique index
    enrollment_key = db.Column(db.Integer, nullable=False, default=0)
    class_id = db.Column(
        db.Integer, db.ForeignKey("classes.id", ondelete="SET NULL"), nullable=True
    )
    certificate_number = db.Column(db.String(64), nullable=False, unique=True)
    issued_by = db.Column(db.Integer)
    issued_at = db.Column(db.DateTime(timezone=True), nullable=False)
    file_path = db.Column(db.String(512))
    data_snapshot = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(
        db.String(16),
        nullable=False,
        default=ISSUANCE_STATUS_ISSUED,
        server_default=ISSUANCE_STATUS_ISSUED,
    )
    revoked_at = db.Column(db.DateTime(timezone=True))
    revoked_by = db.Column(db.Integer)
    revocation_reason = db.Column(db.Text)
    notes = db.Column(db.Text)

    __table_args__ = (
        db.Index(
            "uix_certificate_issuances_active_triple",
            "certificate_id",
            "student_id",
            "enrollment_key",
            unique=True,
            sqlite_where=db.text("status = 'issued'"),
            postgresql_where=db.text("status = 'issued'"),
        ),
        db.Index("ix_certificate_issuances_student", "student_id"),
    )

    def is_issued(self) -> bool:
        return self.status == ISSUANCE_STATUS_ISSUED

    def is_revoked(self) -> bool:
        return self.status == ISSUANCE_STATUS_REVOKED

    @property
    def student_name(self) -> str:
        snapshot = self.data_snapshot or {}
        return snapshot.get("student_name") or (
            self.student.full_name if self.student else "Unknown"
        )


class CertificateLog(db.Model):
    __tablename__ = "certificate_logs"

    id = db.Column(db.Integer, primary_key=True)
    issuance_id = db.Column(
        db.Integer,
        db.ForeignKey("certificate_issuances.id", ondelete="SET NULL"),
        nullable=True,
    )
    certificate_number = db.Column(db.String(64))
    action = db.Column(db.String(32), nullable=False)
    actor_id = db.Column(db.Integer)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)


class CourseCertificate(db.Model):
    __tablename__ = "course_certificates"

    id = db.Column(db.Integer, primary_key=True)
    certificate_id = db.Column(
        db.Integer,
        db.ForeignKey("certificate_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    certificate = db.relationship("CertificateTemplate", backref="course_assignments")
    course_id = db.Column(
        db.Integer, db.ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    course = db.relationship("Course", backref="certificate_assignments")
    is_default = db.Column(
        db.Boolean, nullable=False, default=False, server_default=db.text("false")
    )
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    __table_args__ = (
        db.UniqueConstraint(
            "certificate_id", "course_id", name="uix_course_certificate"
        ),
        db.Index(
            "uix_course_certificates_default",
            "course_id",
            unique=True,
            sqlite_where=db.text("is_default"),
            postgresql_where=db.text("is_default"),
        ),
    )


class ClassCertificate(db.Model):
    __tablename__ = "class_certificates"

    id = db.Column(db.Integer, primary_key=True)
    certificate_id = db.Column(
        db.Integer,
        db.ForeignKey("certificate_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    certificate = db.relationship("CertificateTemplate", backref="class_assignments")
    class_id = db.Column(
        db.Integer, db.ForeignKey("classes.id", ondelete="CASCADE"), nullable=False
    )
    class_model = db.relationship("ClassModel", backref="certificate_assignments")
    is_default = db.Column(
        db.Boolean, nullable=False, default=False, server_default=db.text("false")
    )
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    __table_args__ = (
        db.UniqueConstraint("certificate_id", "class_id", name="uix_class_certificate"),
        db.Index(
            "uix_class_certificates_default",
            "class_id",
            unique=True,
            sqlite_where=db.text("is_default"),
            postgresql_where=db.text("is_default"),
        ),
    )
