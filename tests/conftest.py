import os
import pathlib
import sys
from datetime import date, datetime, timezone

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from certdesk.app import create_app, db
from certdesk.models import ClassModel, Course, Enrollment, Student
from certdesk.services.certificate_templates import (
    add_dynamic_element,
    add_shape_element,
    add_text_element,
    create_template,
    set_template_status,
)
from certdesk.services.certificates_preview import clear_preview_cache
from certdesk.shared.storage import LocalArtifactStore

FIXED_NOW = datetime(2025, 3, 3, 9, 30, tzinfo=timezone.utc)


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "slow" in item.keywords or "quarantine" in item.keywords:
            continue
        item.add_marker("full")
        if "no_smoke" in item.keywords:
            continue
        item.add_marker("smoke")


@pytest.fixture
def app(tmp_path):
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    os.environ["SITE_ROOT"] = str(tmp_path)
    application = create_app()
    clear_preview_cache()
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()


@pytest.fixture
def store(app):
    return LocalArtifactStore(app.config["SITE_ROOT"], app.config["CERTIFICATE_BASE_URL"])


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def make_student(app):
    def _make(name="Aisyah Rahman", email=None, code=None, phone=None):
        student = Student(
            full_name=name,
            email=email or f"{name.split()[0].lower()}@example.com",
            student_code=code,
            phone_number=phone,
        )
        db.session.add(student)
        db.session.commit()
        return student

    return _make


@pytest.fixture
def course_class(app):
    course = Course(name="Data Analysis Basics")
    db.session.add(course)
    db.session.flush()
    class_model = ClassModel(
        course_id=course.id, title="Evening Cohort", teacher_name="Mr. Tan"
    )
    db.session.add(class_model)
    db.session.commit()
    return course, class_model


@pytest.fixture
def enroll(app):
    def _enroll(student, course, class_model=None, status="enrolled"):
        enrollment = Enrollment(
            student_id=student.id,
            course_id=course.id,
            class_id=class_model.id if class_model else None,
            enrollment_date=date(2025, 1, 6),
            status=status,
        )
        db.session.add(enrollment)
        db.session.commit()
        return enrollment

    return _enroll


@pytest.fixture
def active_template(app):
    template = create_template("Completion Certificate", size="a4", orientation="landscape")
    add_text_element(template, "Certificate of Completion", y=80, font_size=36)
    add_dynamic_element(template, "student_name", y=250, font_size=32)
    add_dynamic_element(template, "course_name", y=330, prefix="for ")
    add_dynamic_element(template, "certificate_number", y=700, font_size=12)
    add_shape_element(template, "rectangle", x=20, y=20, width=1082, height=753)
    set_template_status(template, "active")
    return template
