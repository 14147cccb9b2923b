from io import BytesIO

from PIL import Image

from certdesk.app import db
from certdesk.models import CertificateIssuance
from manage import (
    bulk_issue,
    bulk_revoke_cmd,
    correct_name,
    download_zip,
    init_db,
    issue_cert,
    preview_cert,
    revoke_cert,
)


def _runner(app):
    for command in (
        init_db,
        issue_cert,
        bulk_issue,
        revoke_cert,
        bulk_revoke_cmd,
        download_zip,
        correct_name,
        preview_cert,
    ):
        app.cli.add_command(command)
    return app.test_cli_runner()


def test_init_db(app):
    result = _runner(app).invoke(args=["init_db"])
    assert result.exit_code == 0
    assert "Database initialised" in result.output


def test_issue_and_revoke_via_cli(app, active_template, make_student):
    runner = _runner(app)
    student = make_student()
    args = ["issue_cert", "--template", str(active_template.id), "--student", str(student.id)]

    result = runner.invoke(args=args + ["--actor", "4"])
    assert result.exit_code == 0, result.output
    number = result.output.split()[0]
    assert number.startswith("CERT-")

    duplicate = runner.invoke(args=args)
    assert duplicate.exit_code != 0
    assert "already issued" in duplicate.output
    skipped = runner.invoke(args=args + ["--skip-existing"])
    assert skipped.exit_code == 0
    assert "Skipped" in skipped.output

    revoked = runner.invoke(args=["revoke_cert", "--number", number, "--reason", "Wrong name"])
    assert revoked.exit_code == 0
    again = runner.invoke(args=["revoke_cert", "--number", number, "--reason", "Wrong name"])
    assert again.exit_code != 0
    assert "already revoked" in again.output
    assert db.session.query(CertificateIssuance).one().status == "revoked"


def test_bulk_issue_cli_by_class(app, active_template, make_student, course_class, enroll):
    course, class_model = course_class
    for name in ("One Student", "Two Student"):
        enroll(make_student(name), course, class_model)
    runner = _runner(app)
    result = runner.invoke(
        args=["bulk_issue", "--template", str(active_template.id), "--class", str(class_model.id)]
    )
    assert result.exit_code == 0, result.output
    assert "Issued: 2, Skipped: 0, Failed: 0" in result.output


def test_preview_cli_writes_png(app, active_template, tmp_path):
    out = tmp_path / "preview.png"
    result = _runner(app).invoke(
        args=[
            "preview_cert",
            "--template",
            str(active_template.id),
            "--out",
            str(out),
            "--zoom",
            "0.5",
        ]
    )
    assert result.exit_code == 0, result.output
    assert Image.open(BytesIO(out.read_bytes())).size == (561, 396)


def test_preview_cli_writes_pdf(app, active_template, tmp_path):
    out = tmp_path / "preview.pdf"
    result = _runner(app).invoke(
        args=["preview_cert", "--template", str(active_template.id), "--out", str(out), "--format", "pdf"]
    )
    assert result.exit_code == 0, result.output
    assert out.read_bytes().startswith(b"%PDF")


def test_bulk_revoke_and_zip_via_cli(app, active_template, make_student, tmp_path):
    runner = _runner(app)
    ids = []
    for name in ("One Student", "Two Student"):
        student = make_student(name)
        result = runner.invoke(
            args=["issue_cert", "--template", str(active_template.id), "--student", str(student.id)]
        )
        assert result.exit_code == 0, result.output
        issuance = db.session.query(CertificateIssuance).filter_by(student_id=student.id).one()
        ids.append(str(issuance.id))

    zipped = runner.invoke(
        args=["download_zip", "--id", ids[0], "--id", ids[1], "--out-dir", str(tmp_path)]
    )
    assert zipped.exit_code == 0, zipped.output
    assert "(2 files)" in zipped.output
    assert list(tmp_path.glob("certificates-issued-*.zip"))

    revoked = runner.invoke(args=["bulk_revoke", "--id", ids[0], "--id", ids[1]])
    assert revoked.exit_code == 0, revoked.output
    assert "Revoked 2 certificates." in revoked.output
    again = runner.invoke(args=["bulk_revoke", "--id", ids[0]])
    assert "Revoked 0 certificates." in again.output


def test_download_zip_without_files_fails(app, tmp_path):
    result = _runner(app).invoke(args=["download_zip", "--id", "999", "--out-dir", str(tmp_path)])
    assert result.exit_code != 0
    assert "None of the selected certificates" in result.output


def test_correct_name_via_cli(app, active_template, make_student):
    runner = _runner(app)
    student = make_student("Nur Aina")
    issued = runner.invoke(
        args=["issue_cert", "--template", str(active_template.id), "--student", str(student.id)]
    )
    number = issued.output.split()[0]

    result = runner.invoke(args=["correct_name", "--number", number, "--name", "Nur Aina Ahmad"])
    assert result.exit_code == 0, result.output
    assert f"Corrected {number}" in result.output
    issuance = db.session.query(CertificateIssuance).one()
    assert issuance.data_snapshot["student_name"] == "Nur Aina Ahmad"

    blank = runner.invoke(args=["correct_name", "--number", number, "--name", " "])
    assert blank.exit_code != 0
    assert "Student name is required" in blank.output
