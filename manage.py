import os

import click
from flask import current_app
from flask.cli import FlaskGroup

from certdesk.app import create_app, db
from certdesk.models import (
    CertificateIssuance,
    CertificateTemplate,
    ClassModel,
    Enrollment,
    Student,
)
from certdesk.services.certificate_bulk_actions import (
    NoArtifactsError,
    bulk_download_zip,
    bulk_revoke,
    zip_download_name,
)
from certdesk.services.certificate_bulk_issue import (
    auto_issue_on_completion,
    bulk_issue_certificates,
    eligible_student_ids,
)
from certdesk.services.certificate_issuance import (
    CertificateStateError,
    IssuanceOutcome,
    correct_student_name,
    issue_certificate,
    revoke_issuance,
)
from certdesk.services.certificates_preview import (
    build_preview_tree,
    generate_preview,
    preview_template_html,
)
from certdesk.shared.certificates_pdf import CertificateRenderError, render_tree_pdf
from certdesk.shared.storage import GENERATED_DIR, get_artifact_store


cli = FlaskGroup(create_app=create_app)


def _load_template(template_id: int) -> CertificateTemplate:
    template = db.session.get(CertificateTemplate, template_id)
    if template is None:
        raise click.ClickException(f"Template {template_id} not found")
    return template


def _load_issuance(number: str) -> CertificateIssuance:
    issuance = (
        db.session.query(CertificateIssuance)
        .filter_by(certificate_number=number)
        .one_or_none()
    )
    if issuance is None:
        raise click.ClickException(f"Certificate {number} not found")
    return issuance


@cli.command("init_db")
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("Database initialised")


@cli.command("issue_cert")
@click.option("--template", "template_id", required=True, type=int)
@click.option("--student", "student_id", required=True, type=int)
@click.option("--enrollment", "enrollment_id", type=int)
@click.option("--actor", "actor_id", type=int)
@click.option("--notes")
@click.option("--skip-existing", is_flag=True, help="Report duplicates as skipped")
def issue_cert(template_id, student_id, enrollment_id, actor_id, notes, skip_existing):
    """Issue a certificate to one student."""
    template = _load_template(template_id)
    student = db.session.get(Student, student_id)
    enrollment = db.session.get(Enrollment, enrollment_id) if enrollment_id else None
    result = issue_certificate(
        template,
        student,
        enrollment,
        actor_id=actor_id,
        notes=notes,
        skip_existing=skip_existing,
    )
    for warning in result.warnings:
        click.echo(f"warning: {warning}", err=True)
    if result.success:
        click.echo(f"{result.issuance.certificate_number} {result.issuance.file_path}")
        return
    if result.outcome is IssuanceOutcome.SKIPPED:
        click.echo(result.message)
        return
    raise click.ClickException(f"{result.outcome.value}: {result.message}")


@cli.command("bulk_issue")
@click.option("--template", "template_id", required=True, type=int)
@click.option("--class", "class_id", type=int)
@click.option("--course", "course_id", type=int)
@click.option("--student", "student_ids", type=int, multiple=True)
@click.option("--actor", "actor_id", type=int)
@click.option("--no-skip", is_flag=True, help="Treat existing certificates as errors")
def bulk_issue(template_id, class_id, course_id, student_ids, actor_id, no_skip):
    """Issue a certificate to many students; explicit ids or everyone enrolled."""
    template = _load_template(template_id)
    if not student_ids:
        if class_id is None and course_id is None:
            raise click.UsageError("Pass --student ids or a --class/--course scope")
        student_ids = eligible_student_ids(class_id=class_id, course_id=course_id)
    result = bulk_issue_certificates(
        template,
        list(student_ids),
        skip_existing=not no_skip,
        class_id=class_id,
        course_id=course_id,
        actor_id=actor_id,
    )
    for error in result.errors:
        click.echo(f"student={error.student_id} {error.message}", err=True)
    click.echo(result.message)


@cli.command("auto_issue_class")
@click.option("--class", "class_id", required=True, type=int)
@click.option("--actor", "actor_id", type=int)
def auto_issue_class(class_id, actor_id):
    """Issue the default certificate for a completed class."""
    class_model = db.session.get(ClassModel, class_id)
    if class_model is None:
        raise click.ClickException(f"Class {class_id} not found")
    result = auto_issue_on_completion(class_model, actor_id=actor_id)
    if result is None:
        click.echo("Nothing to issue: class not completed or no default certificate")
        return
    click.echo(result.message)


@cli.command("revoke_cert")
@click.option("--number", required=True)
@click.option("--reason", required=True)
@click.option("--actor", "actor_id", type=int)
def revoke_cert(number, reason, actor_id):
    """Revoke an issued certificate by number."""
    issuance = _load_issuance(number)
    try:
        warnings = revoke_issuance(issuance, reason, actor_id=actor_id)
    except (CertificateStateError, ValueError) as exc:
        raise click.ClickException(str(exc))
    for warning in warnings:
        click.echo(f"warning: {warning}", err=True)
    click.echo(f"Revoked {number}")


@cli.command("bulk_revoke")
@click.option("--id", "issuance_ids", type=int, multiple=True, required=True)
@click.option("--class", "class_id", type=int, help="Ignore ids outside this class")
@click.option("--reason", default="Bulk revoked by admin")
@click.option("--actor", "actor_id", type=int)
def bulk_revoke_cmd(issuance_ids, class_id, reason, actor_id):
    """Revoke many issuances; already revoked ones are skipped."""
    result = bulk_revoke(issuance_ids, reason, actor_id=actor_id, class_id=class_id)
    for warning in result.warnings:
        click.echo(f"warning: {warning}", err=True)
    click.echo(result.message)


@cli.command("download_zip")
@click.option("--id", "issuance_ids", type=int, multiple=True, required=True)
@click.option("--class", "class_id", type=int)
@click.option("--out-dir", default=".", type=click.Path(file_okay=False))
def download_zip(issuance_ids, class_id, out_dir):
    """Write the selected certificate PDFs into one zip archive."""
    try:
        data, count = bulk_download_zip(issuance_ids, class_id=class_id)
    except NoArtifactsError as exc:
        raise click.ClickException(str(exc))
    out_path = os.path.join(out_dir, zip_download_name(class_id))
    with open(out_path, "wb") as fh:
        fh.write(data)
    click.echo(f"{out_path} ({count} files)")


@cli.command("correct_name")
@click.option("--number", required=True)
@click.option("--name", "new_name", required=True)
@click.option("--actor", "actor_id", type=int)
def correct_name(number, new_name, actor_id):
    """Fix the student name on an issued certificate and regenerate its PDF."""
    issuance = _load_issuance(number)
    try:
        warnings = correct_student_name(issuance, new_name, actor_id=actor_id)
    except (CertificateStateError, CertificateRenderError, ValueError) as exc:
        raise click.ClickException(str(exc))
    for warning in warnings:
        click.echo(f"warning: {warning}", err=True)
    click.echo(f"Corrected {number}")


@cli.command("preview_cert")
@click.option("--template", "template_id", required=True, type=int)
@click.option("--out", "out_path", required=True, type=click.Path(dir_okay=False))
@click.option("--format", "fmt", type=click.Choice(["png", "html", "pdf"]), default="png")
@click.option("--zoom", type=float, default=1.0)
@click.option("--student", "student_id", type=int)
def preview_cert(template_id, out_path, fmt, zoom, student_id):
    """Render a template with sample (or a student's) values."""
    template = _load_template(template_id)
    student = db.session.get(Student, student_id) if student_id else None
    if fmt == "pdf":
        warnings_list: list[str] = []
        tree = build_preview_tree(template, student=student, warnings=warnings_list)
        data, warnings = render_tree_pdf(tree), tuple(warnings_list)
    elif fmt == "html":
        markup, warnings = preview_template_html(template, zoom=zoom, student=student)
        data = str(markup).encode("utf-8")
    else:
        result = generate_preview(template, zoom=zoom, student=student)
        data, warnings = result.png_bytes(), result.warnings
    with open(out_path, "wb") as fh:
        fh.write(data)
    for warning in warnings:
        click.echo(f"warning: {warning}", err=True)
    click.echo(out_path)


@cli.command("purge_orphan_certs")
@click.option(
    "--dry-run", is_flag=True, help="List orphaned certificate PDFs without deleting"
)
def purge_orphan_certs(dry_run: bool):
    """Delete stored certificate PDFs that no issuance references."""
    store = get_artifact_store()
    if not os.path.isdir(os.path.join(store.root, GENERATED_DIR)):
        click.echo("Certificate directory missing", err=True)
        return
    if (
        not dry_run
        and current_app.config.get("ENV") == "production"
        and os.getenv("ALLOW_CERT_PURGE") != "1"
    ):
        click.echo(
            "Refusing to delete in production without ALLOW_CERT_PURGE=1", err=True
        )
        return

    total = deleted = kept = errors = 0
    samples: list[str] = []
    for reference in store.iter_references(GENERATED_DIR):
        if not reference.lower().endswith(".pdf"):
            continue
        total += 1
        exists = (
            db.session.query(CertificateIssuance.id)
            .filter_by(file_path=reference)
            .first()
        )
        if exists:
            kept += 1
            continue
        if len(samples) < 5:
            samples.append(store.path_for(reference))
        if dry_run:
            continue
        try:
            store.delete(reference)
            deleted += 1
        except OSError:
            errors += 1
            current_app.logger.exception("[CERT-PURGE] failed to remove %s", reference)
    summary = f"scanned={total} deleted={deleted} kept={kept} errors={errors}"
    for path in samples:
        click.echo(path)
    click.echo(summary)
    current_app.logger.info("[CERT-PURGE] %s", summary)


if __name__ == "__main__":
    cli()
