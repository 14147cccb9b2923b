from __future__ import annotations

import re
from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..app import db
from ..models import CertificateNumberSequence

_NUMBER_RE = re.compile(r"^(?P<prefix>.+)-(?P<year>\d{4})-(?P<seq>\d{4,})$")


def format_certificate_number(prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}-{year}-{sequence:04d}"


def parse_certificate_number(value: str | None) -> tuple[str, int, int] | None:
    match = _NUMBER_RE.match(value or "")
    if not match:
        return None
    return match.group("prefix"), int(match.group("year")), int(match.group("seq"))


def _bump(year: int) -> int | None:
    result = db.session.execute(
        update(CertificateNumberSequence)
        .where(CertificateNumberSequence.year == year)
        .values(last_value=CertificateNumberSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        return None
    # The UPDATE holds the row lock until commit, so this read is ours.
    return db.session.execute(
        db.select(CertificateNumberSequence.last_value).where(
            CertificateNumberSequence.year == year
        )
    ).scalar_one()


def next_sequence_value(year: int) -> int:
    """Atomically reserve the next sequence value for ``year`` and commit it.

    Reservations are never handed back: a value consumed by a failed issuance
    leaves a gap rather than being reused.
    """
    try:
        value = _bump(year)
        if value is None:
            try:
                with db.session.begin_nested():
                    db.session.add(CertificateNumberSequence(year=year, last_value=1))
                value = 1
            except IntegrityError:
                # Another worker created the year row first.
                value = _bump(year)
                if value is None:
                    raise RuntimeError(f"Certificate number sequence for {year} vanished")
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return value


def reserve_certificate_number(issued_at: datetime, prefix: str | None = None) -> str:
    prefix = prefix or current_app.config.get("CERTIFICATE_NUMBER_PREFIX", "CERT")
    sequence = next_sequence_value(issued_at.year)
    return format_certificate_number(prefix, issued_at.year, sequence)
