from __future__ import annotations

import zipfile
from dataclasses import dataclass, field
from datetime import date
from io import BytesIO
from typing import Iterable

from flask import current_app

from ..app import db
from ..models import CertificateIssuance
from ..shared.storage import LocalArtifactStore, get_artifact_store
from ..shared.time import Clock, now_utc
from .certificate_issuance import CertificateStateError, download_filename, revoke_issuance

BULK_REVOKE_REASON = "Bulk revoked by admin"


class NoArtifactsError(LookupError):
    """None of the selected issuances has a stored PDF."""


@dataclass
class BulkRevokeResult:
    revoked_count: int = 0
    skipped_count: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        noun = "certificate" if self.revoked_count == 1 else "certificates"
        return f"Revoked {self.revoked_count} {noun}."


def _selected_issuances(
    issuance_ids: Iterable[int], class_id: int | None
) -> list[CertificateIssuance]:
    ids = list(dict.fromkeys(int(value) for value in issuance_ids))
    if not ids:
        return []
    query = db.session.query(CertificateIssuance).filter(CertificateIssuance.id.in_(ids))
    # Ids outside the class are ignored, never acted on.
    if class_id is not None:
        query = query.filter(CertificateIssuance.class_id == class_id)
    return query.order_by(CertificateIssuance.id).all()


def bulk_revoke(
    issuance_ids: Iterable[int],
    reason: str = BULK_REVOKE_REASON,
    *,
    actor_id: int | None = None,
    class_id: int | None = None,
    clock: Clock = now_utc,
) -> BulkRevokeResult:
    """Revoke every selected issuance that is still issued; revoked ones are skipped."""
    result = BulkRevokeResult()
    for issuance in _selected_issuances(issuance_ids, class_id):
        if not issuance.is_issued():
            result.skipped_count += 1
            continue
        try:
            result.warnings.extend(
                revoke_issuance(issuance, reason, actor_id=actor_id, clock=clock)
            )
        except CertificateStateError:
            result.skipped_count += 1
            continue
        result.revoked_count += 1
    current_app.logger.info(
        "[CERT-REVOKE] bulk class=%s revoked=%s skipped=%s",
        class_id,
        result.revoked_count,
        result.skipped_count,
    )
    return result


def zip_download_name(class_id: int | None = None, today: date | None = None) -> str:
    today = today or date.today()
    if class_id is not None:
        return f"certificates-{class_id}-{today.isoformat()}.zip"
    return f"certificates-issued-{today.isoformat()}.zip"


def bulk_download_zip(
    issuance_ids: Iterable[int],
    *,
    class_id: int | None = None,
    store: LocalArtifactStore | None = None,
) -> tuple[bytes, int]:
    """Zip the stored PDFs of the selected issuances.

    Returns the archive bytes and the number of files in it. Selections with
    no stored PDF raise :class:`NoArtifactsError`.
    """
    store = store or get_artifact_store()
    with_files = [
        issuance
        for issuance in _selected_issuances(issuance_ids, class_id)
        if issuance.file_path and store.exists(issuance.file_path)
    ]
    if not with_files:
        raise NoArtifactsError("None of the selected certificates have generated PDF files.")

    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for issuance in with_files:
            archive.write(
                store.path_for(issuance.file_path),
                arcname=download_filename(issuance),
            )
    current_app.logger.info("[CERT-ZIP] class=%s files=%s", class_id, len(with_files))
    return buffer.getvalue(), len(with_files)
