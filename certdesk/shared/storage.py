import os
import tempfile
from datetime import datetime
from typing import Iterator

from flask import current_app

CERTIFICATE_DIR = "certificates"
GENERATED_DIR = f"{CERTIFICATE_DIR}/generated"


def ensure_dir(path: str) -> None:
    """Create directory if missing (mkdir -p equivalent)."""
    os.makedirs(path, exist_ok=True)


def write_atomic(path: str, data, mode: str = "wb") -> None:
    """Write data to a temporary file then atomically rename to target path."""
    dir_path = os.path.dirname(path)
    ensure_dir(dir_path)
    fd, tmp_path = tempfile.mkstemp(dir=dir_path)
    try:
        with os.fdopen(fd, mode) as f:
            f.write(data)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def write_exclusive(path: str, data, mode: str = "wb") -> None:
    """Like :func:`write_atomic` but raises FileExistsError instead of replacing."""
    dir_path = os.path.dirname(path)
    ensure_dir(dir_path)
    fd, tmp_path = tempfile.mkstemp(dir=dir_path)
    try:
        with os.fdopen(fd, mode) as f:
            f.write(data)
        os.link(tmp_path, path)
    finally:
        os.remove(tmp_path)


def certificate_reference(
    certificate_number: str, issued_at: datetime, revision: str | None = None
) -> str:
    """Relative path of an issued certificate inside the artifact store."""
    stem = f"{certificate_number}-{revision}" if revision else certificate_number
    return f"{GENERATED_DIR}/{issued_at.year}/{issued_at.month:02d}/{stem}.pdf"


class LocalArtifactStore:
    """Durable artifacts on local disk under ``root``, served from ``base_url``."""

    def __init__(self, root: str, base_url: str = "/files"):
        self.root = os.path.abspath(root)
        self.base_url = base_url.rstrip("/")

    def path_for(self, reference: str) -> str:
        if not reference:
            raise ValueError("Empty artifact reference")
        if os.path.isabs(reference):
            full_path = os.path.normpath(reference)
        else:
            full_path = os.path.normpath(os.path.join(self.root, reference))
        if os.path.commonpath([self.root, full_path]) != self.root:
            raise ValueError(f"Artifact reference {reference!r} escapes the store root")
        return full_path

    def store(self, data: bytes, reference: str, overwrite: bool = True) -> str:
        """Persist ``data``; with ``overwrite=False`` an existing file raises FileExistsError."""
        full_path = self.path_for(reference)
        if overwrite:
            write_atomic(full_path, data)
        else:
            write_exclusive(full_path, data)
        os.chmod(full_path, 0o644)  # world-readable for the file server
        return os.path.relpath(full_path, self.root).replace(os.sep, "/")

    def url_for(self, reference: str) -> str:
        return f"{self.base_url}/{reference.lstrip('/')}"

    def exists(self, reference: str) -> bool:
        return os.path.isfile(self.path_for(reference))

    def delete(self, reference: str) -> bool:
        """Remove an artifact; returns False when it was already gone."""
        try:
            os.remove(self.path_for(reference))
        except FileNotFoundError:
            return False
        return True

    def iter_references(self, prefix: str = CERTIFICATE_DIR) -> Iterator[str]:
        base = self.path_for(prefix)
        if not os.path.isdir(base):
            return
        for root, dirs, files in os.walk(base):
            dirs[:] = sorted(d for d in dirs if not d.startswith("_"))
            for name in sorted(files):
                full_path = os.path.join(root, name)
                yield os.path.relpath(full_path, self.root).replace(os.sep, "/")


def get_artifact_store() -> LocalArtifactStore:
    return LocalArtifactStore(
        current_app.config.get("SITE_ROOT", "/srv"),
        current_app.config.get("CERTIFICATE_BASE_URL", "/files"),
    )
