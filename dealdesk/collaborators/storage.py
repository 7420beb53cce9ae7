from __future__ import annotations

import logging
import uuid
from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Protocol

from opentelemetry import trace

from dealdesk.context import get_correlation_id
from dealdesk.core.config import get_settings
from dealdesk.errors import CollaboratorFailure, NotFoundError
from dealdesk.metrics import observe_collaborator_failure


logger = logging.getLogger("dealdesk.collaborators.storage")
tracer = trace.get_tracer("dealdesk.collaborators.storage")


class BlobStorage(Protocol):
    def store(self, content: bytes, name: str) -> str: ...

    def read(self, path: str) -> bytes: ...

    def delete(self, path: str) -> None: ...


class LocalBlobStorage:
    """Filesystem blob store.

    ``name`` may carry a directory prefix (``documents/passport.pdf``); the
    prefix is kept and the file itself is stored under a random UUID with the
    original suffix, so two uploads with the same name never collide. Returned
    paths are relative to ``base_path``.
    """

    def __init__(self, base_path: str | Path, *, create_dirs: bool = True) -> None:
        self._base_path = Path(base_path).resolve()
        if create_dirs:
            self._base_path.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base_path

    def _resolve(self, path: str) -> Path:
        resolved = (self._base_path / path).resolve()
        if resolved != self._base_path and self._base_path not in resolved.parents:
            raise NotFoundError(f"blob not found: {path}")
        return resolved

    def store(self, content: bytes, name: str) -> str:
        with tracer.start_as_current_span("blob_storage.store") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            requested = PurePosixPath(name or "file.bin")
            prefix = requested.parent if str(requested.parent) not in {"", "."} else PurePosixPath()
            key = str(prefix / f"{uuid.uuid4()}{requested.suffix or '.bin'}")
            target = self._resolve(key)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
            except OSError as exc:
                observe_collaborator_failure("blob_storage")
                raise CollaboratorFailure("blob_storage", "Failed to store document content", str(exc)) from exc
            span.set_attribute("blob.key", key)
            span.set_attribute("blob.size", len(content))
            return key

    def read(self, path: str) -> bytes:
        with tracer.start_as_current_span("blob_storage.read") as span:
            span.set_attribute("blob.key", path)
            target = self._resolve(path)
            if not target.exists():
                raise NotFoundError(f"blob not found: {path}")
            try:
                return target.read_bytes()
            except OSError as exc:
                observe_collaborator_failure("blob_storage")
                raise CollaboratorFailure("blob_storage", "Failed to read document content", str(exc)) from exc

    def delete(self, path: str) -> None:
        with tracer.start_as_current_span("blob_storage.delete") as span:
            span.set_attribute("blob.key", path)
            target = self._resolve(path)
            try:
                target.unlink(missing_ok=True)
            except OSError as exc:
                observe_collaborator_failure("blob_storage")
                raise CollaboratorFailure("blob_storage", "Failed to delete document content", str(exc)) from exc


@lru_cache
def get_blob_storage() -> BlobStorage:
    settings = get_settings()
    logger.info("blob_storage.configured", extra={"path": settings.document_storage_path})
    return LocalBlobStorage(settings.document_storage_path)
