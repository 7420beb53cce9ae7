from __future__ import annotations

import uuid
from typing import Protocol

from opentelemetry import trace

from dealdesk.collaborators.storage import BlobStorage


tracer = trace.get_tracer("dealdesk.collaborators.archive")


class DocumentArchive(Protocol):
    def archive(self, deal_id: uuid.UUID, file_name: str, content: bytes) -> str: ...


class BlobDocumentArchive:
    """Copies document content under ``archive/<deal_id>/`` of a blob store."""

    def __init__(self, storage: BlobStorage) -> None:
        self.storage = storage

    def archive(self, deal_id: uuid.UUID, file_name: str, content: bytes) -> str:
        with tracer.start_as_current_span("document_archive.archive") as span:
            span.set_attribute("deal_id", str(deal_id))
            key = self.storage.store(content, f"archive/{deal_id}/{file_name}")
            return f"archive://{key}"

