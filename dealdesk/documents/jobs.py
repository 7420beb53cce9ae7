from __future__ import annotations

import logging
import uuid

from dealdesk.core.actor import system_actor
from dealdesk.core.celery_app import EXTRACT_DOCUMENT_TASK, celery_app
from dealdesk.core.database import SessionLocal
from dealdesk.documents.service import document_service


logger = logging.getLogger("dealdesk.documents")


@celery_app.task(name=EXTRACT_DOCUMENT_TASK)
def extract_document_task(document_id: str, requested_by: str | None = None) -> dict:
    session = SessionLocal()
    try:
        result = document_service.extract(session, system_actor(user_id=requested_by), uuid.UUID(document_id))
    finally:
        session.close()
    logger.info(
        "document.extraction_job_finished",
        extra={"document_id": document_id, "status": "succeeded" if result.success else "failed"},
    )
    return result.model_dump(mode="json")
