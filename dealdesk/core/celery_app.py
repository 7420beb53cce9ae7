from celery import Celery

from dealdesk.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "dealdesk_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["dealdesk.documents.jobs"],
)

EXTRACT_DOCUMENT_TASK = "dealdesk.documents.extract"
