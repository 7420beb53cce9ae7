from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from dealdesk.core.auth import AuthUser, get_current_user
from dealdesk.core.config import get_settings
from dealdesk.deals.api import contacts_router, onboarding_router, router as deals_router
from dealdesk.documents.api import router as documents_router
from dealdesk.metrics import generate_metrics_payload, metrics_content_type
from dealdesk.tasks.api import router as tasks_router

router = APIRouter()
router.include_router(deals_router)
router.include_router(contacts_router)
router.include_router(onboarding_router)
router.include_router(documents_router)
router.include_router(tasks_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
