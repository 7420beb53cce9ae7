from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealdesk.api.common import domain_error_response, get_current_user, http_error_response, require_permission
from dealdesk.core.actor import ActorUser
from dealdesk.core.database import get_db
from dealdesk.errors import DealDeskError
from dealdesk.tasks.schemas import TaskCreate, TaskRead, TaskStatusUpdate
from dealdesk.tasks.service import task_service

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.get("", response_model=list[TaskRead])
def list_tasks(
    request: Request,
    deal_id: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "tasks.read")
        return task_service.list_tasks(db, user, deal_id=deal_id, status=status_filter)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "task_list_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "task_list_failed")


@router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "tasks.write")
        return task_service.create_task(db, user, dto)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "task_create_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "task_create_failed")


@router.patch("/{task_id}/status", response_model=TaskRead)
def update_task_status(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskStatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "tasks.write")
        return task_service.update_status(db, user, task_id, dto.status)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "task_status_update_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "task_status_update_failed")
