from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from dealdesk.context import get_correlation_id
from dealdesk.core.actor import ActorUser
from dealdesk.core.auth import AuthUser, get_current_user as get_auth_user
from dealdesk.errors import DealDeskError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def domain_error_response(request: Request, exc: DealDeskError, code: str) -> JSONResponse:
    """Envelope for a workflow error; ``details.error`` carries the error's own code."""
    details: dict[str, Any] = {"error": exc.code}
    if isinstance(exc.details, dict):
        details.update(exc.details)
    elif exc.details is not None:
        details["info"] = exc.details
    collaborator = getattr(exc, "collaborator", None)
    if collaborator:
        details["collaborator"] = collaborator
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=exc.message,
        details=details,
    )


def http_error_response(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    return ActorUser(
        user_id=auth_user.sub,
        permissions={str(role) for role in auth_user.roles},
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")
