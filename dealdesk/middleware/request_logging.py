from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from dealdesk.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("dealdesk.request")

# Path parameters copied onto request log lines.
_ENTITY_PARAMS = ("deal_id", "document_id", "step_id", "task_id", "contact_id")


def _entity_fields(request: Request) -> dict[str, Any]:
    params = request.scope.get("path_params") or {}
    return {name: str(params[name]) for name in _ENTITY_PARAMS if name in params}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": duration_ms,
                    **_entity_fields(request),
                },
            )
            raise

        # Route and path parameters are only resolved once the router has run.
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        logger.info(
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                **_entity_fields(request),
            },
        )
        return response
