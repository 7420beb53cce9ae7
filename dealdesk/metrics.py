from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

deal_stage_transitions_total = Counter(
    "deal_stage_transitions_total",
    "Deal stage transitions by edge and trigger",
    ["from_stage", "to_stage", "trigger"],
)

deal_auto_progress_noop_total = Counter(
    "deal_auto_progress_noop_total",
    "Auto-progress evaluations that did not advance the deal",
    ["stage"],
)

document_workflow_steps_total = Counter(
    "document_workflow_steps_total",
    "Document workflow step status changes",
    ["step_type", "status"],
)

collaborator_failures_total = Counter(
    "collaborator_failures_total",
    "Failures of external collaborators and fire-and-forget sinks",
    ["collaborator"],
)

collaborator_call_duration_seconds = Histogram(
    "collaborator_call_duration_seconds",
    "External collaborator call duration in seconds",
    ["collaborator"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        for attribute in ("path_format", "path"):
            value = getattr(route, attribute, None)
            if isinstance(value, str) and value:
                return _PATH_PARAM_RE.sub("{id}", value)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stage_transition(from_stage: str, to_stage: str, trigger: str) -> None:
    deal_stage_transitions_total.labels(from_stage=from_stage, to_stage=to_stage, trigger=trigger).inc()


def observe_auto_progress_noop(stage: str) -> None:
    deal_auto_progress_noop_total.labels(stage=stage).inc()


def observe_workflow_step(step_type: str, status: str) -> None:
    document_workflow_steps_total.labels(step_type=step_type, status=status).inc()


def observe_collaborator_failure(collaborator: str) -> None:
    collaborator_failures_total.labels(collaborator=collaborator).inc()


def observe_collaborator_call(collaborator: str, duration: float) -> None:
    collaborator_call_duration_seconds.labels(collaborator=collaborator).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
