from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any
import uuid

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from dealdesk.api.routes import router as api_router
from dealdesk.context import enter_event_handler, exit_event_handler, get_event_depth
from dealdesk.core.actor import system_actor
from dealdesk.core.config import get_settings
from dealdesk.core.database import SessionLocal, get_db
from dealdesk.core.events import InternalEvent, event_bus
from dealdesk.deals.service import deal_service
from dealdesk.logging import configure_logging
from dealdesk.middleware.correlation_id import CorrelationIdMiddleware
from dealdesk.middleware.rate_limit import MutationRateLimitMiddleware
from dealdesk.middleware.request_logging import RequestLoggingMiddleware
from dealdesk.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("dealdesk.lifecycle")
_subscriptions_registered = False

# Domain events after which a deal may satisfy its next stage guard.
_auto_progress_event_types = [
    "document.uploaded",
    "document.signed",
    "task.completed",
    "deal.kyc_status_changed",
]

# Handlers publish events themselves; deeper chains are dropped.
MAX_EVENT_DEPTH = 3


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _event_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_deal_domain_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    if not get_settings().auto_progress_on_events:
        return
    envelope: dict[str, Any] = event.payload

    deal_id_raw = envelope.get("deal_id")
    if not isinstance(deal_id_raw, str):
        return
    try:
        deal_id = uuid.UUID(deal_id_raw)
    except ValueError:
        return

    if get_event_depth() >= MAX_EVENT_DEPTH:
        logger.warning("auto_progress_depth_exceeded", extra={"event_name": event.name, "deal_id": deal_id_raw})
        return

    correlation_id = envelope.get("correlation_id") if isinstance(envelope.get("correlation_id"), str) else None
    token = enter_event_handler()
    try:
        with _event_session_scope() as session:
            deal_service.evaluate_auto_progress(session, system_actor(correlation_id), deal_id, trigger=event.name)
    except Exception as exc:
        logger.exception(
            "auto_progress_on_event_failed",
            extra={"event_name": event.name, "deal_id": deal_id_raw, "error": str(exc)[:500]},
        )
    finally:
        exit_event_handler(token)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe_many(_auto_progress_event_types, _on_deal_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield
    # Service-level callers outside the app must not trigger request-bound handlers.
    event_bus.unsubscribe("system.started", _on_system_started)
    event_bus.unsubscribe_many(_auto_progress_event_types, _on_deal_domain_event)
    _subscriptions_registered = False


app = FastAPI(title="DealDesk API", version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("dealdesk-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
