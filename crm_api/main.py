from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from crm_api.api.routes import router as api_router
from crm_api.core.config import get_settings
from crm_api.core.context import RequestContextMiddleware
from crm_api.core.events import InternalEvent, event_bus
from crm_api.logging import configure_logging
from crm_api.metrics import observe_deal_stage_transition, observe_lead_conversion, observe_lead_status_change
from crm_api.middleware.correlation_id import CorrelationIdMiddleware
from crm_api.middleware.rate_limit import CrmMutationRateLimitMiddleware
from crm_api.middleware.request_logging import RequestLoggingMiddleware
from crm_api.otel import instrument_app, setup_otel


settings = get_settings()
configure_logging(service=settings.app_name)
logger = logging.getLogger("crm_api.lifecycle")


def _on_lead_status_changed(event: InternalEvent) -> None:
    payload = event.payload.get("payload", {})
    observe_lead_status_change(payload.get("old_status"), str(payload.get("new_status")))


def _on_lead_created(event: InternalEvent) -> None:
    observe_lead_status_change(None, str(event.payload.get("payload", {}).get("status")))


def _on_lead_converted(event: InternalEvent) -> None:
    payload = event.payload.get("payload", {})
    observe_lead_conversion()
    observe_lead_status_change(payload.get("old_status"), "converted")


def _on_deal_created(event: InternalEvent) -> None:
    observe_deal_stage_transition(None, str(event.payload.get("payload", {}).get("stage")))


def _on_deal_stage_changed(event: InternalEvent) -> None:
    payload = event.payload.get("payload", {})
    observe_deal_stage_transition(payload.get("old_stage"), str(payload.get("new_stage")))


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


_metric_observers = {
    "crm.lead.created": _on_lead_created,
    "crm.lead.status_changed": _on_lead_status_changed,
    "crm.lead.converted": _on_lead_converted,
    "crm.deal.created": _on_deal_created,
    "crm.deal.stage_changed": _on_deal_stage_changed,
}


def register_event_subscriptions() -> None:
    event_bus.subscribe("system.started", _on_system_started)
    for event_name, handler in _metric_observers.items():
        event_bus.subscribe(event_name, handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    register_event_subscriptions()
    event_bus.publish("system.started", {"service": settings.app_name})
    yield


app = FastAPI(title=settings.app_name, version="0.1.0", debug=settings.app_debug, lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("crm-api", True)
    instrument_app(app)
