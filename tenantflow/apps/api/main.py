from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantflow.apps.api.errors import (
    database_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    tenantflow_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantflow.apps.api.response import API_VERSION
from tenantflow.apps.api.routes.delegations import router as delegations_router
from tenantflow.apps.api.routes.health import router as health_router
from tenantflow.apps.api.routes.templates import router as templates_router
from tenantflow.apps.api.routes.workflows import router as workflows_router
from tenantflow.core.config import get_settings
from tenantflow.core.errors import TenantFlowError
from tenantflow.core.logging import configure_logging
from tenantflow.persistence.guards import TenantPredicateError
from tenantflow.services.approver_resolver import ApproverResolver
from tenantflow.services.directory import OrgDirectory
from tenantflow.services.event_bus import EventBus
from tenantflow.services.orchestrator import WorkflowOrchestrator


logger = logging.getLogger(__name__)


def create_app(
    *,
    orchestrator: WorkflowOrchestrator | None = None,
    directory: OrgDirectory | None = None,
    event_bus: EventBus | None = None,
) -> FastAPI:
    """Build the API application.

    Pass ``orchestrator`` to supply a fully configured engine, or ``directory`` and
    ``event_bus`` to swap the collaborators of the default one.
    """
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="TenantFlow API", version=API_VERSION)
    app.state.orchestrator = orchestrator or WorkflowOrchestrator(
        event_bus=event_bus,
        resolver=ApproverResolver(directory),
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%d latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(TenantFlowError, tenantflow_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(templates_router, prefix=f"/{API_VERSION}")
    app.include_router(workflows_router, prefix=f"/{API_VERSION}")
    app.include_router(delegations_router, prefix=f"/{API_VERSION}")

    logger.info("api_configured app_name=%s event_bus=%s", settings.app_name, settings.event_bus_backend)
    return app


app = create_app()
