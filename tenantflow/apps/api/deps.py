from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tenantflow.core.config import get_settings
from tenantflow.domain.workflow import Actor
from tenantflow.persistence.db import get_session
from tenantflow.services.approver_resolver import ApproverResolver
from tenantflow.services.event_bus import EventBus
from tenantflow.services.orchestrator import WorkflowOrchestrator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; closing it rolls back anything left uncommitted.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity asserted by the upstream gateway; authentication happens before us.
    tenant_id: str
    user_id: str
    role: str | None = None

    @property
    def actor(self) -> Actor:
        return Actor(user_id=self.user_id, role=self.role)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def get_current_principal(request: Request) -> Principal:
    tenant_id = (request.headers.get("X-Tenant-Id") or "").strip()
    if not tenant_id:
        raise _auth_error("X-Tenant-Id header is required")
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise _auth_error("X-User-Id header is required")
    role = (request.headers.get("X-Role") or "").strip().upper() or None
    return Principal(tenant_id=tenant_id, user_id=user_id, role=role)


async def require_template_admin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    if principal.role not in get_settings().template_admin_roles:
        raise _forbidden_error("Insufficient role to manage workflow templates")
    return principal


def get_orchestrator(request: Request) -> WorkflowOrchestrator:
    return request.app.state.orchestrator


def get_resolver(request: Request) -> ApproverResolver:
    return request.app.state.orchestrator.resolver


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.orchestrator.event_bus
