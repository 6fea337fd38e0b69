from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantflow.apps.api.deps import Principal, get_current_principal, get_db, get_event_bus
from tenantflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantflow.apps.api.response import SuccessEnvelope, success_response
from tenantflow.domain.models import ApprovalDelegation
from tenantflow.services import audit
from tenantflow.services import delegations as delegation_service
from tenantflow.services.event_bus import EventBus


router = APIRouter(prefix="/workflows/delegations", tags=["delegations"], responses=DEFAULT_ERROR_RESPONSES)


class DelegationCreateRequest(BaseModel):
    delegate_id: str = Field(min_length=1)
    start_date: datetime
    end_date: datetime
    reason: str | None = Field(default=None, max_length=2000)
    # Entity types covered; omit or send [] to cover every type.
    scope: list[str] | None = None

    model_config = {"extra": "forbid"}


class DelegationResponse(BaseModel):
    id: str
    tenant_id: str
    delegator_id: str
    delegator_role: str | None
    delegate_id: str
    start_date: str
    end_date: str
    reason: str | None
    scope: list[str]
    created_at: str


class RevokeResponse(BaseModel):
    id: str
    message: str


def _to_response(delegation: ApprovalDelegation) -> DelegationResponse:
    return DelegationResponse(
        id=delegation.id,
        tenant_id=delegation.tenant_id,
        delegator_id=delegation.delegator_id,
        delegator_role=delegation.delegator_role,
        delegate_id=delegation.delegate_id,
        start_date=delegation_service.as_utc(delegation.start_date).isoformat(),
        end_date=delegation_service.as_utc(delegation.end_date).isoformat(),
        reason=delegation.reason,
        scope=delegation.scope,
        created_at=delegation.created_at.isoformat(),
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[DelegationResponse])
async def create_delegation(
    request: Request,
    payload: DelegationCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    event_bus: EventBus = Depends(get_event_bus),
) -> dict:
    # The caller always delegates their own authority.
    delegation = await delegation_service.create_delegation(
        db,
        tenant_id=principal.tenant_id,
        delegator_id=principal.user_id,
        delegator_role=principal.role,
        delegate_id=payload.delegate_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reason=payload.reason,
        scope=payload.scope,
        event_bus=event_bus,
    )
    await audit.record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type=audit.CREATE_DELEGATION,
        resource_type="approval_delegation",
        resource_id=delegation.id,
        request=request,
        metadata={"delegate_id": payload.delegate_id, "scope": delegation.scope},
    )
    return success_response(request=request, data=_to_response(delegation))


@router.get("", response_model=SuccessEnvelope[list[DelegationResponse]])
async def list_delegations(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await delegation_service.list_for_user(db, tenant_id=principal.tenant_id, user_id=principal.user_id)
    return success_response(request=request, data=[_to_response(row) for row in rows])


@router.delete("/{delegation_id}", response_model=SuccessEnvelope[RevokeResponse])
async def revoke_delegation(
    delegation_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await delegation_service.revoke_delegation(db, tenant_id=principal.tenant_id, delegation_id=delegation_id)
    await audit.record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type=audit.REVOKE_DELEGATION,
        resource_type="approval_delegation",
        resource_id=delegation_id,
        request=request,
    )
    return success_response(request=request, data=RevokeResponse(id=delegation_id, message="Delegation revoked"))
