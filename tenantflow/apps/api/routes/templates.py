from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantflow.apps.api.deps import Principal, get_current_principal, get_db, require_template_admin
from tenantflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantflow.apps.api.response import PageData, SuccessEnvelope, page_response, success_response
from tenantflow.services import audit
from tenantflow.services import templates as template_service
from tenantflow.services.templates import TemplatePatch, TemplateWithSteps


router = APIRouter(prefix="/workflows/templates", tags=["workflow-templates"], responses=DEFAULT_ERROR_RESPONSES)


class StepSpecModel(BaseModel):
    # Shape checks only; ordering and approver rules are enforced by the template store.
    order: int
    approver_type: str
    approver_value: str


class TemplateCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    entity_type: str = Field(min_length=1, max_length=100)
    steps: list[StepSpecModel]

    model_config = {"extra": "forbid"}


class TemplatePatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    entity_type: str | None = Field(default=None, min_length=1, max_length=100)
    steps: list[StepSpecModel] | None = None

    model_config = {"extra": "forbid"}


class TemplateResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: str | None
    entity_type: str
    is_active: bool
    steps: list[StepSpecModel]
    created_by: str | None
    created_at: str
    updated_at: str


def _to_response(item: TemplateWithSteps) -> TemplateResponse:
    template = item.template
    return TemplateResponse(
        id=template.id,
        tenant_id=template.tenant_id,
        name=template.name,
        description=template.description,
        entity_type=template.entity_type,
        is_active=template.is_active,
        steps=[
            StepSpecModel(
                order=spec.order,
                approver_type=spec.approver.approver_type,
                approver_value=spec.approver.approver_value,
            )
            for spec in item.steps
        ],
        created_by=template.created_by,
        created_at=template.created_at.isoformat(),
        updated_at=template.updated_at.isoformat(),
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[TemplateResponse])
async def create_template(
    request: Request,
    payload: TemplateCreateRequest,
    principal: Principal = Depends(require_template_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    created = await template_service.create_template(
        db,
        tenant_id=principal.tenant_id,
        name=payload.name,
        description=payload.description,
        entity_type=payload.entity_type,
        steps=[step.model_dump() for step in payload.steps],
        created_by=principal.user_id,
    )
    await audit.record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type=audit.CREATE_TEMPLATE,
        resource_type="workflow_template",
        resource_id=created.id,
        request=request,
        metadata={"name": payload.name, "entity_type": payload.entity_type, "steps": len(payload.steps)},
    )
    return success_response(request=request, data=_to_response(created))


@router.get("", response_model=SuccessEnvelope[PageData[TemplateResponse]])
async def list_templates(
    request: Request,
    entity_type: str | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await template_service.list_templates(
        db,
        tenant_id=principal.tenant_id,
        entity_type=entity_type,
        is_active=is_active,
        page=page,
        limit=limit,
    )
    return page_response(request=request, page=result.map(_to_response))


@router.get("/{template_id}", response_model=SuccessEnvelope[TemplateResponse])
async def get_template(
    template_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    item = await template_service.get_template(db, tenant_id=principal.tenant_id, template_id=template_id)
    return success_response(request=request, data=_to_response(item))


@router.patch("/{template_id}", response_model=SuccessEnvelope[TemplateResponse])
async def update_template(
    template_id: str,
    request: Request,
    payload: TemplatePatchRequest,
    principal: Principal = Depends(require_template_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    patch = TemplatePatch(
        name=payload.name,
        description=payload.description,
        entity_type=payload.entity_type,
        steps=[step.model_dump() for step in payload.steps] if payload.steps is not None else None,
    )
    updated = await template_service.update_template(
        db, tenant_id=principal.tenant_id, template_id=template_id, patch=patch
    )
    await audit.record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type=audit.UPDATE_TEMPLATE,
        resource_type="workflow_template",
        resource_id=template_id,
        request=request,
        metadata={"updated_fields": sorted(payload.model_dump(exclude_unset=True))},
    )
    return success_response(request=request, data=_to_response(updated))


@router.delete("/{template_id}", status_code=204, response_class=Response)
async def delete_template(
    template_id: str,
    request: Request,
    principal: Principal = Depends(require_template_admin),
    db: AsyncSession = Depends(get_db),
) -> Response:
    # Deactivation only; running instances keep their snapshotted steps.
    await template_service.deactivate_template(db, tenant_id=principal.tenant_id, template_id=template_id)
    await audit.record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type=audit.DELETE_TEMPLATE,
        resource_type="workflow_template",
        resource_id=template_id,
        request=request,
    )
    return Response(status_code=204)
