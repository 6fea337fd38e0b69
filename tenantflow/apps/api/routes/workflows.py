from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantflow.apps.api.deps import (
    Principal,
    get_current_principal,
    get_db,
    get_orchestrator,
    get_resolver,
)
from tenantflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantflow.apps.api.response import PageData, SuccessEnvelope, page_response, success_response
from tenantflow.domain.models import WorkflowStep
from tenantflow.domain.workflow import WorkflowStatus
from tenantflow.services import audit
from tenantflow.services import queries
from tenantflow.services.approver_resolver import ApproverResolver
from tenantflow.services.orchestrator import StepTransition, WorkflowOrchestrator
from tenantflow.services.queries import InstanceFilters, InstanceView, PendingApproval, TemplateSummary


router = APIRouter(prefix="/workflows", tags=["workflows"], responses=DEFAULT_ERROR_RESPONSES)

NO_TEMPLATE_MESSAGE = "No workflow template configured for this entity type"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class StartWorkflowRequest(BaseModel):
    entity_type: str = Field(min_length=1, max_length=100)
    entity_id: str = Field(min_length=1, max_length=200)

    model_config = {"extra": "forbid"}


class ResolveStepRequest(BaseModel):
    comments: str | None = Field(default=None, max_length=2000)

    model_config = {"extra": "forbid"}


class TemplateSummaryResponse(BaseModel):
    id: str
    name: str
    entity_type: str


class StepResponse(BaseModel):
    id: str
    instance_id: str
    order: int
    approver_type: str
    approver_value: str
    status: str
    resolved_by: str | None
    resolved_at: str | None
    comments: str | None


class InstanceResponse(BaseModel):
    id: str
    tenant_id: str
    template_id: str
    entity_type: str
    entity_id: str
    initiated_by: str
    status: str
    current_step_order: int | None
    created_at: str
    updated_at: str
    completed_at: str | None
    steps: list[StepResponse] = Field(default_factory=list)
    template: TemplateSummaryResponse | None = None


class StartWorkflowResponse(BaseModel):
    instance: InstanceResponse | None
    message: str | None = None


class StepTransitionResponse(BaseModel):
    step: StepResponse
    instance_id: str
    instance_status: str
    current_step_order: int | None
    next_step_id: str | None = None
    delegated_from: str | None = None


class PendingApprovalResponse(BaseModel):
    step: StepResponse
    instance_id: str
    entity_type: str
    entity_id: str
    initiated_by: str
    started_at: str
    template: TemplateSummaryResponse | None = None
    delegated_from: str | None = None


def _step_response(step: WorkflowStep) -> StepResponse:
    return StepResponse(
        id=step.id,
        instance_id=step.instance_id,
        order=step.step_order,
        approver_type=step.approver_type,
        approver_value=step.approver_value,
        status=step.status,
        resolved_by=step.resolved_by,
        resolved_at=_iso(step.resolved_at),
        comments=step.comments,
    )


def _template_response(summary: TemplateSummary | None) -> TemplateSummaryResponse | None:
    if summary is None:
        return None
    return TemplateSummaryResponse(id=summary.id, name=summary.name, entity_type=summary.entity_type)


def _view_response(view: InstanceView) -> InstanceResponse:
    instance = view.instance
    return InstanceResponse(
        id=instance.id,
        tenant_id=instance.tenant_id,
        template_id=instance.template_id,
        entity_type=instance.entity_type,
        entity_id=instance.entity_id,
        initiated_by=instance.initiated_by,
        status=instance.status,
        current_step_order=instance.current_step_order,
        created_at=instance.created_at.isoformat(),
        updated_at=instance.updated_at.isoformat(),
        completed_at=_iso(instance.completed_at),
        steps=[_step_response(step) for step in view.steps],
        template=_template_response(view.template),
    )


def _transition_response(transition: StepTransition) -> StepTransitionResponse:
    return StepTransitionResponse(
        step=_step_response(transition.step),
        instance_id=transition.instance.id,
        instance_status=transition.instance.status,
        current_step_order=transition.instance.current_step_order,
        next_step_id=transition.next_step.id if transition.next_step is not None else None,
        delegated_from=transition.delegated_from,
    )


def _pending_response(item: PendingApproval) -> PendingApprovalResponse:
    return PendingApprovalResponse(
        step=_step_response(item.step),
        instance_id=item.instance.id,
        entity_type=item.instance.entity_type,
        entity_id=item.instance.entity_id,
        initiated_by=item.instance.initiated_by,
        started_at=item.instance.created_at.isoformat(),
        template=_template_response(item.template),
        delegated_from=item.delegated_from,
    )


@router.post("/start", status_code=201, response_model=SuccessEnvelope[StartWorkflowResponse])
async def start_workflow(
    request: Request,
    response: Response,
    payload: StartWorkflowRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    view = await orchestrator.start(
        db,
        tenant_id=principal.tenant_id,
        initiator_id=principal.user_id,
        entity_type=payload.entity_type,
        entity_id=payload.entity_id,
    )
    if view is None:
        # Not an error: the entity type simply needs no approval.
        response.status_code = 200
        return success_response(
            request=request, data=StartWorkflowResponse(instance=None, message=NO_TEMPLATE_MESSAGE)
        )
    await audit.record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type=audit.START_WORKFLOW,
        resource_type="workflow_instance",
        resource_id=view.id,
        request=request,
        metadata={"entity_type": payload.entity_type, "entity_id": payload.entity_id},
    )
    return success_response(request=request, data=StartWorkflowResponse(instance=_view_response(view)))


@router.get("/instances", response_model=SuccessEnvelope[PageData[InstanceResponse]])
async def list_instances(
    request: Request,
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    status: str | None = Query(default=None, pattern="^(" + "|".join(WorkflowStatus.ALL) + ")$"),
    initiated_by: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await queries.list_instances(
        db,
        tenant_id=principal.tenant_id,
        filters=InstanceFilters(
            entity_type=entity_type,
            entity_id=entity_id,
            status=status,
            initiated_by=initiated_by,
        ),
        page=page,
        limit=limit,
    )
    return page_response(request=request, page=result.map(_view_response))


@router.get("/instances/{instance_id}", response_model=SuccessEnvelope[InstanceResponse])
async def get_instance(
    instance_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    view = await queries.get_instance(db, tenant_id=principal.tenant_id, instance_id=instance_id)
    return success_response(request=request, data=_view_response(view))


@router.post("/instances/{instance_id}/cancel", response_model=SuccessEnvelope[InstanceResponse])
async def cancel_workflow(
    instance_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    await orchestrator.cancel(db, tenant_id=principal.tenant_id, instance_id=instance_id, actor=principal.actor)
    await audit.record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type=audit.CANCEL_WORKFLOW,
        resource_type="workflow_instance",
        resource_id=instance_id,
        request=request,
    )
    view = await queries.get_instance(db, tenant_id=principal.tenant_id, instance_id=instance_id)
    return success_response(request=request, data=_view_response(view))


@router.get("/my-approvals", response_model=SuccessEnvelope[list[PendingApprovalResponse]])
async def my_approvals(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    resolver: ApproverResolver = Depends(get_resolver),
) -> dict:
    items = await queries.pending_approvals_for(
        db, tenant_id=principal.tenant_id, actor=principal.actor, resolver=resolver
    )
    return success_response(request=request, data=[_pending_response(item) for item in items])


async def _record_resolution(
    db: AsyncSession,
    request: Request,
    principal: Principal,
    event_type: str,
    transition: StepTransition,
    comments: str | None,
) -> None:
    await audit.record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type=event_type,
        resource_type="workflow_step",
        resource_id=transition.step.id,
        request=request,
        metadata={
            "instance_id": transition.instance.id,
            "instance_status": transition.instance.status,
            "comments": comments,
            "delegated_from": transition.delegated_from,
        },
    )


@router.post("/steps/{step_id}/approve", response_model=SuccessEnvelope[StepTransitionResponse])
async def approve_step(
    step_id: str,
    request: Request,
    payload: ResolveStepRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    comments = payload.comments if payload is not None else None
    transition = await orchestrator.approve_step(
        db, tenant_id=principal.tenant_id, step_id=step_id, actor=principal.actor, comments=comments
    )
    await _record_resolution(db, request, principal, audit.APPROVE_STEP, transition, comments)
    return success_response(request=request, data=_transition_response(transition))


@router.post("/steps/{step_id}/reject", response_model=SuccessEnvelope[StepTransitionResponse])
async def reject_step(
    step_id: str,
    request: Request,
    payload: ResolveStepRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    comments = payload.comments if payload is not None else None
    transition = await orchestrator.reject_step(
        db, tenant_id=principal.tenant_id, step_id=step_id, actor=principal.actor, comments=comments
    )
    await _record_resolution(db, request, principal, audit.REJECT_STEP, transition, comments)
    return success_response(request=request, data=_transition_response(transition))
