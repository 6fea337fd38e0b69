from __future__ import annotations

from typing import Any, Literal, TypedDict


WORKFLOW_STARTED = "workflow.started"
WORKFLOW_STEP_APPROVED = "workflow.step.approved"
WORKFLOW_APPROVED = "workflow.approved"
WORKFLOW_REJECTED = "workflow.rejected"
WORKFLOW_CANCELLED = "workflow.cancelled"
DELEGATION_CREATED = "delegation.created"

EventName = Literal[
    "workflow.started",
    "workflow.step.approved",
    "workflow.approved",
    "workflow.rejected",
    "workflow.cancelled",
    "delegation.created",
]


class WorkflowEventData(TypedDict, total=False):
    tenant_id: str
    instance_id: str
    template_id: str
    entity_type: str
    entity_id: str
    initiated_by: str
    step_id: str
    next_step_id: str
    next_step_order: int
    approved_by: str
    rejected_by: str
    cancelled_by: str
    delegated_from: str
    comments: str | None


class DelegationEventData(TypedDict):
    tenant_id: str
    delegation_id: str
    delegator_id: str
    delegate_id: str


class DomainEvent(TypedDict):
    name: EventName
    data: dict[str, Any]
