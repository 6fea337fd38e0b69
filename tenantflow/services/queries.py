from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tenantflow.core.errors import InstanceNotFoundError
from tenantflow.domain.models import WorkflowInstance, WorkflowStep, WorkflowTemplate
from tenantflow.domain.workflow import Actor, StepStatus
from tenantflow.persistence.repos import instances as instances_repo
from tenantflow.persistence.repos import templates as templates_repo
from tenantflow.services.approver_resolver import ApproverResolver
from tenantflow.services.pagination import Page, resolve_page


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateSummary:
    id: str
    name: str
    entity_type: str

    @classmethod
    def from_row(cls, template: WorkflowTemplate) -> "TemplateSummary":
        return cls(id=template.id, name=template.name, entity_type=template.entity_type)


@dataclass(frozen=True)
class InstanceView:
    instance: WorkflowInstance
    steps: tuple[WorkflowStep, ...]
    template: TemplateSummary | None = None

    @property
    def id(self) -> str:
        return self.instance.id

    @property
    def current_step(self) -> WorkflowStep | None:
        for step in self.steps:
            if step.step_order == self.instance.current_step_order:
                return step
        return None


@dataclass(frozen=True)
class InstanceFilters:
    entity_type: str | None = None
    entity_id: str | None = None
    status: str | None = None
    initiated_by: str | None = None


@dataclass(frozen=True)
class PendingApproval:
    step: WorkflowStep
    instance: WorkflowInstance
    template: TemplateSummary | None = None
    # Set when the actor holds this approval only through a delegation.
    delegated_from: str | None = None


async def _summaries(
    session: AsyncSession, tenant_id: str, instances: list[WorkflowInstance]
) -> dict[str, TemplateSummary]:
    rows = await templates_repo.get_templates_by_ids(
        session, tenant_id, [instance.template_id for instance in instances]
    )
    return {template_id: TemplateSummary.from_row(row) for template_id, row in rows.items()}


async def list_instances(
    session: AsyncSession,
    *,
    tenant_id: str,
    filters: InstanceFilters | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> Page[InstanceView]:
    filters = filters or InstanceFilters()
    resolved_page, resolved_limit, offset = resolve_page(page, limit)
    rows, total = await instances_repo.list_instances(
        session,
        tenant_id=tenant_id,
        entity_type=filters.entity_type,
        entity_id=filters.entity_id,
        status=filters.status,
        initiated_by=filters.initiated_by,
        offset=offset,
        limit=resolved_limit,
    )
    steps = await instances_repo.list_steps_for_instances(session, [row.id for row in rows])
    summaries = await _summaries(session, tenant_id, rows)
    items = [
        InstanceView(
            instance=row,
            steps=tuple(steps.get(row.id, [])),
            template=summaries.get(row.template_id),
        )
        for row in rows
    ]
    return Page(items=items, total=total, page=resolved_page, limit=resolved_limit)


async def get_instance(session: AsyncSession, *, tenant_id: str, instance_id: str) -> InstanceView:
    instance = await instances_repo.get_instance(session, tenant_id, instance_id)
    if instance is None:
        raise InstanceNotFoundError("Workflow instance not found", instance_id=instance_id)
    steps = await instances_repo.list_steps(session, instance.id)
    template = await templates_repo.get_template(session, tenant_id, instance.template_id)
    return InstanceView(
        instance=instance,
        steps=tuple(steps),
        template=TemplateSummary.from_row(template) if template is not None else None,
    )


async def pending_approvals_for(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor: Actor,
    resolver: ApproverResolver,
    as_of: datetime | None = None,
) -> list[PendingApproval]:
    """List the current steps ``actor`` may resolve right now, oldest instance first.

    Scans every IN_PROGRESS instance in the tenant, so cost grows with the number of open
    workflows. Delegations held by the actor are loaded once per call and each match
    reports the delegator it came through.
    """
    instances = await instances_repo.list_in_progress_instances(session, tenant_id)
    if not instances:
        return []
    current = await instances_repo.get_current_steps(session, instances)
    authorities = await resolver.load_delegated_authority(
        session, tenant_id=tenant_id, actor=actor, as_of=as_of
    )
    summaries = await _summaries(session, tenant_id, instances)

    pending: list[PendingApproval] = []
    for instance in instances:
        step = current.get(instance.id)
        if step is None:
            # Inconsistent instance; surface it to operators without failing the listing.
            logger.warning(
                "workflow_current_step_missing tenant_id=%s instance_id=%s current_step_order=%s",
                tenant_id,
                instance.id,
                instance.current_step_order,
            )
            continue
        if step.status != StepStatus.PENDING:
            continue
        match = await resolver.match(step.approver, actor, instance, authorities)
        if match is None:
            continue
        pending.append(
            PendingApproval(
                step=step,
                instance=instance,
                template=summaries.get(instance.template_id),
                delegated_from=match.delegated_from,
            )
        )
    return pending
