from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantflow.domain.models import WorkflowInstance, WorkflowStep
from tenantflow.domain.workflow import WorkflowStatus
from tenantflow.persistence.guards import tenant_predicate


def active_key_for(entity_type: str, entity_id: str) -> str:
    return f"{entity_type}:{entity_id}"


async def get_instance(
    session: AsyncSession,
    tenant_id: str,
    instance_id: str,
    *,
    for_update: bool = False,
) -> WorkflowInstance | None:
    stmt = select(WorkflowInstance).where(
        WorkflowInstance.id == instance_id,
        tenant_predicate(WorkflowInstance, tenant_id),
    )
    if for_update:
        # Row lock on PostgreSQL; SQLite ignores it and relies on the version check.
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_step(session: AsyncSession, tenant_id: str, step_id: str) -> WorkflowStep | None:
    stmt = select(WorkflowStep).where(
        WorkflowStep.id == step_id,
        tenant_predicate(WorkflowStep, tenant_id),
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_steps(session: AsyncSession, instance_id: str) -> list[WorkflowStep]:
    stmt = (
        select(WorkflowStep)
        .where(WorkflowStep.instance_id == instance_id)
        .order_by(WorkflowStep.step_order)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_steps_for_instances(
    session: AsyncSession, instance_ids: list[str]
) -> dict[str, list[WorkflowStep]]:
    # Batch step loading so list views avoid one query per instance.
    grouped: dict[str, list[WorkflowStep]] = {instance_id: [] for instance_id in instance_ids}
    if not instance_ids:
        return grouped
    stmt = (
        select(WorkflowStep)
        .where(WorkflowStep.instance_id.in_(instance_ids))
        .order_by(WorkflowStep.instance_id, WorkflowStep.step_order)
    )
    result = await session.execute(stmt)
    for step in result.scalars().all():
        grouped[step.instance_id].append(step)
    return grouped


async def find_open_instance_for_entity(
    session: AsyncSession, tenant_id: str, entity_type: str, entity_id: str
) -> WorkflowInstance | None:
    stmt = (
        select(WorkflowInstance)
        .where(
            tenant_predicate(WorkflowInstance, tenant_id),
            WorkflowInstance.entity_type == entity_type,
            WorkflowInstance.entity_id == entity_id,
            WorkflowInstance.status.in_(WorkflowStatus.OPEN),
        )
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def count_open_instances_for_template(
    session: AsyncSession, tenant_id: str, template_id: str
) -> int:
    stmt = (
        select(func.count())
        .select_from(WorkflowInstance)
        .where(
            tenant_predicate(WorkflowInstance, tenant_id),
            WorkflowInstance.template_id == template_id,
            WorkflowInstance.status.in_(WorkflowStatus.OPEN),
        )
    )
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def list_instances(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    status: str | None = None,
    initiated_by: str | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[WorkflowInstance], int]:
    stmt = select(WorkflowInstance).where(tenant_predicate(WorkflowInstance, tenant_id))
    if entity_type:
        stmt = stmt.where(WorkflowInstance.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(WorkflowInstance.entity_id == entity_id)
    if status:
        stmt = stmt.where(WorkflowInstance.status == status)
    if initiated_by:
        stmt = stmt.where(WorkflowInstance.initiated_by == initiated_by)
    total = (
        await session.execute(select(func.count()).select_from(stmt.subquery()))
    ).scalar_one()
    result = await session.execute(
        stmt.order_by(WorkflowInstance.created_at.desc(), WorkflowInstance.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), int(total)


async def list_in_progress_instances(session: AsyncSession, tenant_id: str) -> list[WorkflowInstance]:
    # Oldest first so approvers see the longest-waiting items at the top.
    stmt = (
        select(WorkflowInstance)
        .where(
            tenant_predicate(WorkflowInstance, tenant_id),
            WorkflowInstance.status == WorkflowStatus.IN_PROGRESS,
        )
        .order_by(WorkflowInstance.created_at, WorkflowInstance.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_current_steps(
    session: AsyncSession, instances: list[WorkflowInstance]
) -> dict[str, WorkflowStep]:
    # Match each instance's current step by exact order value, never by position.
    if not instances:
        return {}
    wanted = {instance.id: instance.current_step_order for instance in instances}
    stmt = select(WorkflowStep).where(WorkflowStep.instance_id.in_(list(wanted)))
    result = await session.execute(stmt)
    current: dict[str, WorkflowStep] = {}
    for step in result.scalars().all():
        if wanted.get(step.instance_id) == step.step_order:
            current[step.instance_id] = step
    return current
