from __future__ import annotations

from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantflow.domain.models import WorkflowTemplate, WorkflowTemplateStep
from tenantflow.domain.workflow import StepSpec
from tenantflow.persistence.guards import tenant_predicate


def _step_rows(template_id: str, steps: list[StepSpec]) -> list[WorkflowTemplateStep]:
    return [
        WorkflowTemplateStep(
            id=uuid4().hex,
            template_id=template_id,
            step_order=step.order,
            approver_type=step.approver.approver_type,
            approver_value=step.approver.approver_value,
        )
        for step in steps
    ]


async def create_template(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    description: str | None,
    entity_type: str,
    steps: list[StepSpec],
    created_by: str | None,
) -> WorkflowTemplate:
    template = WorkflowTemplate(
        id=uuid4().hex,
        tenant_id=tenant_id,
        name=name,
        description=description,
        entity_type=entity_type,
        is_active=True,
        created_by=created_by,
    )
    session.add(template)
    # Flush the parent first so step rows satisfy the FK regardless of flush ordering.
    await session.flush()
    session.add_all(_step_rows(template.id, steps))
    await session.flush()
    return template


async def get_template(
    session: AsyncSession, tenant_id: str, template_id: str
) -> WorkflowTemplate | None:
    # Return None for tenant mismatch to keep 404 semantics.
    stmt = select(WorkflowTemplate).where(
        WorkflowTemplate.id == template_id,
        tenant_predicate(WorkflowTemplate, tenant_id),
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_template_steps(session: AsyncSession, template_id: str) -> list[WorkflowTemplateStep]:
    stmt = (
        select(WorkflowTemplateStep)
        .where(WorkflowTemplateStep.template_id == template_id)
        .order_by(WorkflowTemplateStep.step_order)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_steps_for_templates(
    session: AsyncSession, template_ids: list[str]
) -> dict[str, list[WorkflowTemplateStep]]:
    grouped: dict[str, list[WorkflowTemplateStep]] = {template_id: [] for template_id in template_ids}
    if not template_ids:
        return grouped
    stmt = (
        select(WorkflowTemplateStep)
        .where(WorkflowTemplateStep.template_id.in_(template_ids))
        .order_by(WorkflowTemplateStep.template_id, WorkflowTemplateStep.step_order)
    )
    result = await session.execute(stmt)
    for row in result.scalars().all():
        grouped[row.template_id].append(row)
    return grouped


async def replace_template_steps(
    session: AsyncSession, template_id: str, steps: list[StepSpec]
) -> None:
    stmt = delete(WorkflowTemplateStep).where(WorkflowTemplateStep.template_id == template_id)
    await session.execute(stmt)
    session.add_all(_step_rows(template_id, steps))
    await session.flush()


async def list_templates(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: str | None = None,
    is_active: bool | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[WorkflowTemplate], int]:
    stmt = select(WorkflowTemplate).where(tenant_predicate(WorkflowTemplate, tenant_id))
    if entity_type:
        stmt = stmt.where(WorkflowTemplate.entity_type == entity_type)
    if is_active is not None:
        stmt = stmt.where(WorkflowTemplate.is_active == is_active)
    total = (
        await session.execute(select(func.count()).select_from(stmt.subquery()))
    ).scalar_one()
    result = await session.execute(
        stmt.order_by(WorkflowTemplate.created_at.desc(), WorkflowTemplate.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), int(total)


async def list_active_for_entity_type(
    session: AsyncSession, tenant_id: str, entity_type: str
) -> list[WorkflowTemplate]:
    # Newest first so the caller can pick deterministically if several are active.
    stmt = (
        select(WorkflowTemplate)
        .where(
            tenant_predicate(WorkflowTemplate, tenant_id),
            WorkflowTemplate.entity_type == entity_type,
            WorkflowTemplate.is_active.is_(True),
        )
        .order_by(WorkflowTemplate.created_at.desc(), WorkflowTemplate.id.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_templates_by_ids(
    session: AsyncSession, tenant_id: str, template_ids: list[str]
) -> dict[str, WorkflowTemplate]:
    if not template_ids:
        return {}
    stmt = select(WorkflowTemplate).where(
        tenant_predicate(WorkflowTemplate, tenant_id),
        WorkflowTemplate.id.in_(sorted(set(template_ids))),
    )
    result = await session.execute(stmt)
    return {row.id: row for row in result.scalars().all()}
