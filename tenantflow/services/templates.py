from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping, Sequence, Union

from sqlalchemy.ext.asyncio import AsyncSession

from tenantflow.core.config import get_settings
from tenantflow.core.errors import (
    EmptyTemplateError,
    InvalidStepConfigError,
    TemplateInUseError,
    TemplateNotFoundError,
)
from tenantflow.domain.models import WorkflowTemplate
from tenantflow.domain.workflow import ApproverType, RoleApprover, StepSpec, approver_spec_from
from tenantflow.persistence.repos import instances as instances_repo
from tenantflow.persistence.repos import templates as templates_repo
from tenantflow.services.pagination import Page, resolve_page


logger = logging.getLogger(__name__)

StepInput = Union[StepSpec, Mapping[str, Any]]


@dataclass(frozen=True)
class TemplateWithSteps:
    template: WorkflowTemplate
    steps: tuple[StepSpec, ...]

    @property
    def id(self) -> str:
        return self.template.id


@dataclass(frozen=True)
class TemplatePatch:
    # None means "leave unchanged" for every field.
    name: str | None = None
    description: str | None = None
    entity_type: str | None = None
    steps: Sequence[StepInput] | None = None


def _coerce_step(raw: StepInput, position: int) -> StepSpec:
    if isinstance(raw, StepSpec):
        if isinstance(raw.approver, RoleApprover):
            return StepSpec(order=raw.order, approver=RoleApprover(role=raw.approver.role.strip().upper()))
        return raw
    order = raw.get("order")
    approver_type = raw.get("approver_type")
    approver_value = raw.get("approver_value")
    if isinstance(order, bool) or not isinstance(order, int) or order < 1:
        raise InvalidStepConfigError(
            f"Step at position {position} must have a positive integer order", position=position
        )
    if not isinstance(approver_type, str) or not approver_type.strip():
        raise InvalidStepConfigError(
            "Each step must have approver_type and approver_value", order=order
        )
    if not isinstance(approver_value, str) or not approver_value.strip():
        raise InvalidStepConfigError(
            "Each step must have approver_type and approver_value", order=order
        )
    normalized_type = approver_type.strip().upper()
    if normalized_type not in ApproverType.ALL:
        raise InvalidStepConfigError(
            f"Unsupported approver_type: {approver_type}", order=order
        )
    normalized_value = approver_value.strip()
    if normalized_type == ApproverType.ROLE:
        # Stored upper-case to match the normalized X-Role header.
        normalized_value = normalized_value.upper()
    return StepSpec(order=order, approver=approver_spec_from(normalized_type, normalized_value))


def validate_step_specs(steps: Sequence[StepInput] | None) -> list[StepSpec]:
    """Validate raw step configuration and return typed specs sorted by order.

    Orders must form the dense sequence ``1..N`` with no repeats, and every step needs a
    known approver type plus a non-empty approver value. An empty list is rejected with
    :class:`EmptyTemplateError`; every other violation raises :class:`InvalidStepConfigError`.
    """
    if not steps:
        raise EmptyTemplateError("At least one workflow step is required")
    specs = [_coerce_step(raw, position) for position, raw in enumerate(steps)]
    orders = sorted(spec.order for spec in specs)
    if len(set(orders)) != len(orders):
        raise InvalidStepConfigError("Step orders must be unique", orders=orders)
    for expected, actual in enumerate(orders, start=1):
        if actual != expected:
            raise InvalidStepConfigError(
                f"Step orders must be sequential starting from 1. Expected {expected}, got {actual}",
                orders=orders,
            )
    return sorted(specs, key=lambda spec: spec.order)


async def _load_steps(session: AsyncSession, template_id: str) -> tuple[StepSpec, ...]:
    rows = await templates_repo.list_template_steps(session, template_id)
    return tuple(StepSpec(order=row.step_order, approver=row.approver) for row in rows)


async def create_template(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    entity_type: str,
    steps: Sequence[StepInput],
    description: str | None = None,
    created_by: str | None = None,
) -> TemplateWithSteps:
    specs = validate_step_specs(steps)
    template = await templates_repo.create_template(
        session,
        tenant_id=tenant_id,
        name=name,
        description=description,
        entity_type=entity_type,
        steps=specs,
        created_by=created_by,
    )
    await session.commit()
    logger.info(
        "workflow_template_created tenant_id=%s template_id=%s entity_type=%s steps=%d",
        tenant_id,
        template.id,
        entity_type,
        len(specs),
    )
    return TemplateWithSteps(template=template, steps=tuple(specs))


async def get_template(session: AsyncSession, *, tenant_id: str, template_id: str) -> TemplateWithSteps:
    template = await templates_repo.get_template(session, tenant_id, template_id)
    if template is None:
        raise TemplateNotFoundError("Workflow template not found", template_id=template_id)
    return TemplateWithSteps(template=template, steps=await _load_steps(session, template.id))


async def list_templates(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: str | None = None,
    is_active: bool | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> Page[TemplateWithSteps]:
    resolved_page, resolved_limit, offset = resolve_page(page, limit)
    rows, total = await templates_repo.list_templates(
        session,
        tenant_id=tenant_id,
        entity_type=entity_type,
        is_active=is_active,
        offset=offset,
        limit=resolved_limit,
    )
    steps_by_template = await templates_repo.list_steps_for_templates(session, [row.id for row in rows])
    items = [
        TemplateWithSteps(
            template=row,
            steps=tuple(
                StepSpec(order=step.step_order, approver=step.approver)
                for step in steps_by_template.get(row.id, [])
            ),
        )
        for row in rows
    ]
    return Page(items=items, total=total, page=resolved_page, limit=resolved_limit)


async def find_active_for_entity_type(
    session: AsyncSession, *, tenant_id: str, entity_type: str
) -> TemplateWithSteps | None:
    """Return the active template for ``entity_type``, or None when none is configured.

    Several active templates can exist after concurrent admin edits; the newest wins so
    the choice is deterministic, and the ambiguity is logged for operators.
    """
    candidates = await templates_repo.list_active_for_entity_type(session, tenant_id, entity_type)
    if not candidates:
        return None
    if len(candidates) > 1:
        logger.warning(
            "workflow_template_multiple_active tenant_id=%s entity_type=%s count=%d chosen=%s",
            tenant_id,
            entity_type,
            len(candidates),
            candidates[0].id,
        )
    template = candidates[0]
    return TemplateWithSteps(template=template, steps=await _load_steps(session, template.id))


async def update_template(
    session: AsyncSession,
    *,
    tenant_id: str,
    template_id: str,
    patch: TemplatePatch,
) -> TemplateWithSteps:
    template = await templates_repo.get_template(session, tenant_id, template_id)
    if template is None:
        raise TemplateNotFoundError("Workflow template not found", template_id=template_id)

    specs: list[StepSpec] | None = None
    if patch.steps is not None:
        specs = validate_step_specs(patch.steps)
        if get_settings().workflow_block_running_template_step_updates:
            open_count = await instances_repo.count_open_instances_for_template(
                session, tenant_id, template_id
            )
            if open_count:
                raise TemplateInUseError(
                    "Template steps cannot change while workflows are running",
                    template_id=template_id,
                    open_instances=open_count,
                )

    if patch.name is not None:
        template.name = patch.name
    if patch.description is not None:
        template.description = patch.description
    if patch.entity_type is not None:
        template.entity_type = patch.entity_type
    if specs is not None:
        # Running instances keep their own snapshot; only future starts see new steps.
        await templates_repo.replace_template_steps(session, template.id, specs)
    await session.commit()
    logger.info("workflow_template_updated tenant_id=%s template_id=%s", tenant_id, template_id)
    return TemplateWithSteps(template=template, steps=await _load_steps(session, template.id))


async def deactivate_template(
    session: AsyncSession, *, tenant_id: str, template_id: str
) -> WorkflowTemplate:
    template = await templates_repo.get_template(session, tenant_id, template_id)
    if template is None:
        raise TemplateNotFoundError("Workflow template not found", template_id=template_id)
    template.is_active = False
    await session.commit()
    logger.info("workflow_template_deactivated tenant_id=%s template_id=%s", tenant_id, template_id)
    return template
