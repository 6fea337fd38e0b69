from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable, TypeVar
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from tenantflow.core.config import get_settings
from tenantflow.core.errors import (
    ApproverNotAuthorizedError,
    ConcurrentTransitionError,
    DuplicateActiveWorkflowError,
    EmptyTemplateError,
    InstanceNotActiveError,
    InstanceNotFoundError,
    InvalidCancelStateError,
    NotCurrentStepError,
    StepAlreadyResolvedError,
    StepNotFoundError,
)
from tenantflow.domain.events import (
    WORKFLOW_APPROVED,
    WORKFLOW_CANCELLED,
    WORKFLOW_REJECTED,
    WORKFLOW_STARTED,
    WORKFLOW_STEP_APPROVED,
)
from tenantflow.domain.models import WorkflowInstance, WorkflowStep
from tenantflow.domain.workflow import Actor, StepStatus, WorkflowStatus
from tenantflow.persistence.repos import instances as instances_repo
from tenantflow.services import templates as template_service
from tenantflow.services.approver_resolver import ApproverResolver, ResolutionMatch
from tenantflow.services.event_bus import EventBus, build_event_bus, publish_safely
from tenantflow.services.queries import InstanceView, TemplateSummary


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StepTransition:
    """Outcome of resolving one step.

    ``next_step`` is set only when an approval advanced the instance to another step.
    """

    step: WorkflowStep
    instance: WorkflowInstance
    next_step: WorkflowStep | None = None
    delegated_from: str | None = None


def _event_base(instance: WorkflowInstance) -> dict[str, Any]:
    return {
        "tenant_id": instance.tenant_id,
        "instance_id": instance.id,
        "template_id": instance.template_id,
        "entity_type": instance.entity_type,
        "entity_id": instance.entity_id,
        "initiated_by": instance.initiated_by,
    }


def _close(instance: WorkflowInstance, status: str, now: datetime) -> None:
    instance.status = status
    instance.completed_at = now
    # Releasing the key lets a new workflow start for the same entity.
    instance.active_key = None


class WorkflowOrchestrator:
    """Drives workflow instances through IN_PROGRESS to a terminal state.

    Every mutation re-reads the instance under ``SELECT ... FOR UPDATE`` and flushes it
    through the mapper's version check before touching the step row. A lost race raises
    ``StaleDataError``; the whole operation is rolled back and replayed, so the loser
    ends on the same precondition errors a sequential caller would see. Events go out
    only after the commit and never fail the call.
    """

    def __init__(
        self,
        *,
        event_bus: EventBus | None = None,
        resolver: ApproverResolver | None = None,
        max_attempts: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.event_bus = event_bus or build_event_bus()
        self.resolver = resolver or ApproverResolver()
        self._max_attempts = max(1, max_attempts or get_settings().workflow_transition_max_attempts)
        self._clock = clock or _utc_now

    def now(self) -> datetime:
        return self._clock()

    async def _with_retry(
        self,
        session: AsyncSession,
        operation: Callable[[], Awaitable[T]],
        *,
        action: str,
        target_id: str,
    ) -> T:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await operation()
            except StaleDataError:
                await session.rollback()
                logger.warning(
                    "workflow_transition_conflict action=%s target_id=%s attempt=%d",
                    action,
                    target_id,
                    attempt,
                )
        raise ConcurrentTransitionError(
            "Workflow was modified concurrently; retry the request",
            action=action,
            target_id=target_id,
            attempts=self._max_attempts,
        )

    async def start(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        initiator_id: str,
        entity_type: str,
        entity_id: str,
    ) -> InstanceView | None:
        existing = await instances_repo.find_open_instance_for_entity(
            session, tenant_id, entity_type, entity_id
        )
        if existing is not None:
            raise DuplicateActiveWorkflowError(
                "An active workflow already exists for this entity",
                entity_type=entity_type,
                entity_id=entity_id,
                instance_id=existing.id,
            )

        template = await template_service.find_active_for_entity_type(
            session, tenant_id=tenant_id, entity_type=entity_type
        )
        if template is None:
            logger.info(
                "workflow_template_not_configured tenant_id=%s entity_type=%s entity_id=%s",
                tenant_id,
                entity_type,
                entity_id,
            )
            return None
        if not template.steps:
            raise EmptyTemplateError("Workflow template has no steps", template_id=template.id)

        specs = sorted(template.steps, key=lambda spec: spec.order)
        now = self.now()
        instance = WorkflowInstance(
            id=uuid4().hex,
            tenant_id=tenant_id,
            template_id=template.id,
            entity_type=entity_type,
            entity_id=entity_id,
            initiated_by=initiator_id,
            status=WorkflowStatus.IN_PROGRESS,
            current_step_order=specs[0].order,
            active_key=instances_repo.active_key_for(entity_type, entity_id),
            created_at=now,
            updated_at=now,
        )
        steps = [
            WorkflowStep(
                id=uuid4().hex,
                instance_id=instance.id,
                tenant_id=tenant_id,
                step_order=spec.order,
                approver_type=spec.approver.approver_type,
                approver_value=spec.approver.approver_value,
                status=StepStatus.PENDING,
                created_at=now,
            )
            for spec in specs
        ]
        try:
            session.add(instance)
            # Parent row first so the step FKs hold on every backend.
            await session.flush()
            session.add_all(steps)
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            # A concurrent start claimed the entity's active key between our check and insert.
            raise DuplicateActiveWorkflowError(
                "An active workflow already exists for this entity",
                entity_type=entity_type,
                entity_id=entity_id,
            ) from exc

        logger.info(
            "workflow_started tenant_id=%s instance_id=%s template_id=%s entity_type=%s entity_id=%s steps=%d",
            tenant_id,
            instance.id,
            template.id,
            entity_type,
            entity_id,
            len(steps),
        )
        await publish_safely(self.event_bus, WORKFLOW_STARTED, _event_base(instance))
        return InstanceView(
            instance=instance,
            steps=tuple(steps),
            template=TemplateSummary.from_row(template.template),
        )

    async def _load_for_transition(
        self, session: AsyncSession, tenant_id: str, step_id: str
    ) -> tuple[WorkflowStep, WorkflowInstance]:
        step = await instances_repo.get_step(session, tenant_id, step_id)
        if step is None:
            raise StepNotFoundError("Workflow step not found", step_id=step_id)
        instance = await instances_repo.get_instance(
            session, tenant_id, step.instance_id, for_update=True
        )
        if instance is None:
            raise StepNotFoundError("Workflow step not found", step_id=step_id)
        # Re-read the step now that the instance row is held.
        await session.refresh(step)
        if step.status != StepStatus.PENDING:
            raise StepAlreadyResolvedError(
                "Workflow step has already been resolved", step_id=step.id, status=step.status
            )
        if instance.status != WorkflowStatus.IN_PROGRESS:
            raise InstanceNotActiveError(
                "Workflow instance is not in progress", instance_id=instance.id, status=instance.status
            )
        if step.step_order != instance.current_step_order:
            raise NotCurrentStepError(
                "Workflow step is not the current step",
                step_id=step.id,
                step_order=step.step_order,
                current_step_order=instance.current_step_order,
            )
        return step, instance

    async def _authorize(
        self, session: AsyncSession, step: WorkflowStep, instance: WorkflowInstance, actor: Actor, now: datetime
    ) -> ResolutionMatch:
        match = await self.resolver.can_act(
            session, approver=step.approver, actor=actor, instance=instance, as_of=now
        )
        if match is None:
            raise ApproverNotAuthorizedError(
                "You are not authorized to act on this step",
                step_id=step.id,
                approver_type=step.approver_type,
                user_id=actor.user_id,
            )
        return match

    def _resolve_step(self, step: WorkflowStep, status: str, actor: Actor, comments: str | None, now: datetime) -> None:
        step.status = status
        step.resolved_by = actor.user_id
        step.resolved_at = now
        step.comments = comments

    async def approve_step(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        step_id: str,
        actor: Actor,
        comments: str | None = None,
    ) -> StepTransition:
        async def attempt() -> StepTransition:
            now = self.now()
            step, instance = await self._load_for_transition(session, tenant_id, step_id)
            match = await self._authorize(session, step, instance, actor, now)

            steps = await instances_repo.list_steps(session, instance.id)
            later = [candidate for candidate in steps if candidate.step_order > step.step_order]
            next_step = min(later, key=lambda candidate: candidate.step_order) if later else None
            if next_step is None:
                _close(instance, WorkflowStatus.APPROVED, now)
            else:
                instance.current_step_order = next_step.step_order
            # Instance first: its version check decides the race before the step row is written.
            await session.flush()
            self._resolve_step(step, StepStatus.APPROVED, actor, comments, now)
            await session.commit()
            return StepTransition(
                step=step, instance=instance, next_step=next_step, delegated_from=match.delegated_from
            )

        transition = await self._with_retry(session, attempt, action="approve", target_id=step_id)
        instance = transition.instance
        data = _event_base(instance)
        data.update(step_id=transition.step.id, approved_by=actor.user_id, comments=comments)
        if transition.delegated_from:
            data["delegated_from"] = transition.delegated_from
        if transition.next_step is None:
            logger.info(
                "workflow_approved tenant_id=%s instance_id=%s step_id=%s approved_by=%s",
                tenant_id,
                instance.id,
                transition.step.id,
                actor.user_id,
            )
            await publish_safely(self.event_bus, WORKFLOW_APPROVED, data)
        else:
            logger.info(
                "workflow_step_approved tenant_id=%s instance_id=%s step_id=%s next_step_order=%s",
                tenant_id,
                instance.id,
                transition.step.id,
                transition.next_step.step_order,
            )
            data.update(
                next_step_id=transition.next_step.id,
                next_step_order=transition.next_step.step_order,
            )
            await publish_safely(self.event_bus, WORKFLOW_STEP_APPROVED, data)
        return transition

    async def reject_step(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        step_id: str,
        actor: Actor,
        comments: str | None = None,
    ) -> StepTransition:
        async def attempt() -> StepTransition:
            now = self.now()
            step, instance = await self._load_for_transition(session, tenant_id, step_id)
            match = await self._authorize(session, step, instance, actor, now)
            # Rejection is terminal wherever it happens; later steps stay PENDING.
            _close(instance, WorkflowStatus.REJECTED, now)
            await session.flush()
            self._resolve_step(step, StepStatus.REJECTED, actor, comments, now)
            await session.commit()
            return StepTransition(step=step, instance=instance, delegated_from=match.delegated_from)

        transition = await self._with_retry(session, attempt, action="reject", target_id=step_id)
        instance = transition.instance
        logger.info(
            "workflow_rejected tenant_id=%s instance_id=%s step_id=%s rejected_by=%s",
            tenant_id,
            instance.id,
            transition.step.id,
            actor.user_id,
        )
        data = _event_base(instance)
        data.update(step_id=transition.step.id, rejected_by=actor.user_id, comments=comments)
        if transition.delegated_from:
            data["delegated_from"] = transition.delegated_from
        await publish_safely(self.event_bus, WORKFLOW_REJECTED, data)
        return transition

    async def cancel(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        instance_id: str,
        actor: Actor,
    ) -> WorkflowInstance:
        async def attempt() -> WorkflowInstance:
            instance = await instances_repo.get_instance(session, tenant_id, instance_id, for_update=True)
            if instance is None:
                raise InstanceNotFoundError("Workflow instance not found", instance_id=instance_id)
            if instance.status in WorkflowStatus.TERMINAL:
                raise InvalidCancelStateError(
                    f"Cannot cancel a workflow with status {instance.status}",
                    instance_id=instance.id,
                    status=instance.status,
                )
            # Steps are left untouched as a record of where the workflow stopped.
            _close(instance, WorkflowStatus.CANCELLED, self.now())
            await session.commit()
            return instance

        instance = await self._with_retry(session, attempt, action="cancel", target_id=instance_id)
        logger.info(
            "workflow_cancelled tenant_id=%s instance_id=%s cancelled_by=%s",
            tenant_id,
            instance.id,
            actor.user_id,
        )
        data = _event_base(instance)
        data["cancelled_by"] = actor.user_id
        await publish_safely(self.event_bus, WORKFLOW_CANCELLED, data)
        return instance
