from __future__ import annotations

import logging

import pytest

from tenantflow.core.errors import InstanceNotFoundError
from tenantflow.domain.models import WorkflowInstance
from tenantflow.domain.workflow import Actor, WorkflowStatus
from tenantflow.services import delegations as delegation_service
from tenantflow.services import queries
from tenantflow.services.approver_resolver import ApproverResolver
from tenantflow.services.directory import StaticDirectory
from tenantflow.services.event_bus import InMemoryEventBus
from tenantflow.services.orchestrator import WorkflowOrchestrator
from tenantflow.services.queries import InstanceFilters
from tenantflow.tests.utils.workflows import FrozenClock, create_template, user_steps, utc


def _orchestrator(clock: FrozenClock | None = None, directory: StaticDirectory | None = None) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(
        event_bus=InMemoryEventBus(),
        resolver=ApproverResolver(directory or StaticDirectory(), fallback_roles=()),
        clock=clock,
    )


@pytest.mark.asyncio
async def test_list_instances_newest_first_with_pagination(session) -> None:
    clock = FrozenClock(utc(2026, 3, 1))
    orchestrator = _orchestrator(clock)
    await create_template(session, steps=user_steps("a"))
    started = []
    for index in range(3):
        view = await orchestrator.start(
            session, tenant_id="t1", initiator_id="emp-1", entity_type="LEAVE_REQUEST", entity_id=f"leave-{index}"
        )
        assert view is not None
        started.append(view.id)
        clock.advance(minutes=5)

    first = await queries.list_instances(session, tenant_id="t1", page=1, limit=2)
    assert first.total == 3
    assert [item.id for item in first.items] == [started[2], started[1]]
    assert first.has_next_page is True

    second = await queries.list_instances(session, tenant_id="t1", page=2, limit=2)
    assert [item.id for item in second.items] == [started[0]]
    assert second.has_previous_page is True
    assert all(item.template is not None and item.template.name == "Leave approval" for item in second.items)


@pytest.mark.asyncio
async def test_list_instances_applies_filters_and_tenant_scope(session) -> None:
    orchestrator = _orchestrator()
    await create_template(session, steps=user_steps("a"))
    await create_template(session, entity_type="EXPENSE_CLAIM", steps=user_steps("a"))
    await create_template(session, tenant_id="t2", steps=user_steps("a"))

    leave = await orchestrator.start(
        session, tenant_id="t1", initiator_id="emp-1", entity_type="LEAVE_REQUEST", entity_id="leave-1"
    )
    await orchestrator.start(
        session, tenant_id="t1", initiator_id="emp-2", entity_type="EXPENSE_CLAIM", entity_id="exp-1"
    )
    await orchestrator.start(
        session, tenant_id="t2", initiator_id="emp-1", entity_type="LEAVE_REQUEST", entity_id="leave-1"
    )
    assert leave is not None
    await orchestrator.cancel(session, tenant_id="t1", instance_id=leave.id, actor=Actor("emp-1"))

    everything = await queries.list_instances(session, tenant_id="t1")
    assert everything.total == 2

    by_type = await queries.list_instances(
        session, tenant_id="t1", filters=InstanceFilters(entity_type="EXPENSE_CLAIM")
    )
    assert [item.instance.entity_id for item in by_type.items] == ["exp-1"]

    cancelled = await queries.list_instances(
        session, tenant_id="t1", filters=InstanceFilters(status=WorkflowStatus.CANCELLED)
    )
    assert [item.id for item in cancelled.items] == [leave.id]

    mine = await queries.list_instances(session, tenant_id="t1", filters=InstanceFilters(initiated_by="emp-2"))
    assert mine.total == 1

    entity = await queries.list_instances(session, tenant_id="t1", filters=InstanceFilters(entity_id="leave-1"))
    assert entity.total == 1


@pytest.mark.asyncio
async def test_get_instance_includes_steps_and_template(session) -> None:
    orchestrator = _orchestrator()
    template = await create_template(session, name="Two levels", steps=user_steps("a", "b"))
    view = await orchestrator.start(
        session, tenant_id="t1", initiator_id="emp-1", entity_type="LEAVE_REQUEST", entity_id="leave-1"
    )
    assert view is not None
    await orchestrator.approve_step(session, tenant_id="t1", step_id=view.steps[0].id, actor=Actor("a"))

    loaded = await queries.get_instance(session, tenant_id="t1", instance_id=view.id)
    assert loaded.template is not None
    assert loaded.template.id == template.id
    assert loaded.template.name == "Two levels"
    assert [step.step_order for step in loaded.steps] == [1, 2]
    assert loaded.current_step is not None
    assert loaded.current_step.approver_value == "b"

    with pytest.raises(InstanceNotFoundError):
        await queries.get_instance(session, tenant_id="t2", instance_id=view.id)


@pytest.mark.asyncio
async def test_pending_approvals_lists_only_current_steps(session) -> None:
    directory = StaticDirectory(managers={("t1", "emp-1"): "mgr-1"})
    orchestrator = _orchestrator(directory=directory)
    await create_template(
        session,
        steps=[
            {"order": 1, "approver_type": "MANAGER", "approver_value": "REPORTING_MANAGER"},
            {"order": 2, "approver_type": "ROLE", "approver_value": "HR_ADMIN"},
        ],
    )
    first = await orchestrator.start(
        session, tenant_id="t1", initiator_id="emp-1", entity_type="LEAVE_REQUEST", entity_id="leave-1"
    )
    second = await orchestrator.start(
        session, tenant_id="t1", initiator_id="emp-1", entity_type="LEAVE_REQUEST", entity_id="leave-2"
    )
    assert first is not None and second is not None
    resolver = orchestrator.resolver

    manager_queue = await queries.pending_approvals_for(
        session, tenant_id="t1", actor=Actor("mgr-1", role="EMPLOYEE"), resolver=resolver
    )
    assert sorted(item.instance.id for item in manager_queue) == sorted([first.id, second.id])
    assert all(item.step.step_order == 1 for item in manager_queue)

    hr = Actor("hr-1", role="HR_ADMIN")
    assert await queries.pending_approvals_for(session, tenant_id="t1", actor=hr, resolver=resolver) == []

    await orchestrator.approve_step(session, tenant_id="t1", step_id=first.steps[0].id, actor=Actor("mgr-1"))
    hr_queue = await queries.pending_approvals_for(session, tenant_id="t1", actor=hr, resolver=resolver)
    assert [item.instance.id for item in hr_queue] == [first.id]
    assert hr_queue[0].template is not None
    assert hr_queue[0].delegated_from is None

    # Terminal instances drop out of every queue.
    await orchestrator.cancel(session, tenant_id="t1", instance_id=second.id, actor=Actor("emp-1"))
    manager_queue = await queries.pending_approvals_for(
        session, tenant_id="t1", actor=Actor("mgr-1"), resolver=resolver
    )
    assert manager_queue == []


@pytest.mark.asyncio
async def test_pending_approvals_report_delegated_source(session) -> None:
    orchestrator = _orchestrator()
    await create_template(session, steps=user_steps("boss"))
    view = await orchestrator.start(
        session, tenant_id="t1", initiator_id="emp-1", entity_type="LEAVE_REQUEST", entity_id="leave-1"
    )
    assert view is not None
    await delegation_service.create_delegation(
        session,
        tenant_id="t1",
        delegator_id="boss",
        delegate_id="deputy",
        start_date=utc(2026, 3, 1),
        end_date=utc(2026, 3, 10),
    )

    inside = await queries.pending_approvals_for(
        session, tenant_id="t1", actor=Actor("deputy"), resolver=orchestrator.resolver, as_of=utc(2026, 3, 2)
    )
    assert len(inside) == 1
    assert inside[0].delegated_from == "boss"

    outside = await queries.pending_approvals_for(
        session, tenant_id="t1", actor=Actor("deputy"), resolver=orchestrator.resolver, as_of=utc(2026, 4, 1)
    )
    assert outside == []

    # The delegator keeps their own authority during the window.
    own = await queries.pending_approvals_for(
        session, tenant_id="t1", actor=Actor("boss"), resolver=orchestrator.resolver, as_of=utc(2026, 3, 2)
    )
    assert len(own) == 1
    assert own[0].delegated_from is None


@pytest.mark.asyncio
async def test_pending_approvals_skip_instances_without_current_step(session, caplog) -> None:
    orchestrator = _orchestrator()
    await create_template(session, steps=user_steps("a"))
    view = await orchestrator.start(
        session, tenant_id="t1", initiator_id="emp-1", entity_type="LEAVE_REQUEST", entity_id="leave-1"
    )
    assert view is not None
    instance = await session.get(WorkflowInstance, view.id)
    assert instance is not None
    # Simulate a corrupted pointer left behind by a manual data fix.
    instance.current_step_order = 9
    await session.commit()

    with caplog.at_level(logging.WARNING):
        pending = await queries.pending_approvals_for(
            session, tenant_id="t1", actor=Actor("a"), resolver=orchestrator.resolver
        )
    assert pending == []
    assert "workflow_current_step_missing" in caplog.text
