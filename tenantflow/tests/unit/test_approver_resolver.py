from __future__ import annotations

import pytest

from tenantflow.core.config import get_settings
from tenantflow.domain.models import WorkflowInstance
from tenantflow.domain.workflow import Actor, ManagerApprover, RoleApprover, UserApprover
from tenantflow.services import delegations as delegation_service
from tenantflow.services.approver_resolver import ApproverResolver, can_resolve
from tenantflow.services.directory import StaticDirectory
from tenantflow.tests.utils.workflows import utc


FALLBACK = ("MANAGER", "HR_ADMIN", "COMPANY_ADMIN")


def _instance(entity_type: str = "LEAVE_REQUEST") -> WorkflowInstance:
    # Transient row; the resolver only reads tenant, initiator and entity type.
    return WorkflowInstance(
        id="wi-1",
        tenant_id="t1",
        template_id="tpl-1",
        entity_type=entity_type,
        entity_id="leave-1",
        initiated_by="emp-1",
        status="IN_PROGRESS",
        current_step_order=1,
    )


class _BrokenDirectory:
    async def is_manager_of(self, tenant_id: str, manager_id: str, subordinate_id: str) -> bool:
        raise RuntimeError("directory offline")

    async def role_of(self, tenant_id: str, user_id: str) -> str | None:
        raise RuntimeError("directory offline")


def test_user_approver_matches_exact_user_only() -> None:
    assert can_resolve(UserApprover("u1"), Actor("u1"))
    assert not can_resolve(UserApprover("u1"), Actor("u2", role="HR_ADMIN"))


def test_role_approver_matches_role_only() -> None:
    assert can_resolve(RoleApprover("HR_ADMIN"), Actor("u9", role="HR_ADMIN"))
    assert not can_resolve(RoleApprover("HR_ADMIN"), Actor("u9", role="EMPLOYEE"))
    assert not can_resolve(RoleApprover("HR_ADMIN"), Actor("u9"))


def test_manager_approver_uses_confirmation_then_fallback() -> None:
    approver = ManagerApprover()
    assert can_resolve(approver, Actor("m1", role="EMPLOYEE"), manager_confirmed=True)
    assert can_resolve(approver, Actor("x", role="HR_ADMIN"), fallback_roles=FALLBACK)
    assert not can_resolve(approver, Actor("x", role="EMPLOYEE"), fallback_roles=FALLBACK)
    # Strict mode: no fallback roles means only the real manager qualifies.
    assert not can_resolve(approver, Actor("x", role="HR_ADMIN"), fallback_roles=())


def test_unknown_approver_variant_is_a_type_error() -> None:
    with pytest.raises(TypeError):
        can_resolve("USER:u1", Actor("u1"))  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_manager_step_confirmed_by_directory() -> None:
    directory = StaticDirectory(managers={("t1", "emp-1"): "mgr-1"})
    resolver = ApproverResolver(directory, fallback_roles=())
    instance = _instance()
    assert await resolver.resolves_directly(ManagerApprover(), Actor("mgr-1", role="EMPLOYEE"), instance)
    assert not await resolver.resolves_directly(ManagerApprover(), Actor("mgr-2", role="MANAGER"), instance)


@pytest.mark.asyncio
async def test_directory_outage_falls_back_to_roles() -> None:
    resolver = ApproverResolver(_BrokenDirectory(), fallback_roles=FALLBACK)
    instance = _instance()
    assert await resolver.resolves_directly(ManagerApprover(), Actor("any", role="MANAGER"), instance)
    assert not await resolver.resolves_directly(ManagerApprover(), Actor("any", role="EMPLOYEE"), instance)


def test_fallback_roles_follow_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKFLOW_MANAGER_FALLBACK_ENABLED", "false")
    get_settings.cache_clear()
    assert ApproverResolver().fallback_roles == frozenset()

    monkeypatch.setenv("WORKFLOW_MANAGER_FALLBACK_ENABLED", "true")
    monkeypatch.setenv("WORKFLOW_MANAGER_FALLBACK_ROLES", "HR_ADMIN")
    get_settings.cache_clear()
    assert ApproverResolver().fallback_roles == frozenset({"HR_ADMIN"})


@pytest.mark.asyncio
async def test_delegate_acts_in_delegators_place(session) -> None:
    await delegation_service.create_delegation(
        session,
        tenant_id="t1",
        delegator_id="boss",
        delegate_id="deputy",
        start_date=utc(2026, 3, 1),
        end_date=utc(2026, 3, 10),
    )
    resolver = ApproverResolver(StaticDirectory(), fallback_roles=())
    instance = _instance()

    inside = await resolver.can_act(
        session, approver=UserApprover("boss"), actor=Actor("deputy"), instance=instance, as_of=utc(2026, 3, 5)
    )
    assert inside is not None
    assert inside.delegated_from == "boss"

    before = await resolver.can_act(
        session, approver=UserApprover("boss"), actor=Actor("deputy"), instance=instance, as_of=utc(2026, 2, 28)
    )
    after = await resolver.can_act(
        session, approver=UserApprover("boss"), actor=Actor("deputy"), instance=instance, as_of=utc(2026, 3, 11)
    )
    assert before is None
    assert after is None


@pytest.mark.asyncio
async def test_delegation_uses_delegator_role_from_directory(session) -> None:
    await delegation_service.create_delegation(
        session,
        tenant_id="t1",
        delegator_id="hr-lead",
        delegate_id="deputy",
        start_date=utc(2026, 3, 1),
        end_date=utc(2026, 3, 10),
    )
    directory = StaticDirectory(roles={("t1", "hr-lead"): "HR_ADMIN"})
    resolver = ApproverResolver(directory, fallback_roles=())
    match = await resolver.can_act(
        session,
        approver=RoleApprover("HR_ADMIN"),
        actor=Actor("deputy", role="EMPLOYEE"),
        instance=_instance(),
        as_of=utc(2026, 3, 2),
    )
    assert match is not None
    assert match.delegated_from == "hr-lead"


@pytest.mark.asyncio
async def test_delegation_falls_back_to_role_recorded_at_grant(session) -> None:
    await delegation_service.create_delegation(
        session,
        tenant_id="t1",
        delegator_id="hr-lead",
        delegator_role="hr_admin",
        delegate_id="deputy",
        start_date=utc(2026, 3, 1),
        end_date=utc(2026, 3, 10),
    )
    # No directory: only the recorded role can vouch for the delegator.
    resolver = ApproverResolver(fallback_roles=())
    authorities = await resolver.load_delegated_authority(
        session, tenant_id="t1", actor=Actor("deputy", role="EMPLOYEE"), as_of=utc(2026, 3, 2)
    )
    assert [authority.delegator.role for authority in authorities] == ["HR_ADMIN"]

    match = await resolver.can_act(
        session,
        approver=RoleApprover("HR_ADMIN"),
        actor=Actor("deputy", role="EMPLOYEE"),
        instance=_instance(),
        as_of=utc(2026, 3, 2),
    )
    assert match is not None
    assert match.delegated_from == "hr-lead"

    # The directory answer takes precedence over the recorded role.
    demoted = ApproverResolver(StaticDirectory(roles={("t1", "hr-lead"): "EMPLOYEE"}), fallback_roles=())
    assert (
        await demoted.can_act(
            session,
            approver=RoleApprover("HR_ADMIN"),
            actor=Actor("deputy", role="EMPLOYEE"),
            instance=_instance(),
            as_of=utc(2026, 3, 2),
        )
        is None
    )


@pytest.mark.asyncio
async def test_delegation_scope_limits_entity_types(session) -> None:
    await delegation_service.create_delegation(
        session,
        tenant_id="t1",
        delegator_id="boss",
        delegate_id="deputy",
        start_date=utc(2026, 3, 1),
        end_date=utc(2026, 3, 10),
        scope=["EXPENSE_CLAIM"],
    )
    resolver = ApproverResolver(StaticDirectory(), fallback_roles=())
    authorities = await resolver.load_delegated_authority(
        session, tenant_id="t1", actor=Actor("deputy"), as_of=utc(2026, 3, 2)
    )
    assert len(authorities) == 1

    leave = await resolver.match(UserApprover("boss"), Actor("deputy"), _instance("LEAVE_REQUEST"), authorities)
    expense = await resolver.match(UserApprover("boss"), Actor("deputy"), _instance("EXPENSE_CLAIM"), authorities)
    assert leave is None
    assert expense is not None


@pytest.mark.asyncio
async def test_delegation_does_not_chain(session) -> None:
    # boss -> deputy -> intern: intern gains deputy's own authority only, never boss's.
    for delegator, delegate in (("boss", "deputy"), ("deputy", "intern")):
        await delegation_service.create_delegation(
            session,
            tenant_id="t1",
            delegator_id=delegator,
            delegate_id=delegate,
            start_date=utc(2026, 3, 1),
            end_date=utc(2026, 3, 10),
        )
    resolver = ApproverResolver(StaticDirectory(), fallback_roles=())
    match = await resolver.can_act(
        session, approver=UserApprover("boss"), actor=Actor("intern"), instance=_instance(), as_of=utc(2026, 3, 2)
    )
    assert match is None
