from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Collection, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from tenantflow.core.config import get_settings
from tenantflow.domain.models import ApprovalDelegation, WorkflowInstance
from tenantflow.domain.workflow import (
    Actor,
    ApproverSpec,
    ManagerApprover,
    RoleApprover,
    UserApprover,
)
from tenantflow.services import delegations as delegation_service
from tenantflow.services.directory import NullDirectory, OrgDirectory


logger = logging.getLogger(__name__)


def can_resolve(
    approver: ApproverSpec,
    actor: Actor,
    *,
    manager_confirmed: bool = False,
    fallback_roles: Collection[str] = (),
) -> bool:
    """Decide whether ``actor`` satisfies ``approver`` with no I/O.

    ``manager_confirmed`` is the reporting-chain answer for MANAGER steps. When it is false,
    any role in ``fallback_roles`` is still accepted: reporting-chain data is often
    incomplete, so this is a deliberately permissive policy. Pass an empty collection to
    require an explicit reporting relationship.
    """
    if isinstance(approver, UserApprover):
        return approver.user_id == actor.user_id
    if isinstance(approver, RoleApprover):
        return actor.role is not None and approver.role == actor.role
    if isinstance(approver, ManagerApprover):
        if manager_confirmed:
            return True
        return actor.role is not None and actor.role in fallback_roles
    raise TypeError(f"Unsupported approver spec: {approver!r}")


@dataclass(frozen=True)
class DelegatedAuthority:
    # An active delegation held by the actor, with the delegator standing in as the actor.
    delegation: ApprovalDelegation
    delegator: Actor


@dataclass(frozen=True)
class ResolutionMatch:
    # delegated_from is None when the actor matched in their own right.
    delegated_from: str | None = None
    delegation_id: str | None = None


class ApproverResolver:
    """Evaluates approver specs against an actor, including delegated authority."""

    def __init__(
        self,
        directory: OrgDirectory | None = None,
        *,
        fallback_roles: Collection[str] | None = None,
    ) -> None:
        self._directory = directory or NullDirectory()
        if fallback_roles is None:
            settings = get_settings()
            fallback_roles = settings.manager_fallback_roles if settings.workflow_manager_fallback_enabled else ()
        self._fallback_roles = frozenset(fallback_roles)

    @property
    def fallback_roles(self) -> frozenset[str]:
        return self._fallback_roles

    async def _manager_confirmed(self, tenant_id: str, manager_id: str, subordinate_id: str) -> bool:
        # An unavailable reporting chain counts as "not confirmed" and defers to the fallback roles.
        try:
            return bool(await self._directory.is_manager_of(tenant_id, manager_id, subordinate_id))
        except Exception as exc:  # noqa: BLE001 - directory outages must not block approvals
            logger.warning(
                "reporting_chain_lookup_failed tenant_id=%s manager_id=%s subordinate_id=%s",
                tenant_id,
                manager_id,
                subordinate_id,
                exc_info=exc,
            )
            return False

    async def _role_of(self, tenant_id: str, user_id: str) -> str | None:
        try:
            return await self._directory.role_of(tenant_id, user_id)
        except Exception as exc:  # noqa: BLE001 - treat as unknown role
            logger.warning("directory_role_lookup_failed tenant_id=%s user_id=%s", tenant_id, user_id, exc_info=exc)
            return None

    async def resolves_directly(
        self, approver: ApproverSpec, actor: Actor, instance: WorkflowInstance
    ) -> bool:
        manager_confirmed = False
        if isinstance(approver, ManagerApprover):
            manager_confirmed = await self._manager_confirmed(
                instance.tenant_id, actor.user_id, instance.initiated_by
            )
        return can_resolve(
            approver,
            actor,
            manager_confirmed=manager_confirmed,
            fallback_roles=self._fallback_roles,
        )

    async def load_delegated_authority(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        actor: Actor,
        as_of: datetime | None = None,
    ) -> list[DelegatedAuthority]:
        delegations = await delegation_service.find_active_to(
            session, tenant_id=tenant_id, user_id=actor.user_id, as_of=as_of
        )
        roles: dict[str, str | None] = {}
        authorities: list[DelegatedAuthority] = []
        for delegation in delegations:
            if delegation.delegator_id not in roles:
                roles[delegation.delegator_id] = await self._role_of(tenant_id, delegation.delegator_id)
            # The directory wins; the role captured at grant time covers deployments without one.
            role = roles[delegation.delegator_id] or delegation.delegator_role
            authorities.append(
                DelegatedAuthority(
                    delegation=delegation,
                    delegator=Actor(user_id=delegation.delegator_id, role=role),
                )
            )
        return authorities

    async def match(
        self,
        approver: ApproverSpec,
        actor: Actor,
        instance: WorkflowInstance,
        authorities: Sequence[DelegatedAuthority] = (),
    ) -> ResolutionMatch | None:
        if await self.resolves_directly(approver, actor, instance):
            return ResolutionMatch()
        return await self._match_delegated(approver, instance, authorities)

    async def _match_delegated(
        self,
        approver: ApproverSpec,
        instance: WorkflowInstance,
        authorities: Sequence[DelegatedAuthority],
    ) -> ResolutionMatch | None:
        # Delegation substitutes the delegator for the actor; it never chains further.
        for authority in authorities:
            if not authority.delegation.covers(instance.entity_type):
                continue
            if await self.resolves_directly(approver, authority.delegator, instance):
                return ResolutionMatch(
                    delegated_from=authority.delegator.user_id,
                    delegation_id=authority.delegation.id,
                )
        return None

    async def can_act(
        self,
        session: AsyncSession,
        *,
        approver: ApproverSpec,
        actor: Actor,
        instance: WorkflowInstance,
        as_of: datetime | None = None,
    ) -> ResolutionMatch | None:
        if await self.resolves_directly(approver, actor, instance):
            return ResolutionMatch()
        authorities = await self.load_delegated_authority(
            session, tenant_id=instance.tenant_id, actor=actor, as_of=as_of
        )
        return await self._match_delegated(approver, instance, authorities)
