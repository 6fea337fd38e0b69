from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Sequence
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from tenantflow.core.errors import (
    DelegationNotFoundError,
    InvalidDelegationWindowError,
    SelfDelegationError,
)
from tenantflow.domain.events import DELEGATION_CREATED
from tenantflow.domain.models import ApprovalDelegation
from tenantflow.persistence.repos import delegations as delegations_repo
from tenantflow.services.event_bus import EventBus, publish_safely


logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken as UTC so window comparisons stay consistent across backends.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_scope(scope: Sequence[str] | None) -> list[str]:
    if not scope:
        return []
    seen: list[str] = []
    for entity_type in scope:
        cleaned = entity_type.strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


async def create_delegation(
    session: AsyncSession,
    *,
    tenant_id: str,
    delegator_id: str,
    delegate_id: str,
    start_date: datetime,
    end_date: datetime,
    delegator_role: str | None = None,
    reason: str | None = None,
    scope: Sequence[str] | None = None,
    event_bus: EventBus | None = None,
) -> ApprovalDelegation:
    # Overlapping delegations are allowed; resolution accepts any active, in-scope grant.
    if delegator_id == delegate_id:
        raise SelfDelegationError("Cannot delegate to yourself", user_id=delegator_id)
    start = as_utc(start_date)
    end = as_utc(end_date)
    if end < start:
        raise InvalidDelegationWindowError(
            "Delegation end_date must not precede start_date",
            start_date=start.isoformat(),
            end_date=end.isoformat(),
        )
    delegation = ApprovalDelegation(
        id=uuid4().hex,
        tenant_id=tenant_id,
        delegator_id=delegator_id,
        delegator_role=delegator_role.strip().upper() if delegator_role else None,
        delegate_id=delegate_id,
        start_date=start,
        end_date=end,
        reason=reason,
        scope_json=_normalize_scope(scope),
    )
    session.add(delegation)
    await session.commit()
    logger.info(
        "delegation_created tenant_id=%s delegation_id=%s delegator_id=%s delegate_id=%s",
        tenant_id,
        delegation.id,
        delegator_id,
        delegate_id,
    )
    if event_bus is not None:
        await publish_safely(
            event_bus,
            DELEGATION_CREATED,
            {
                "tenant_id": tenant_id,
                "delegation_id": delegation.id,
                "delegator_id": delegator_id,
                "delegate_id": delegate_id,
            },
        )
    return delegation


async def find_active_for(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    as_of: datetime | None = None,
) -> list[ApprovalDelegation]:
    # Delegations granted BY user_id that are live at as_of.
    moment = as_utc(as_of) if as_of is not None else _utc_now()
    return await delegations_repo.list_active_by_delegator(session, tenant_id, user_id, moment)


async def find_active_to(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    as_of: datetime | None = None,
) -> list[ApprovalDelegation]:
    # Delegations granted TO user_id that are live at as_of.
    moment = as_utc(as_of) if as_of is not None else _utc_now()
    return await delegations_repo.list_active_by_delegate(session, tenant_id, user_id, moment)


async def list_for_user(
    session: AsyncSession, *, tenant_id: str, user_id: str
) -> list[ApprovalDelegation]:
    return await delegations_repo.list_for_user(session, tenant_id, user_id)


async def get_delegation(
    session: AsyncSession, *, tenant_id: str, delegation_id: str
) -> ApprovalDelegation:
    delegation = await delegations_repo.get_delegation(session, tenant_id, delegation_id)
    if delegation is None:
        raise DelegationNotFoundError("Delegation not found", delegation_id=delegation_id)
    return delegation


async def revoke_delegation(session: AsyncSession, *, tenant_id: str, delegation_id: str) -> None:
    # Hard delete; a missing id is reported so callers decide whether that is idempotent success.
    deleted = await delegations_repo.delete_delegation(session, tenant_id, delegation_id)
    if not deleted:
        raise DelegationNotFoundError("Delegation not found", delegation_id=delegation_id)
    await session.commit()
    logger.info("delegation_revoked tenant_id=%s delegation_id=%s", tenant_id, delegation_id)
