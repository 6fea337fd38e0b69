from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantflow.domain.models import ApprovalDelegation
from tenantflow.persistence.guards import tenant_predicate


async def get_delegation(
    session: AsyncSession, tenant_id: str, delegation_id: str
) -> ApprovalDelegation | None:
    stmt = select(ApprovalDelegation).where(
        ApprovalDelegation.id == delegation_id,
        tenant_predicate(ApprovalDelegation, tenant_id),
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def delete_delegation(session: AsyncSession, tenant_id: str, delegation_id: str) -> int:
    stmt = delete(ApprovalDelegation).where(
        ApprovalDelegation.id == delegation_id,
        tenant_predicate(ApprovalDelegation, tenant_id),
    )
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def list_for_user(
    session: AsyncSession, tenant_id: str, user_id: str
) -> list[ApprovalDelegation]:
    stmt = (
        select(ApprovalDelegation)
        .where(
            tenant_predicate(ApprovalDelegation, tenant_id),
            or_(ApprovalDelegation.delegator_id == user_id, ApprovalDelegation.delegate_id == user_id),
        )
        .order_by(ApprovalDelegation.created_at.desc(), ApprovalDelegation.id.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_active_by_delegator(
    session: AsyncSession, tenant_id: str, delegator_id: str, as_of: datetime
) -> list[ApprovalDelegation]:
    # Window bounds are inclusive on both ends.
    stmt = (
        select(ApprovalDelegation)
        .where(
            tenant_predicate(ApprovalDelegation, tenant_id),
            ApprovalDelegation.delegator_id == delegator_id,
            ApprovalDelegation.start_date <= as_of,
            ApprovalDelegation.end_date >= as_of,
        )
        .order_by(ApprovalDelegation.start_date, ApprovalDelegation.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_active_by_delegate(
    session: AsyncSession, tenant_id: str, delegate_id: str, as_of: datetime
) -> list[ApprovalDelegation]:
    stmt = (
        select(ApprovalDelegation)
        .where(
            tenant_predicate(ApprovalDelegation, tenant_id),
            ApprovalDelegation.delegate_id == delegate_id,
            ApprovalDelegation.start_date <= as_of,
            ApprovalDelegation.end_date >= as_of,
        )
        .order_by(ApprovalDelegation.start_date, ApprovalDelegation.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
