from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from accessbundle.domain.models import Customer, MaintenanceGroup, MaintenanceGroupMember, User
from accessbundle.persistence.guards import tenant_predicate


async def get_user(session: AsyncSession, *, tenant_id: str, user_id: str) -> User | None:
    result = await session.execute(
        select(User).where(User.id == user_id, tenant_predicate(User, tenant_id))
    )
    return result.scalar_one_or_none()


async def get_customer(session: AsyncSession, *, tenant_id: str, customer_id: str) -> Customer | None:
    result = await session.execute(
        select(Customer).where(Customer.id == customer_id, tenant_predicate(Customer, tenant_id))
    )
    return result.scalar_one_or_none()


async def get_primary_maintenance_group(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    now: datetime,
) -> MaintenanceGroup | None:
    # Primary group = earliest non-expired membership; group id breaks ties.
    result = await session.execute(
        select(MaintenanceGroup)
        .join(MaintenanceGroupMember, MaintenanceGroupMember.group_id == MaintenanceGroup.id)
        .where(
            tenant_predicate(MaintenanceGroupMember, tenant_id),
            MaintenanceGroup.tenant_id == tenant_id,
            MaintenanceGroupMember.user_id == user_id,
            or_(MaintenanceGroupMember.expires_at.is_(None), MaintenanceGroupMember.expires_at > now),
        )
        .order_by(MaintenanceGroupMember.assigned_at, MaintenanceGroup.id)
        .limit(1)
    )
    return result.scalars().first()
