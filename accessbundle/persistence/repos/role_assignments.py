from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from accessbundle.domain.access import AssignmentStatus
from accessbundle.domain.models import RoleAssignment
from accessbundle.persistence.guards import require_tenant_id, tenant_predicate


def _not_expired(now: datetime) -> object:
    return or_(RoleAssignment.expires_at.is_(None), RoleAssignment.expires_at > now)


async def get_assignment(
    session: AsyncSession,
    *,
    tenant_id: str,
    assignment_id: str,
) -> RoleAssignment | None:
    result = await session.execute(
        select(RoleAssignment).where(
            RoleAssignment.id == assignment_id,
            tenant_predicate(RoleAssignment, tenant_id),
        )
    )
    return result.scalar_one_or_none()


async def list_for_user(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    now: datetime,
    active_only: bool = True,
) -> list[RoleAssignment]:
    stmt = select(RoleAssignment).where(
        tenant_predicate(RoleAssignment, tenant_id),
        RoleAssignment.user_id == user_id,
    )
    if active_only:
        stmt = stmt.where(RoleAssignment.status == AssignmentStatus.ACTIVE.value, _not_expired(now))
    result = await session.execute(stmt.order_by(RoleAssignment.granted_at, RoleAssignment.id))
    return list(result.scalars().all())


async def list_active_for_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    role_key: str,
    now: datetime,
) -> list[RoleAssignment]:
    result = await session.execute(
        select(RoleAssignment)
        .where(
            tenant_predicate(RoleAssignment, tenant_id),
            RoleAssignment.role_key == role_key,
            RoleAssignment.status == AssignmentStatus.ACTIVE.value,
            _not_expired(now),
        )
        .order_by(RoleAssignment.granted_at, RoleAssignment.id)
    )
    return list(result.scalars().all())


async def find_active(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    role_key: str,
    scope: str,
    now: datetime,
) -> RoleAssignment | None:
    # Uniqueness of the active (user, role, scope) triple is checked at write time.
    result = await session.execute(
        select(RoleAssignment).where(
            tenant_predicate(RoleAssignment, tenant_id),
            RoleAssignment.user_id == user_id,
            RoleAssignment.role_key == role_key,
            RoleAssignment.scope == scope,
            RoleAssignment.status == AssignmentStatus.ACTIVE.value,
            _not_expired(now),
        )
    )
    return result.scalars().first()


async def insert_assignment(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    role_key: str,
    scope: str,
    granted_by: str,
    now: datetime,
    expires_at: datetime | None = None,
    reason: str | None = None,
) -> RoleAssignment:
    require_tenant_id(tenant_id)
    # Retire a lapsed active row for the same triple so the partial unique index admits the new grant.
    await session.execute(
        update(RoleAssignment)
        .where(
            tenant_predicate(RoleAssignment, tenant_id),
            RoleAssignment.user_id == user_id,
            RoleAssignment.role_key == role_key,
            RoleAssignment.scope == scope,
            RoleAssignment.status == AssignmentStatus.ACTIVE.value,
            RoleAssignment.expires_at.is_not(None),
            RoleAssignment.expires_at <= now,
        )
        .values(status=AssignmentStatus.EXPIRED.value, updated_by="system", updated_at=now)
    )
    row = RoleAssignment(
        id=uuid4().hex,
        tenant_id=tenant_id,
        user_id=user_id,
        role_key=role_key,
        scope=scope,
        status=AssignmentStatus.ACTIVE.value,
        granted_by=granted_by,
        granted_at=now,
        expires_at=expires_at,
        reason=reason,
        updated_by=granted_by,
        updated_at=now,
    )
    session.add(row)
    await session.flush()
    return row


async def mark_expired(session: AsyncSession, *, tenant_id: str, now: datetime) -> int:
    # Persist lazy expiry for reporting; evaluation never depends on this pass.
    result = await session.execute(
        update(RoleAssignment)
        .where(
            tenant_predicate(RoleAssignment, tenant_id),
            RoleAssignment.status == AssignmentStatus.ACTIVE.value,
            RoleAssignment.expires_at.is_not(None),
            RoleAssignment.expires_at <= now,
        )
        .values(status=AssignmentStatus.EXPIRED.value, updated_by="system", updated_at=now)
    )
    return result.rowcount or 0
