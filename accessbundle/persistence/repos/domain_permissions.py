from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from accessbundle.domain.models import DomainPermission
from accessbundle.domain.permissions import DomainPermissionKey
from accessbundle.persistence.guards import tenant_or_global_predicate


_TUPLE_ORDER = (
    DomainPermission.domain,
    DomainPermission.equipment,
    DomainPermission.location,
    DomainPermission.action,
)


def _owner_predicate(tenant_id: str | None) -> object:
    # Exact ownership: tenant rows and global rows never collide.
    if tenant_id is None:
        return DomainPermission.tenant_id.is_(None)
    return DomainPermission.tenant_id == tenant_id


def _filters(
    *,
    domain: str | None,
    equipment: str | None,
    location: str | None,
    action: str | None,
    is_active: bool | None,
) -> list[Any]:
    clauses: list[Any] = []
    if domain:
        clauses.append(DomainPermission.domain == domain)
    if equipment:
        clauses.append(DomainPermission.equipment == equipment)
    if location:
        clauses.append(DomainPermission.location == location)
    if action:
        clauses.append(DomainPermission.action == action)
    if is_active is not None:
        clauses.append(DomainPermission.is_active.is_(is_active))
    return clauses


async def get_by_components(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    key: DomainPermissionKey,
) -> DomainPermission | None:
    result = await session.execute(
        select(DomainPermission).where(
            _owner_predicate(tenant_id),
            DomainPermission.domain == key.domain,
            DomainPermission.equipment == key.equipment,
            DomainPermission.location == key.location,
            DomainPermission.action == key.action,
        )
    )
    return result.scalars().first()


async def get_visible(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    permission_id: str,
) -> DomainPermission | None:
    # Tenants can read their own rows plus global rows.
    result = await session.execute(
        select(DomainPermission).where(
            DomainPermission.id == permission_id,
            tenant_or_global_predicate(DomainPermission, tenant_id),
        )
    )
    return result.scalar_one_or_none()


async def insert_permission(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    key: DomainPermissionKey,
    display_name: str | None,
    description: str | None,
    risk_level: str,
    now: datetime,
) -> DomainPermission:
    row = DomainPermission(
        id=uuid4().hex,
        tenant_id=tenant_id,
        domain=key.domain,
        equipment=key.equipment,
        location=key.location,
        action=key.action,
        display_name=display_name,
        description=description,
        risk_level=risk_level,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    await session.flush()
    return row


async def delete_permission(session: AsyncSession, *, permission_id: str) -> int:
    result = await session.execute(delete(DomainPermission).where(DomainPermission.id == permission_id))
    return result.rowcount or 0


async def list_permissions(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    domain: str | None = None,
    equipment: str | None = None,
    location: str | None = None,
    action: str | None = None,
    is_active: bool | None = None,
    offset: int = 0,
    limit: int | None = None,
) -> list[DomainPermission]:
    # Merge tenant-scoped and global rows in tuple order.
    stmt = (
        select(DomainPermission)
        .where(
            and_(
                tenant_or_global_predicate(DomainPermission, tenant_id),
                *_filters(
                    domain=domain,
                    equipment=equipment,
                    location=location,
                    action=action,
                    is_active=is_active,
                ),
            )
        )
        .order_by(*_TUPLE_ORDER, DomainPermission.tenant_id.is_(None), DomainPermission.id)
        .offset(offset)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_distinct_values(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    column: str,
    domain: str | None = None,
    equipment: str | None = None,
) -> list[str]:
    # Catalog browsing helpers only surface active permissions.
    target = getattr(DomainPermission, column)
    stmt = (
        select(target)
        .distinct()
        .where(
            tenant_or_global_predicate(DomainPermission, tenant_id),
            *_filters(domain=domain, equipment=equipment, location=None, action=None, is_active=True),
        )
        .order_by(target)
    )
    result = await session.execute(stmt)
    return [value for value in result.scalars().all()]
