from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from accessbundle.domain.models import AccessPolicy
from accessbundle.persistence.guards import require_tenant_id, tenant_predicate


async def get_policy(
    session: AsyncSession,
    *,
    tenant_id: str,
    policy_id: str,
) -> AccessPolicy | None:
    result = await session.execute(
        select(AccessPolicy).where(AccessPolicy.id == policy_id, tenant_predicate(AccessPolicy, tenant_id))
    )
    return result.scalar_one_or_none()


async def get_policy_by_key(
    session: AsyncSession,
    *,
    tenant_id: str,
    key: str,
) -> AccessPolicy | None:
    result = await session.execute(
        select(AccessPolicy).where(AccessPolicy.key == key, tenant_predicate(AccessPolicy, tenant_id))
    )
    return result.scalar_one_or_none()


async def list_policies(
    session: AsyncSession,
    *,
    tenant_id: str,
    offset: int = 0,
    limit: int = 100,
) -> list[AccessPolicy]:
    result = await session.execute(
        select(AccessPolicy)
        .where(tenant_predicate(AccessPolicy, tenant_id))
        .order_by(AccessPolicy.key)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def insert_policy(
    session: AsyncSession,
    *,
    tenant_id: str,
    key: str,
    display_name: str,
    description: str,
    allow: list[str],
    deny: list[str],
    conditions: dict[str, Any] | None,
    risk_level: str,
    is_system: bool,
    created_by: str | None,
    now: datetime,
) -> AccessPolicy:
    require_tenant_id(tenant_id)
    row = AccessPolicy(
        id=uuid4().hex,
        tenant_id=tenant_id,
        key=key,
        display_name=display_name,
        description=description,
        allow_json=list(allow),
        deny_json=list(deny),
        conditions_json=conditions,
        risk_level=risk_level,
        is_system=is_system,
        created_by=created_by,
        updated_by=created_by,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    await session.flush()
    return row


async def delete_policy(session: AsyncSession, *, tenant_id: str, policy_id: str) -> int:
    result = await session.execute(
        delete(AccessPolicy).where(AccessPolicy.id == policy_id, tenant_predicate(AccessPolicy, tenant_id))
    )
    return result.rowcount or 0
