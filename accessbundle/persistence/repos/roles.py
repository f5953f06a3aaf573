from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from accessbundle.domain.models import AccessRole
from accessbundle.persistence.guards import require_tenant_id, tenant_predicate


async def get_role(session: AsyncSession, *, tenant_id: str, role_id: str) -> AccessRole | None:
    result = await session.execute(
        select(AccessRole).where(AccessRole.id == role_id, tenant_predicate(AccessRole, tenant_id))
    )
    return result.scalar_one_or_none()


async def get_role_by_key(session: AsyncSession, *, tenant_id: str, key: str) -> AccessRole | None:
    result = await session.execute(
        select(AccessRole).where(AccessRole.key == key, tenant_predicate(AccessRole, tenant_id))
    )
    return result.scalar_one_or_none()


async def list_roles(
    session: AsyncSession,
    *,
    tenant_id: str,
    offset: int = 0,
    limit: int | None = None,
) -> list[AccessRole]:
    stmt = select(AccessRole).where(tenant_predicate(AccessRole, tenant_id)).order_by(AccessRole.key).offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_roles_referencing_policy(
    session: AsyncSession,
    *,
    tenant_id: str,
    policy_key: str,
) -> list[AccessRole]:
    # JSON containment differs per dialect; filter in Python over the tenant's roles.
    roles = await list_roles(session, tenant_id=tenant_id)
    return [role for role in roles if policy_key in (role.policy_keys_json or [])]


async def insert_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    key: str,
    display_name: str,
    description: str,
    policy_keys: list[str],
    tags: list[str],
    risk_level: str,
    is_system: bool,
    created_by: str | None,
    now: datetime,
) -> AccessRole:
    require_tenant_id(tenant_id)
    row = AccessRole(
        id=uuid4().hex,
        tenant_id=tenant_id,
        key=key,
        display_name=display_name,
        description=description,
        policy_keys_json=list(policy_keys),
        tags_json=list(tags),
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


async def delete_role(session: AsyncSession, *, tenant_id: str, role_id: str) -> int:
    result = await session.execute(
        delete(AccessRole).where(AccessRole.id == role_id, tenant_predicate(AccessRole, tenant_id))
    )
    return result.rowcount or 0
