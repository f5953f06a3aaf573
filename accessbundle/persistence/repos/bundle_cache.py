from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from accessbundle.domain.models import UserBundleCache
from accessbundle.persistence.guards import require_tenant_id, tenant_predicate


DEFAULT_INVALIDATION_REASON = "Manual invalidation"
TENANT_INVALIDATION_REASON = "Tenant-wide invalidation"


def _entry_key(tenant_id: str, user_id: str, scope: str) -> list[Any]:
    return [
        tenant_predicate(UserBundleCache, tenant_id),
        UserBundleCache.user_id == user_id,
        UserBundleCache.scope == scope,
    ]


async def get_valid_entry(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    scope: str,
    now: datetime,
) -> UserBundleCache | None:
    # A row is a hit only while it is neither invalidated nor expired.
    result = await session.execute(
        select(UserBundleCache).where(
            *_entry_key(tenant_id, user_id, scope),
            UserBundleCache.invalidated_at.is_(None),
            UserBundleCache.expires_at > now,
        )
    )
    return result.scalar_one_or_none()


def _insert_for(session: AsyncSession) -> Any:
    # ON CONFLICT is dialect-specific; sqlite backs the test databases.
    if session.bind is not None and session.bind.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


async def upsert_entry(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    scope: str,
    bundle_json: dict[str, Any],
    checksum: str,
    generated_at: datetime,
    expires_at: datetime,
) -> UserBundleCache:
    # Single-statement upsert: concurrent writers for one key never conflict, the last one wins.
    require_tenant_id(tenant_id)
    values = {
        "bundle_json": bundle_json,
        "checksum": checksum,
        "generated_at": generated_at,
        "expires_at": expires_at,
        "invalidated_at": None,
        "invalidation_reason": None,
        "updated_at": generated_at,
    }
    stmt = _insert_for(session)(UserBundleCache).values(
        id=uuid4().hex,
        tenant_id=tenant_id,
        user_id=user_id,
        scope=scope,
        created_at=generated_at,
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UserBundleCache.tenant_id, UserBundleCache.user_id, UserBundleCache.scope],
        set_={name: stmt.excluded[name] for name in values},
    )
    await session.execute(stmt)
    result = await session.execute(
        select(UserBundleCache)
        .where(*_entry_key(tenant_id, user_id, scope))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def invalidate_user(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    now: datetime,
    reason: str | None = None,
) -> int:
    # Already-invalidated rows keep their original timestamp and reason.
    result = await session.execute(
        update(UserBundleCache)
        .where(
            tenant_predicate(UserBundleCache, tenant_id),
            UserBundleCache.user_id == user_id,
            UserBundleCache.invalidated_at.is_(None),
        )
        .values(
            invalidated_at=now,
            invalidation_reason=reason or DEFAULT_INVALIDATION_REASON,
            updated_at=now,
        )
    )
    return result.rowcount or 0


async def invalidate_scope(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    scope: str,
    now: datetime,
    reason: str | None = None,
) -> bool:
    result = await session.execute(
        update(UserBundleCache)
        .where(*_entry_key(tenant_id, user_id, scope), UserBundleCache.invalidated_at.is_(None))
        .values(
            invalidated_at=now,
            invalidation_reason=reason or DEFAULT_INVALIDATION_REASON,
            updated_at=now,
        )
    )
    return (result.rowcount or 0) > 0


async def invalidate_tenant(
    session: AsyncSession,
    *,
    tenant_id: str,
    now: datetime,
    reason: str | None = None,
) -> int:
    result = await session.execute(
        update(UserBundleCache)
        .where(tenant_predicate(UserBundleCache, tenant_id), UserBundleCache.invalidated_at.is_(None))
        .values(
            invalidated_at=now,
            invalidation_reason=reason or TENANT_INVALIDATION_REASON,
            updated_at=now,
        )
    )
    return result.rowcount or 0


async def delete_entries(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    scope: str | None = None,
) -> int:
    stmt = delete(UserBundleCache).where(
        tenant_predicate(UserBundleCache, tenant_id),
        UserBundleCache.user_id == user_id,
    )
    if scope is not None:
        stmt = stmt.where(UserBundleCache.scope == scope)
    result = await session.execute(stmt)
    return result.rowcount or 0


async def delete_expired(session: AsyncSession, *, now: datetime) -> int:
    # Only reap rows that reads already treat as misses.
    result = await session.execute(delete(UserBundleCache).where(UserBundleCache.expires_at <= now))
    return result.rowcount or 0


async def delete_invalidated_before(session: AsyncSession, *, cutoff: datetime) -> int:
    result = await session.execute(
        delete(UserBundleCache).where(
            UserBundleCache.invalidated_at.is_not(None),
            UserBundleCache.invalidated_at < cutoff,
        )
    )
    return result.rowcount or 0
