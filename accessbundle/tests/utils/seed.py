from __future__ import annotations

from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from accessbundle.domain.bundle import BundleMetadata, BundleProfile, CachedBundleEntry, UserAccessBundle
from accessbundle.domain.models import Customer, MaintenanceGroup, MaintenanceGroupMember, User
from accessbundle.services.authz.stores import BundleCacheStore


async def seed_user(
    *,
    session: AsyncSession,
    tenant_id: str,
    user_id: str,
    email: str,
    customer_id: str | None = None,
) -> User:
    # Build directory rows for bundle-generation fixtures.
    row = User(id=user_id, tenant_id=tenant_id, email=email, customer_id=customer_id, status="active")
    session.add(row)
    await session.flush()
    return row


async def seed_customer(*, session: AsyncSession, tenant_id: str, customer_id: str, display_name: str) -> Customer:
    row = Customer(id=customer_id, tenant_id=tenant_id, display_name=display_name)
    session.add(row)
    await session.flush()
    return row


async def seed_group_membership(
    *,
    session: AsyncSession,
    tenant_id: str,
    user_id: str,
    group_key: str,
    assigned_at: datetime,
    expires_at: datetime | None = None,
    group_id: str | None = None,
) -> MaintenanceGroup:
    group = MaintenanceGroup(
        id=group_id or uuid4().hex,
        tenant_id=tenant_id,
        key=group_key,
        name=group_key.replace("_", " ").title(),
    )
    session.add(group)
    await session.flush()
    session.add(
        MaintenanceGroupMember(
            id=uuid4().hex,
            tenant_id=tenant_id,
            group_id=group.id,
            user_id=user_id,
            assigned_at=assigned_at,
            expires_at=expires_at,
        )
    )
    await session.flush()
    return group


def sample_bundle(
    *,
    user_id: str,
    generated_at: datetime,
    scope: str = "*",
    ttl_seconds: int = 300,
) -> UserAccessBundle:
    return UserAccessBundle(
        profile=BundleProfile(user_id=user_id, user_email=f"{user_id}@example.com"),
        metadata=BundleMetadata(
            generated_at=generated_at,
            expires_at=generated_at + timedelta(seconds=ttl_seconds),
            ttl_seconds=ttl_seconds,
            scope=scope,
        ),
    ).with_checksum()


async def seed_cached_bundle(
    cache: BundleCacheStore,
    *,
    tenant_id: str,
    user_id: str,
    generated_at: datetime,
    scope: str = "*",
    ttl_seconds: int = 300,
) -> CachedBundleEntry:
    bundle = sample_bundle(user_id=user_id, scope=scope, generated_at=generated_at, ttl_seconds=ttl_seconds)
    return await cache.upsert(
        tenant_id,
        user_id,
        scope,
        bundle,
        checksum=bundle.metadata.checksum,
        generated_at=generated_at,
        expires_at=bundle.metadata.expires_at,
    )
