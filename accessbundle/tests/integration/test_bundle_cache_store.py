from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from accessbundle.core.clock import ensure_utc
from accessbundle.domain.models import UserBundleCache
from accessbundle.persistence.repos import bundle_cache as bundle_cache_repo
from accessbundle.persistence.stores import SqlBundleCache
from accessbundle.tests.utils.seed import seed_cached_bundle
from accessbundle.tests.utils.stores import BASE_TIME


TENANT = "t-cache"


async def _put(cache: SqlBundleCache, user_id: str = "u-1", scope: str = "*"):
    return await seed_cached_bundle(cache, tenant_id=TENANT, user_id=user_id, scope=scope, generated_at=BASE_TIME)


@pytest.mark.asyncio
async def test_get_returns_valid_entries_only(session_factory) -> None:
    cache = SqlBundleCache(session_factory)
    entry = await _put(cache)
    assert entry.is_valid(BASE_TIME)

    hit = await cache.get(TENANT, "u-1", "*", now=BASE_TIME + timedelta(seconds=10))
    assert hit is not None
    assert hit.checksum == entry.checksum
    assert hit.bundle.profile.user_id == "u-1"
    assert hit.expires_at == BASE_TIME + timedelta(seconds=300)

    assert await cache.get(TENANT, "u-1", "*", now=BASE_TIME + timedelta(seconds=300)) is None
    assert await cache.get(TENANT, "u-1", "customer:c1", now=BASE_TIME) is None
    assert await cache.get("t-other", "u-1", "*", now=BASE_TIME) is None


@pytest.mark.asyncio
async def test_invalidate_hides_rows_and_upsert_revives_them(session_factory) -> None:
    cache = SqlBundleCache(session_factory)
    await _put(cache, scope="*")
    await _put(cache, scope="customer:c1")

    assert await cache.invalidate(TENANT, "u-1", now=BASE_TIME, reason="role change") == 2
    assert await cache.get(TENANT, "u-1", "*", now=BASE_TIME) is None
    # Already invalidated rows are not counted again.
    assert await cache.invalidate(TENANT, "u-1", now=BASE_TIME) == 0

    revived = await _put(cache, scope="*")
    assert revived.invalidated_at is None
    assert revived.invalidation_reason is None
    assert await cache.get(TENANT, "u-1", "*", now=BASE_TIME) is not None

    async with session_factory() as session:
        total = await session.scalar(select(func.count()).select_from(UserBundleCache))
        reason = await session.scalar(
            select(UserBundleCache.invalidation_reason).where(UserBundleCache.scope == "customer:c1")
        )
    assert total == 2
    assert reason == "role change"


@pytest.mark.asyncio
async def test_scope_and_tenant_invalidation(session_factory) -> None:
    cache = SqlBundleCache(session_factory)
    await _put(cache, "u-1", "*")
    await _put(cache, "u-1", "customer:c1")
    await _put(cache, "u-2", "*")

    assert await cache.invalidate_by_scope(TENANT, "u-1", "customer:c1", now=BASE_TIME) is True
    assert await cache.invalidate_by_scope(TENANT, "u-1", "customer:c1", now=BASE_TIME) is False
    assert await cache.invalidate_by_scope(TENANT, "u-1", "site:none", now=BASE_TIME) is False
    assert await cache.get(TENANT, "u-1", "*", now=BASE_TIME) is not None

    assert await cache.invalidate_all_for_tenant(TENANT, now=BASE_TIME) == 2
    async with session_factory() as session:
        reasons = (await session.execute(select(UserBundleCache.invalidation_reason))).scalars().all()
    assert sorted(reasons) == ["Manual invalidation", "Tenant-wide invalidation", "Tenant-wide invalidation"]


@pytest.mark.asyncio
async def test_delete_purges_rows(session_factory) -> None:
    cache = SqlBundleCache(session_factory)
    await _put(cache, "u-1", "*")
    await _put(cache, "u-1", "customer:c1")
    assert await cache.delete(TENANT, "u-1", "customer:c1") == 1
    assert await cache.delete(TENANT, "u-1") == 1
    assert await cache.get(TENANT, "u-1", "*", now=BASE_TIME) is None


@pytest.mark.asyncio
async def test_concurrent_upserts_for_one_key_leave_a_single_row(session_factory) -> None:
    cache = SqlBundleCache(session_factory)
    first, second = await asyncio.gather(
        seed_cached_bundle(cache, tenant_id=TENANT, user_id="u-1", generated_at=BASE_TIME),
        seed_cached_bundle(cache, tenant_id=TENANT, user_id="u-1", generated_at=BASE_TIME + timedelta(seconds=1)),
    )

    async with session_factory() as session:
        rows = (await session.execute(select(UserBundleCache))).scalars().all()
    assert len(rows) == 1
    assert ensure_utc(rows[0].generated_at) in {first.generated_at, second.generated_at}
    assert await cache.get(TENANT, "u-1", "*", now=BASE_TIME + timedelta(seconds=2)) is not None


@pytest.mark.asyncio
async def test_last_upsert_wins(session_factory) -> None:
    cache = SqlBundleCache(session_factory)
    await seed_cached_bundle(cache, tenant_id=TENANT, user_id="u-1", generated_at=BASE_TIME)
    latest = await seed_cached_bundle(
        cache, tenant_id=TENANT, user_id="u-1", generated_at=BASE_TIME + timedelta(seconds=5)
    )
    assert latest.generated_at == BASE_TIME + timedelta(seconds=5)

    hit = await cache.get(TENANT, "u-1", "*", now=BASE_TIME + timedelta(seconds=6))
    assert hit is not None
    assert hit.expires_at == BASE_TIME + timedelta(seconds=305)


@pytest.mark.asyncio
async def test_upsert_after_cleanup_reinserts(session_factory) -> None:
    cache = SqlBundleCache(session_factory)
    await _put(cache)
    await cache.invalidate(TENANT, "u-1", now=BASE_TIME)
    async with session_factory() as session:
        assert await bundle_cache_repo.delete_invalidated_before(session, cutoff=BASE_TIME + timedelta(days=1)) == 1
        await session.commit()

    revived = await _put(cache)
    assert revived.invalidated_at is None
    assert await cache.get(TENANT, "u-1", "*", now=BASE_TIME) is not None
