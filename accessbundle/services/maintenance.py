from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession

from accessbundle.core.clock import utc_now
from accessbundle.core.config import get_settings
from accessbundle.persistence.repos import bundle_cache as bundle_cache_repo
from accessbundle.persistence.repos import role_assignments as assignments_repo


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "prune_expired_bundles",
    "prune_invalidated_bundles",
    "expire_role_assignments",
]


async def prune_expired_bundles(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Expired rows are already cache misses, so reaping them is safe alongside reads.
    count = await bundle_cache_repo.delete_expired(session, now=now or utc_now())
    logger.info("bundle_cache_pruned kind=expired count=%s", count)
    return count


async def prune_invalidated_bundles(
    session: AsyncSession,
    *,
    older_than_days: int | None = None,
    now: datetime | None = None,
) -> int:
    # Keep recently invalidated rows for diagnostics before removing them.
    days = older_than_days if older_than_days is not None else get_settings().bundle_invalidated_retention_days
    cutoff = (now or utc_now()) - timedelta(days=days)
    count = await bundle_cache_repo.delete_invalidated_before(session, cutoff=cutoff)
    logger.info("bundle_cache_pruned kind=invalidated count=%s older_than_days=%s", count, days)
    return count


async def expire_role_assignments(session: AsyncSession, *, tenant_id: str, now: datetime | None = None) -> int:
    # Persist lazy expiry so listings report the effective status.
    count = await assignments_repo.mark_expired(session, tenant_id=tenant_id, now=now or utc_now())
    logger.info("role_assignments_expired tenant_id=%s count=%s", tenant_id, count)
    return count


async def run_maintenance_task(
    session: AsyncSession,
    task: MaintenanceTask,
    *,
    tenant_id: str | None = None,
    older_than_days: int | None = None,
) -> int:
    # Route scheduled maintenance through one entry point; callers own the commit.
    if task == "prune_expired_bundles":
        return await prune_expired_bundles(session)
    if task == "prune_invalidated_bundles":
        return await prune_invalidated_bundles(session, older_than_days=older_than_days)
    if task == "expire_role_assignments":
        if not tenant_id:
            raise ValueError("expire_role_assignments requires a tenant_id")
        return await expire_role_assignments(session, tenant_id=tenant_id)
    raise ValueError(f"Unknown maintenance task: {task}")
