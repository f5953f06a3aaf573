"""Domain permission catalog.

Permissions are identified by ``(domain, equipment, location, action)`` and
encoded as ``domain.equipment.location:action``. Rows with a NULL tenant id
are global: every tenant sees them, and they never collide with a
tenant-scoped row of the same tuple. Listings merge both in tuple order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from accessbundle.core.clock import utc_now
from accessbundle.core.config import get_settings
from accessbundle.core.errors import (
    DomainPermissionExistsError,
    DomainPermissionNotFoundError,
    InvalidPermissionPatternError,
    SystemEntityImmutableError,
)
from accessbundle.domain.access import RiskLevel, parse_risk_level
from accessbundle.domain.events import (
    DOMAIN_PERMISSION_CREATED,
    DOMAIN_PERMISSION_DELETED,
    DOMAIN_PERMISSION_UPDATED,
)
from accessbundle.domain.models import DomainPermission
from accessbundle.domain.permissions import DomainPermissionKey, is_valid_segment
from accessbundle.persistence.repos import domain_permissions as permissions_repo
from accessbundle.services.audit import record_event


logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


@dataclass(frozen=True)
class DomainPermissionInput:
    key: DomainPermissionKey
    display_name: str | None = None
    description: str | None = None
    risk_level: RiskLevel | str | None = None


@dataclass(frozen=True)
class PermissionPage:
    items: list[DomainPermission]
    offset: int
    limit: int
    has_more: bool


@dataclass
class BulkCreateResult:
    created: list[DomainPermission] = field(default_factory=list)
    skipped: list[DomainPermissionKey] = field(default_factory=list)


def permission_key(row: DomainPermission) -> DomainPermissionKey:
    return DomainPermissionKey(row.domain, row.equipment, row.location, row.action)


def _validate_key(key: DomainPermissionKey) -> None:
    for segment in key.as_tuple():
        if not is_valid_segment(segment):
            raise InvalidPermissionPatternError(
                f"Invalid domain permission segment {segment!r} in {key.encode()!r}"
            )


async def _audit(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    actor_id: str | None,
    event_type: str,
    row: DomainPermission,
    data: dict | None = None,
) -> None:
    if not get_settings().audit_events_enabled:
        return
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_type="user" if actor_id else "system",
        actor_id=actor_id,
        event_type=event_type,
        resource_type="domain_permission",
        resource_id=row.id,
        metadata={"permission": permission_key(row).encode(), **(data or {})},
    )


async def create_permission(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    key: DomainPermissionKey,
    display_name: str | None = None,
    description: str | None = None,
    risk_level: RiskLevel | str | None = None,
    actor_id: str | None = None,
) -> DomainPermission:
    _validate_key(key)
    level = parse_risk_level(risk_level)
    existing = await permissions_repo.get_by_components(session, tenant_id=tenant_id, key=key)
    if existing is not None:
        raise DomainPermissionExistsError(f"Domain permission already exists: {key.encode()}")
    try:
        # The savepoint keeps the outer transaction usable when the insert loses a race.
        async with session.begin_nested():
            row = await permissions_repo.insert_permission(
                session,
                tenant_id=tenant_id,
                key=key,
                display_name=display_name,
                description=description,
                risk_level=level.value,
                now=utc_now(),
            )
    except IntegrityError as exc:
        # A concurrent writer won the race for the same tuple.
        raise DomainPermissionExistsError(f"Domain permission already exists: {key.encode()}") from exc
    await _audit(session, tenant_id=tenant_id, actor_id=actor_id, event_type=DOMAIN_PERMISSION_CREATED, row=row)
    logger.info("domain_permission_created tenant_id=%s permission=%s", tenant_id, key.encode())
    return row


async def bulk_create_permissions(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    items: Iterable[DomainPermissionInput],
    actor_id: str | None = None,
) -> BulkCreateResult:
    # Duplicates are skipped; any other failure aborts the batch.
    result = BulkCreateResult()
    for item in items:
        try:
            row = await create_permission(
                session,
                tenant_id=tenant_id,
                key=item.key,
                display_name=item.display_name,
                description=item.description,
                risk_level=item.risk_level,
                actor_id=actor_id,
            )
        except DomainPermissionExistsError:
            result.skipped.append(item.key)
            continue
        result.created.append(row)
    logger.info(
        "domain_permissions_bulk_created tenant_id=%s created=%s skipped=%s",
        tenant_id,
        len(result.created),
        len(result.skipped),
    )
    return result


async def get_permission(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    permission_id: str,
) -> DomainPermission:
    row = await permissions_repo.get_visible(session, tenant_id=tenant_id, permission_id=permission_id)
    if row is None:
        raise DomainPermissionNotFoundError(f"Domain permission not found: {permission_id}")
    return row


async def _get_owned(session: AsyncSession, *, tenant_id: str | None, permission_id: str) -> DomainPermission:
    row = await get_permission(session, tenant_id=tenant_id, permission_id=permission_id)
    # Tenants may read global rows but only platform callers (tenant None) change them.
    if row.tenant_id != tenant_id:
        raise SystemEntityImmutableError(f"Global domain permission cannot be modified: {permission_id}")
    return row


async def update_permission(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    permission_id: str,
    display_name: str | None = None,
    description: str | None = None,
    risk_level: RiskLevel | str | None = None,
    is_active: bool | None = None,
    actor_id: str | None = None,
) -> DomainPermission:
    row = await _get_owned(session, tenant_id=tenant_id, permission_id=permission_id)
    changes: dict[str, object] = {}
    if display_name is not None:
        row.display_name = display_name
        changes["display_name"] = display_name
    if description is not None:
        row.description = description
        changes["description"] = description
    if risk_level is not None:
        row.risk_level = parse_risk_level(risk_level).value
        changes["risk_level"] = row.risk_level
    if is_active is not None:
        row.is_active = is_active
        changes["is_active"] = is_active
    row.updated_at = utc_now()
    await session.flush()
    await _audit(
        session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type=DOMAIN_PERMISSION_UPDATED,
        row=row,
        data={"changes": changes},
    )
    return row


async def delete_permission(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    permission_id: str,
    actor_id: str | None = None,
) -> None:
    row = await _get_owned(session, tenant_id=tenant_id, permission_id=permission_id)
    await _audit(session, tenant_id=tenant_id, actor_id=actor_id, event_type=DOMAIN_PERMISSION_DELETED, row=row)
    await permissions_repo.delete_permission(session, permission_id=row.id)
    logger.info("domain_permission_deleted tenant_id=%s permission_id=%s", tenant_id, permission_id)


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
    limit: int = DEFAULT_PAGE_SIZE,
) -> PermissionPage:
    # Fetch one extra row to report has_more without a count query.
    rows = await permissions_repo.list_permissions(
        session,
        tenant_id=tenant_id,
        domain=domain,
        equipment=equipment,
        location=location,
        action=action,
        is_active=is_active,
        offset=offset,
        limit=limit + 1,
    )
    return PermissionPage(items=rows[:limit], offset=offset, limit=limit, has_more=len(rows) > limit)


async def list_active(session: AsyncSession, *, tenant_id: str | None) -> list[DomainPermission]:
    return await permissions_repo.list_permissions(session, tenant_id=tenant_id, is_active=True)


async def list_domains(session: AsyncSession, *, tenant_id: str | None) -> list[str]:
    return await permissions_repo.list_distinct_values(session, tenant_id=tenant_id, column="domain")


async def list_equipment(session: AsyncSession, *, tenant_id: str | None, domain: str) -> list[str]:
    return await permissions_repo.list_distinct_values(
        session, tenant_id=tenant_id, column="equipment", domain=domain
    )


async def list_locations(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    domain: str,
    equipment: str,
) -> list[str]:
    return await permissions_repo.list_distinct_values(
        session, tenant_id=tenant_id, column="location", domain=domain, equipment=equipment
    )
