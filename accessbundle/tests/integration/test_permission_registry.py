from __future__ import annotations

import pytest
from sqlalchemy import select

from accessbundle.core.errors import (
    DomainPermissionExistsError,
    DomainPermissionNotFoundError,
    InvalidPermissionPatternError,
    SystemEntityImmutableError,
)
from accessbundle.domain.events import DOMAIN_PERMISSION_CREATED, DOMAIN_PERMISSION_UPDATED
from accessbundle.domain.models import AuditEvent, DomainPermission
from accessbundle.domain.permissions import DomainPermissionKey
from accessbundle.services import permission_registry as registry
from accessbundle.services.permission_registry import DomainPermissionInput, permission_key


TENANT = "t-registry"


def _key(value: str) -> DomainPermissionKey:
    decoded = DomainPermissionKey.decode(value)
    assert decoded is not None
    return decoded


@pytest.mark.asyncio
async def test_create_rejects_duplicates_per_owner(session_factory) -> None:
    async with session_factory() as session:
        await registry.create_permission(session, tenant_id=TENANT, key=_key("hvac.chiller.room:read"))
        with pytest.raises(DomainPermissionExistsError):
            await registry.create_permission(session, tenant_id=TENANT, key=_key("hvac.chiller.room:read"))
        # A global row with the same tuple does not collide with the tenant row.
        await registry.create_permission(session, tenant_id=None, key=_key("hvac.chiller.room:read"))
        with pytest.raises(DomainPermissionExistsError):
            await registry.create_permission(session, tenant_id=None, key=_key("hvac.chiller.room:read"))
        await session.commit()


@pytest.mark.asyncio
async def test_create_validates_segments(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(InvalidPermissionPatternError):
            await registry.create_permission(
                session, tenant_id=TENANT, key=DomainPermissionKey("hvac", "chil ler", "room", "read")
            )


@pytest.mark.asyncio
async def test_listing_merges_tenant_and_global_rows_in_tuple_order(session_factory) -> None:
    async with session_factory() as session:
        for value in ("hvac.chiller.room:update", "alarms.panel.lobby:read"):
            await registry.create_permission(session, tenant_id=TENANT, key=_key(value))
        for value in ("hvac.boiler.basement:read", "hvac.chiller.room:read"):
            await registry.create_permission(session, tenant_id=None, key=_key(value))
        await registry.create_permission(session, tenant_id="t-other", key=_key("aaa.x.y:z"))
        await session.commit()

        page = await registry.list_permissions(session, tenant_id=TENANT)
        assert [permission_key(row).encode() for row in page.items] == [
            "alarms.panel.lobby:read",
            "hvac.boiler.basement:read",
            "hvac.chiller.room:read",
            "hvac.chiller.room:update",
        ]
        assert page.has_more is False

        filtered = await registry.list_permissions(session, tenant_id=TENANT, domain="hvac", equipment="chiller")
        assert [row.action for row in filtered.items] == ["read", "update"]

        first = await registry.list_permissions(session, tenant_id=TENANT, limit=3)
        second = await registry.list_permissions(session, tenant_id=TENANT, limit=3, offset=3)
        assert first.has_more is True
        assert len(second.items) == 1 and second.has_more is False


@pytest.mark.asyncio
async def test_catalog_helpers_only_surface_active_rows(session_factory) -> None:
    async with session_factory() as session:
        result = await registry.bulk_create_permissions(
            session,
            tenant_id=TENANT,
            items=[
                DomainPermissionInput(key=_key("hvac.chiller.room:read"), risk_level="low"),
                DomainPermissionInput(key=_key("hvac.chiller.roof:read")),
                DomainPermissionInput(key=_key("hvac.boiler.basement:update"), risk_level="high"),
                DomainPermissionInput(key=_key("hvac.chiller.room:read")),
            ],
        )
        assert len(result.created) == 3
        assert result.skipped == [_key("hvac.chiller.room:read")]

        roof = next(row for row in result.created if row.location == "roof")
        await registry.update_permission(session, tenant_id=TENANT, permission_id=roof.id, is_active=False)
        await session.commit()

        assert await registry.list_domains(session, tenant_id=TENANT) == ["hvac"]
        assert await registry.list_equipment(session, tenant_id=TENANT, domain="hvac") == ["boiler", "chiller"]
        assert await registry.list_locations(session, tenant_id=TENANT, domain="hvac", equipment="chiller") == ["room"]
        assert len(await registry.list_active(session, tenant_id=TENANT)) == 2

        events = (await session.execute(select(AuditEvent.event_type))).scalars().all()
        assert events.count(DOMAIN_PERMISSION_CREATED) == 3
        assert events.count(DOMAIN_PERMISSION_UPDATED) == 1


@pytest.mark.asyncio
async def test_update_get_and_delete(session_factory) -> None:
    async with session_factory() as session:
        row = await registry.create_permission(session, tenant_id=TENANT, key=_key("hvac.chiller.room:read"))
        global_row = await registry.create_permission(session, tenant_id=None, key=_key("alarms.panel.lobby:read"))
        await session.commit()

        updated = await registry.update_permission(
            session, tenant_id=TENANT, permission_id=row.id, display_name="Read chiller", risk_level="medium"
        )
        assert updated.display_name == "Read chiller"
        assert updated.risk_level == "medium"

        # Tenants can see global rows but cannot change them.
        assert (await registry.get_permission(session, tenant_id=TENANT, permission_id=global_row.id)).id == global_row.id
        with pytest.raises(SystemEntityImmutableError):
            await registry.delete_permission(session, tenant_id=TENANT, permission_id=global_row.id)

        await registry.delete_permission(session, tenant_id=TENANT, permission_id=row.id)
        await session.commit()
        with pytest.raises(DomainPermissionNotFoundError):
            await registry.get_permission(session, tenant_id=TENANT, permission_id=row.id)
        with pytest.raises(DomainPermissionNotFoundError):
            await registry.get_permission(session, tenant_id="t-other", permission_id="missing")


@pytest.mark.asyncio
async def test_bulk_create_survives_a_lost_insert_race(session_factory, monkeypatch) -> None:
    async with session_factory() as session:
        await registry.create_permission(session, tenant_id=TENANT, key=_key("hvac.chiller.room:read"))
        await session.commit()

    # Another writer committed the row after this caller's existence check.
    async def _not_found(*args, **kwargs):
        return None

    monkeypatch.setattr(registry.permissions_repo, "get_by_components", _not_found)
    async with session_factory() as session:
        result = await registry.bulk_create_permissions(
            session,
            tenant_id=TENANT,
            items=[
                DomainPermissionInput(key=_key("hvac.chiller.room:read")),
                DomainPermissionInput(key=_key("hvac.chiller.roof:read")),
            ],
        )
        await session.commit()

    assert result.skipped == [_key("hvac.chiller.room:read")]
    assert [row.location for row in result.created] == ["roof"]

    monkeypatch.undo()
    async with session_factory() as session:
        locations = (await session.execute(select(DomainPermission.location))).scalars().all()
    assert sorted(locations) == ["roof", "room"]
