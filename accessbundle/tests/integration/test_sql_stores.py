from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from accessbundle.core.errors import AssignmentExistsError
from accessbundle.domain import events
from accessbundle.domain.models import RoleAssignment
from accessbundle.persistence.repos.audit import list_events
from accessbundle.persistence.stores import SqlAccessStore, SqlBundleCache, SqlDirectory
from accessbundle.services.audit import AuditEventSink
from accessbundle.services.authz.admin import AccessAdministrationService
from accessbundle.services.authz.evaluator import AuthorizationEvaluator
from accessbundle.services.bundles.generator import BundleGenerator
from accessbundle.tests.utils.seed import seed_customer, seed_group_membership, seed_user
from accessbundle.tests.utils.stores import BASE_TIME, FakeClock


TENANT = "t-sql"
USER = "u-sql"


class SqlHarness:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory
        self.clock = FakeClock()
        self.store = SqlAccessStore(session_factory)
        self.cache = SqlBundleCache(session_factory)
        directory = SqlDirectory(session_factory)
        sink = AuditEventSink(session_factory)
        self.evaluator = AuthorizationEvaluator(self.store, clock=self.clock)
        self.bundles = BundleGenerator(
            evaluator=self.evaluator,
            users=directory,
            customers=directory,
            groups=directory,
            cache=self.cache,
            events=sink,
            clock=self.clock,
        )
        self.admin = AccessAdministrationService(self.store, bundles=self.bundles, events=sink, clock=self.clock)

    async def seed_directory(self) -> None:
        async with self.session_factory() as session:
            await seed_customer(session=session, tenant_id=TENANT, customer_id="cust-1", display_name="Acme Facilities")
            await seed_user(
                session=session, tenant_id=TENANT, user_id=USER, email="tech@example.com", customer_id="cust-1"
            )
            # The earliest membership has lapsed, so the next one becomes primary.
            await seed_group_membership(
                session=session,
                tenant_id=TENANT,
                user_id=USER,
                group_key="night_shift",
                assigned_at=BASE_TIME - timedelta(days=30),
                expires_at=BASE_TIME - timedelta(hours=1),
            )
            await seed_group_membership(
                session=session,
                tenant_id=TENANT,
                user_id=USER,
                group_key="north_crew",
                assigned_at=BASE_TIME - timedelta(days=10),
            )
            await seed_group_membership(
                session=session,
                tenant_id=TENANT,
                user_id=USER,
                group_key="south_crew",
                assigned_at=BASE_TIME - timedelta(days=2),
            )
            await session.commit()

    async def seed_access(self) -> str:
        await self.admin.create_policy(
            TENANT,
            key="chiller_ops",
            display_name="Chiller operations",
            allow=["hvac.chiller.plant_room:read", "hvac.chiller.plant_room:update", "alarms.rules.read"],
            deny=["hvac.chiller.plant_room:delete"],
            conditions={"requiresMFA": True},
            actor_id="admin-1",
        )
        await self.admin.create_role(
            TENANT, key="technician", display_name="Technician", policy_keys=["chiller_ops"], actor_id="admin-1"
        )
        assignment = await self.admin.assign_role(
            TENANT, user_id=USER, role_key="technician", scope="customer:cust-1", granted_by="admin-1"
        )
        return assignment.id


@pytest.mark.asyncio
async def test_bundle_generation_over_sql_stores(session_factory) -> None:
    harness = SqlHarness(session_factory)
    await harness.seed_directory()
    await harness.seed_access()

    bundle = await harness.bundles.generate_bundle(TENANT, USER)
    assert bundle.profile.customer_name == "Acme Facilities"
    assert bundle.profile.maintenance_group is not None
    assert bundle.profile.maintenance_group.key == "north_crew"

    location = bundle.domain_policies["hvac"]["chiller"]["plant_room"]
    assert location.actions == ["read", "update"]
    assert location.conditions is not None and location.conditions.requires_mfa is True
    assert bundle.permissions.denied == ["hvac.chiller.plant_room:delete"]
    assert "alarms.rules.read" in bundle.permissions.allowed
    assert bundle.metadata.source_roles == ["technician"]
    assert bundle.metadata.source_policies == ["chiller_ops"]
    assert bundle.metadata.checksum.startswith("sha256:")

    # The second read is served from the cache row.
    harness.clock.advance(seconds=30)
    cached = await harness.bundles.generate_bundle(TENANT, USER)
    assert cached.metadata.generated_at == bundle.metadata.generated_at
    assert cached.metadata.checksum == bundle.metadata.checksum

    assert await harness.bundles.check_domain_permission(TENANT, USER, "hvac", "chiller", "plant_room", "update")
    assert not await harness.bundles.check_domain_permission(TENANT, USER, "hvac", "chiller", "plant_room", "delete")


@pytest.mark.asyncio
async def test_evaluator_reads_sql_assignments(session_factory) -> None:
    harness = SqlHarness(session_factory)
    await harness.seed_access()

    allowed = await harness.evaluator.evaluate(TENANT, USER, "alarms.rules.read", "customer:cust-1/site-9")
    assert allowed.allowed is True
    assert allowed.matched_policy == "chiller_ops"

    denied = await harness.evaluator.evaluate(TENANT, USER, "hvac.chiller.plant_room:delete", "customer:cust-1")
    assert denied.allowed is False

    outside = await harness.evaluator.evaluate(TENANT, USER, "alarms.rules.read", "customer:cust-2")
    assert outside.allowed is False


@pytest.mark.asyncio
async def test_revocation_invalidates_cached_bundle(session_factory) -> None:
    harness = SqlHarness(session_factory)
    await harness.seed_directory()
    assignment_id = await harness.seed_access()

    first = await harness.bundles.generate_bundle(TENANT, USER)
    assert first.permissions.allowed

    await harness.admin.revoke_assignment(TENANT, assignment_id, actor_id="admin-1", reason="contract ended")
    assert await harness.cache.get(TENANT, USER, "*", now=harness.clock()) is None

    rebuilt = await harness.bundles.generate_bundle(TENANT, USER)
    assert rebuilt.permissions.allowed == []
    assert rebuilt.domain_policies == {}
    assert rebuilt.metadata.checksum != first.metadata.checksum

    assignments = await harness.admin.list_user_assignments(TENANT, USER, active_only=False)
    assert [item.status.value for item in assignments] == ["revoked"]


@pytest.mark.asyncio
async def test_policy_and_role_updates_round_trip(session_factory) -> None:
    harness = SqlHarness(session_factory)
    await harness.seed_access()

    updated = await harness.admin.update_policy(TENANT, "chiller_ops", allow=["hvac.*.*"], risk_level="high")
    assert updated.allow == ("hvac.*.*",)
    assert updated.deny == ("hvac.chiller.plant_room:delete",)
    assert updated.conditions is not None and updated.conditions.requires_mfa is True

    reloaded = await harness.admin.get_policy(TENANT, "chiller_ops")
    assert reloaded.risk_level.value == "high"
    assert await harness.store.list_role_keys_referencing_policy(TENANT, "chiller_ops") == ["technician"]
    assert await harness.store.count_active_assignments_for_role(TENANT, "technician", now=harness.clock()) == 1


@pytest.mark.asyncio
async def test_mutations_are_recorded_as_audit_events(session_factory) -> None:
    harness = SqlHarness(session_factory)
    await harness.seed_access()

    async with session_factory() as session:
        rows = await list_events(session, tenant_id=TENANT)
        assigned = await list_events(session, tenant_id=TENANT, event_type=events.ROLE_ASSIGNED)

    recorded = {row.event_type for row in rows}
    assert {events.POLICY_CREATED, events.ROLE_CREATED, events.ROLE_ASSIGNED, events.BUNDLE_INVALIDATED} <= recorded
    assert len(assigned) == 1
    assert assigned[0].actor_id == "admin-1"
    assert assigned[0].resource_type == "role_assignment"
    assert assigned[0].metadata_json["data"]["role_key"] == "technician"


@pytest.mark.asyncio
async def test_audit_sink_can_be_disabled(session_factory, monkeypatch) -> None:
    monkeypatch.setenv("AUDIT_EVENTS_ENABLED", "false")
    harness = SqlHarness(session_factory)
    await harness.seed_access()

    async with session_factory() as session:
        assert await list_events(session, tenant_id=TENANT) == []


@pytest.mark.asyncio
async def test_racing_grants_for_one_triple_keep_a_single_active_row(session_factory, monkeypatch) -> None:
    harness = SqlHarness(session_factory)
    await harness.seed_directory()
    await harness.seed_access()

    # Both writers pass the duplicate pre-check; the database still refuses the second row.
    async def _no_duplicate(*args, **kwargs):
        return None

    monkeypatch.setattr(harness.store, "find_active_assignment", _no_duplicate)
    with pytest.raises(AssignmentExistsError):
        await harness.admin.assign_role(
            TENANT, user_id=USER, role_key="technician", scope="customer:cust-1", granted_by="admin-2"
        )

    async with session_factory() as session:
        statuses = (await session.execute(select(RoleAssignment.status))).scalars().all()
    assert statuses == ["active"]


@pytest.mark.asyncio
async def test_lapsed_assignment_does_not_block_a_new_grant(session_factory) -> None:
    store = SqlAccessStore(session_factory)
    first = await store.create_assignment(
        TENANT,
        user_id=USER,
        role_key="technician",
        scope="tenant:*",
        granted_by="admin-1",
        now=BASE_TIME,
        expires_at=BASE_TIME + timedelta(hours=1),
    )
    second = await store.create_assignment(
        TENANT,
        user_id=USER,
        role_key="technician",
        scope="tenant:*",
        granted_by="admin-1",
        now=BASE_TIME + timedelta(hours=2),
    )
    assert second.id != first.id

    async with session_factory() as session:
        rows = (await session.execute(select(RoleAssignment.id, RoleAssignment.status))).all()
    assert {row.id: row.status for row in rows} == {first.id: "expired", second.id: "active"}
