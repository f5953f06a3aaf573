from __future__ import annotations

from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessbundle.core.clock import ensure_utc
from accessbundle.core.errors import AssignmentExistsError
from accessbundle.domain.access import (
    AssignmentStatus,
    CustomerRecord,
    MaintenanceGroupRecord,
    PolicyConditions,
    PolicyRecord,
    RiskLevel,
    RoleAssignmentRecord,
    RoleRecord,
    UserRecord,
)
from accessbundle.domain.bundle import CachedBundleEntry, UserAccessBundle
from accessbundle.domain.models import AccessPolicy, AccessRole, RoleAssignment, UserBundleCache
from accessbundle.persistence.db import get_session_factory
from accessbundle.persistence.repos import bundle_cache as bundle_cache_repo
from accessbundle.persistence.repos import directory as directory_repo
from accessbundle.persistence.repos import policies as policies_repo
from accessbundle.persistence.repos import role_assignments as assignments_repo
from accessbundle.persistence.repos import roles as roles_repo


def policy_record(row: AccessPolicy) -> PolicyRecord:
    return PolicyRecord(
        key=row.key,
        allow=tuple(row.allow_json or ()),
        deny=tuple(row.deny_json or ()),
        risk_level=RiskLevel(row.risk_level),
        conditions=PolicyConditions.model_validate(row.conditions_json) if row.conditions_json else None,
        display_name=row.display_name,
        description=row.description or "",
        is_system=row.is_system,
        id=row.id,
    )


def role_record(row: AccessRole) -> RoleRecord:
    return RoleRecord(
        key=row.key,
        policy_keys=tuple(row.policy_keys_json or ()),
        risk_level=RiskLevel(row.risk_level),
        display_name=row.display_name,
        description=row.description or "",
        tags=tuple(row.tags_json or ()),
        is_system=row.is_system,
        id=row.id,
    )


def assignment_record(row: RoleAssignment) -> RoleAssignmentRecord:
    return RoleAssignmentRecord(
        id=row.id,
        user_id=row.user_id,
        role_key=row.role_key,
        scope=row.scope,
        status=AssignmentStatus(row.status),
        granted_by=row.granted_by,
        granted_at=ensure_utc(row.granted_at),
        expires_at=ensure_utc(row.expires_at),
        reason=row.reason,
    )


def cache_entry(row: UserBundleCache) -> CachedBundleEntry:
    return CachedBundleEntry(
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        scope=row.scope,
        bundle=UserAccessBundle.from_json(row.bundle_json),
        checksum=row.checksum,
        generated_at=ensure_utc(row.generated_at),
        expires_at=ensure_utc(row.expires_at),
        invalidated_at=ensure_utc(row.invalidated_at),
        invalidation_reason=row.invalidation_reason,
    )


class _SessionBound:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        # Each call opens its own short-lived session.
        self._session_factory = session_factory or get_session_factory()


class SqlAccessStore(_SessionBound):
    """Role, policy and assignment store backed by the relational schema."""

    async def list_active_assignments(
        self, tenant_id: str, user_id: str, *, now: datetime
    ) -> list[RoleAssignmentRecord]:
        return await self.list_assignments(tenant_id, user_id, now=now, active_only=True)

    async def list_assignments(
        self, tenant_id: str, user_id: str, *, now: datetime, active_only: bool = True
    ) -> list[RoleAssignmentRecord]:
        async with self._session_factory() as session:
            rows = await assignments_repo.list_for_user(
                session, tenant_id=tenant_id, user_id=user_id, now=now, active_only=active_only
            )
        return [assignment_record(row) for row in rows]

    async def get_assignment(self, tenant_id: str, assignment_id: str) -> RoleAssignmentRecord | None:
        async with self._session_factory() as session:
            row = await assignments_repo.get_assignment(session, tenant_id=tenant_id, assignment_id=assignment_id)
        return assignment_record(row) if row is not None else None

    async def find_active_assignment(
        self, tenant_id: str, user_id: str, role_key: str, scope: str, *, now: datetime
    ) -> RoleAssignmentRecord | None:
        async with self._session_factory() as session:
            row = await assignments_repo.find_active(
                session, tenant_id=tenant_id, user_id=user_id, role_key=role_key, scope=scope, now=now
            )
        return assignment_record(row) if row is not None else None

    async def count_active_assignments_for_role(self, tenant_id: str, role_key: str, *, now: datetime) -> int:
        async with self._session_factory() as session:
            rows = await assignments_repo.list_active_for_role(
                session, tenant_id=tenant_id, role_key=role_key, now=now
            )
        return len(rows)

    async def create_assignment(
        self,
        tenant_id: str,
        *,
        user_id: str,
        role_key: str,
        scope: str,
        granted_by: str,
        now: datetime,
        expires_at: datetime | None = None,
        reason: str | None = None,
    ) -> RoleAssignmentRecord:
        async with self._session_factory() as session:
            try:
                row = await assignments_repo.insert_assignment(
                    session,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    role_key=role_key,
                    scope=scope,
                    granted_by=granted_by,
                    now=now,
                    expires_at=expires_at,
                    reason=reason,
                )
                await session.commit()
            except IntegrityError as exc:
                # A concurrent grant won the partial unique index on the active triple.
                await session.rollback()
                raise AssignmentExistsError(
                    f"Active assignment already exists for user={user_id} role={role_key} scope={scope}"
                ) from exc
            return assignment_record(row)

    async def set_assignment_status(
        self, tenant_id: str, assignment_id: str, *, status: str, updated_by: str | None, now: datetime
    ) -> RoleAssignmentRecord | None:
        async with self._session_factory() as session:
            row = await assignments_repo.get_assignment(session, tenant_id=tenant_id, assignment_id=assignment_id)
            if row is None:
                return None
            row.status = status
            row.updated_by = updated_by
            row.updated_at = now
            await session.commit()
            return assignment_record(row)

    async def expire_assignments(self, tenant_id: str, *, now: datetime) -> int:
        async with self._session_factory() as session:
            count = await assignments_repo.mark_expired(session, tenant_id=tenant_id, now=now)
            await session.commit()
        return count

    async def get_role(self, tenant_id: str, role_key: str) -> RoleRecord | None:
        async with self._session_factory() as session:
            row = await roles_repo.get_role_by_key(session, tenant_id=tenant_id, key=role_key)
        return role_record(row) if row is not None else None

    async def list_roles(self, tenant_id: str) -> list[RoleRecord]:
        async with self._session_factory() as session:
            rows = await roles_repo.list_roles(session, tenant_id=tenant_id)
        return [role_record(row) for row in rows]

    async def list_role_keys_referencing_policy(self, tenant_id: str, policy_key: str) -> list[str]:
        async with self._session_factory() as session:
            rows = await roles_repo.list_roles_referencing_policy(
                session, tenant_id=tenant_id, policy_key=policy_key
            )
        return [row.key for row in rows]

    async def save_role(
        self, tenant_id: str, role: RoleRecord, *, actor_id: str | None, now: datetime
    ) -> RoleRecord:
        async with self._session_factory() as session:
            row = await roles_repo.get_role_by_key(session, tenant_id=tenant_id, key=role.key)
            if row is None:
                row = await roles_repo.insert_role(
                    session,
                    tenant_id=tenant_id,
                    key=role.key,
                    display_name=role.display_name,
                    description=role.description,
                    policy_keys=list(role.policy_keys),
                    tags=list(role.tags),
                    risk_level=role.risk_level.value,
                    is_system=role.is_system,
                    created_by=actor_id,
                    now=now,
                )
            else:
                row.display_name = role.display_name
                row.description = role.description
                row.policy_keys_json = list(role.policy_keys)
                row.tags_json = list(role.tags)
                row.risk_level = role.risk_level.value
                row.updated_by = actor_id
                row.updated_at = now
            await session.commit()
            return role_record(row)

    async def remove_role(self, tenant_id: str, role_key: str) -> bool:
        async with self._session_factory() as session:
            row = await roles_repo.get_role_by_key(session, tenant_id=tenant_id, key=role_key)
            if row is None:
                return False
            deleted = await roles_repo.delete_role(session, tenant_id=tenant_id, role_id=row.id)
            await session.commit()
        return deleted > 0

    async def get_policy(self, tenant_id: str, policy_key: str) -> PolicyRecord | None:
        async with self._session_factory() as session:
            row = await policies_repo.get_policy_by_key(session, tenant_id=tenant_id, key=policy_key)
        return policy_record(row) if row is not None else None

    async def list_policies(self, tenant_id: str, *, offset: int = 0, limit: int = 100) -> list[PolicyRecord]:
        async with self._session_factory() as session:
            rows = await policies_repo.list_policies(session, tenant_id=tenant_id, offset=offset, limit=limit)
        return [policy_record(row) for row in rows]

    async def save_policy(
        self, tenant_id: str, policy: PolicyRecord, *, actor_id: str | None, now: datetime
    ) -> PolicyRecord:
        conditions = policy.conditions.to_json() if policy.conditions is not None else None
        async with self._session_factory() as session:
            row = await policies_repo.get_policy_by_key(session, tenant_id=tenant_id, key=policy.key)
            if row is None:
                row = await policies_repo.insert_policy(
                    session,
                    tenant_id=tenant_id,
                    key=policy.key,
                    display_name=policy.display_name,
                    description=policy.description,
                    allow=list(policy.allow),
                    deny=list(policy.deny),
                    conditions=conditions,
                    risk_level=policy.risk_level.value,
                    is_system=policy.is_system,
                    created_by=actor_id,
                    now=now,
                )
            else:
                row.display_name = policy.display_name
                row.description = policy.description
                row.allow_json = list(policy.allow)
                row.deny_json = list(policy.deny)
                row.conditions_json = conditions
                row.risk_level = policy.risk_level.value
                row.updated_by = actor_id
                row.updated_at = now
            await session.commit()
            return policy_record(row)

    async def remove_policy(self, tenant_id: str, policy_key: str) -> bool:
        async with self._session_factory() as session:
            row = await policies_repo.get_policy_by_key(session, tenant_id=tenant_id, key=policy_key)
            if row is None:
                return False
            deleted = await policies_repo.delete_policy(session, tenant_id=tenant_id, policy_id=row.id)
            await session.commit()
        return deleted > 0


class SqlDirectory(_SessionBound):
    """User, customer and maintenance-group lookups."""

    async def get_user(self, tenant_id: str, user_id: str) -> UserRecord | None:
        async with self._session_factory() as session:
            row = await directory_repo.get_user(session, tenant_id=tenant_id, user_id=user_id)
        if row is None:
            return None
        return UserRecord(id=row.id, email=row.email, customer_id=row.customer_id)

    async def get_customer(self, tenant_id: str, customer_id: str) -> CustomerRecord | None:
        async with self._session_factory() as session:
            row = await directory_repo.get_customer(session, tenant_id=tenant_id, customer_id=customer_id)
        if row is None:
            return None
        return CustomerRecord(id=row.id, display_name=row.display_name)

    async def get_user_primary_group(
        self, tenant_id: str, user_id: str, *, now: datetime
    ) -> MaintenanceGroupRecord | None:
        async with self._session_factory() as session:
            row = await directory_repo.get_primary_maintenance_group(
                session, tenant_id=tenant_id, user_id=user_id, now=now
            )
        if row is None:
            return None
        return MaintenanceGroupRecord(id=row.id, key=row.key, name=row.name)


class SqlBundleCache(_SessionBound):
    """Bundle cache keyed by (tenant, user, scope) in ``user_bundle_cache``."""

    async def get(self, tenant_id: str, user_id: str, scope: str, *, now: datetime) -> CachedBundleEntry | None:
        async with self._session_factory() as session:
            row = await bundle_cache_repo.get_valid_entry(
                session, tenant_id=tenant_id, user_id=user_id, scope=scope, now=now
            )
        return cache_entry(row) if row is not None else None

    async def upsert(
        self,
        tenant_id: str,
        user_id: str,
        scope: str,
        bundle: UserAccessBundle,
        *,
        checksum: str,
        generated_at: datetime,
        expires_at: datetime,
    ) -> CachedBundleEntry:
        async with self._session_factory() as session:
            row = await bundle_cache_repo.upsert_entry(
                session,
                tenant_id=tenant_id,
                user_id=user_id,
                scope=scope,
                bundle_json=bundle.to_json(),
                checksum=checksum,
                generated_at=generated_at,
                expires_at=expires_at,
            )
            await session.commit()
            return cache_entry(row)

    async def invalidate(self, tenant_id: str, user_id: str, *, now: datetime, reason: str | None = None) -> int:
        async with self._session_factory() as session:
            count = await bundle_cache_repo.invalidate_user(
                session, tenant_id=tenant_id, user_id=user_id, now=now, reason=reason
            )
            await session.commit()
        return count

    async def invalidate_by_scope(
        self, tenant_id: str, user_id: str, scope: str, *, now: datetime, reason: str | None = None
    ) -> bool:
        async with self._session_factory() as session:
            affected = await bundle_cache_repo.invalidate_scope(
                session, tenant_id=tenant_id, user_id=user_id, scope=scope, now=now, reason=reason
            )
            await session.commit()
        return affected

    async def invalidate_all_for_tenant(self, tenant_id: str, *, now: datetime, reason: str | None = None) -> int:
        async with self._session_factory() as session:
            count = await bundle_cache_repo.invalidate_tenant(session, tenant_id=tenant_id, now=now, reason=reason)
            await session.commit()
        return count

    async def delete(self, tenant_id: str, user_id: str, scope: str | None = None) -> int:
        # Hard delete for data-subject purges.
        async with self._session_factory() as session:
            count = await bundle_cache_repo.delete_entries(
                session, tenant_id=tenant_id, user_id=user_id, scope=scope
            )
            await session.commit()
        return count
