from __future__ import annotations

from datetime import datetime
from typing import Protocol

from accessbundle.domain.access import (
    CustomerRecord,
    MaintenanceGroupRecord,
    PolicyRecord,
    RoleAssignmentRecord,
    RoleRecord,
    UserRecord,
)
from accessbundle.domain.bundle import CachedBundleEntry, UserAccessBundle
from accessbundle.domain.events import EventPayload


# The evaluator and generator depend only on these interfaces; swapping the
# SQL adapters for another store never touches evaluation logic.


class RoleAssignmentReader(Protocol):
    async def list_active_assignments(
        self, tenant_id: str, user_id: str, *, now: datetime
    ) -> list[RoleAssignmentRecord]: ...


class RoleReader(Protocol):
    async def get_role(self, tenant_id: str, role_key: str) -> RoleRecord | None: ...


class PolicyReader(Protocol):
    async def get_policy(self, tenant_id: str, policy_key: str) -> PolicyRecord | None: ...


class UserDirectory(Protocol):
    async def get_user(self, tenant_id: str, user_id: str) -> UserRecord | None: ...


class CustomerDirectory(Protocol):
    async def get_customer(self, tenant_id: str, customer_id: str) -> CustomerRecord | None: ...


class MaintenanceGroupDirectory(Protocol):
    async def get_user_primary_group(
        self, tenant_id: str, user_id: str, *, now: datetime
    ) -> MaintenanceGroupRecord | None: ...


class BundleCacheStore(Protocol):
    async def get(
        self, tenant_id: str, user_id: str, scope: str, *, now: datetime
    ) -> CachedBundleEntry | None: ...

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
    ) -> CachedBundleEntry: ...

    async def invalidate(
        self, tenant_id: str, user_id: str, *, now: datetime, reason: str | None = None
    ) -> int: ...

    async def invalidate_by_scope(
        self, tenant_id: str, user_id: str, scope: str, *, now: datetime, reason: str | None = None
    ) -> bool: ...

    async def invalidate_all_for_tenant(
        self, tenant_id: str, *, now: datetime, reason: str | None = None
    ) -> int: ...


class EventSink(Protocol):
    async def publish(self, event_type: str, payload: EventPayload) -> None: ...


class AccessStore(RoleAssignmentReader, RoleReader, PolicyReader, Protocol):
    """Read surface the evaluator needs."""


class AccessAdminStore(AccessStore, Protocol):
    """Write surface used by the policy/role administration service."""

    async def list_assignments(
        self, tenant_id: str, user_id: str, *, now: datetime, active_only: bool = True
    ) -> list[RoleAssignmentRecord]: ...

    async def get_assignment(self, tenant_id: str, assignment_id: str) -> RoleAssignmentRecord | None: ...

    async def find_active_assignment(
        self, tenant_id: str, user_id: str, role_key: str, scope: str, *, now: datetime
    ) -> RoleAssignmentRecord | None: ...

    async def count_active_assignments_for_role(self, tenant_id: str, role_key: str, *, now: datetime) -> int: ...

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
    ) -> RoleAssignmentRecord: ...

    async def set_assignment_status(
        self, tenant_id: str, assignment_id: str, *, status: str, updated_by: str | None, now: datetime
    ) -> RoleAssignmentRecord | None: ...

    async def list_role_keys_referencing_policy(self, tenant_id: str, policy_key: str) -> list[str]: ...

    async def save_policy(
        self, tenant_id: str, policy: PolicyRecord, *, actor_id: str | None, now: datetime
    ) -> PolicyRecord: ...

    async def remove_policy(self, tenant_id: str, policy_key: str) -> bool: ...

    async def save_role(
        self, tenant_id: str, role: RoleRecord, *, actor_id: str | None, now: datetime
    ) -> RoleRecord: ...

    async def remove_role(self, tenant_id: str, role_key: str) -> bool: ...
