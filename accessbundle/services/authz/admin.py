from __future__ import annotations

from dataclasses import replace
from datetime import datetime
import logging
from typing import Any, Callable, Iterable

from accessbundle.core.clock import ensure_utc, utc_now
from accessbundle.core.errors import (
    AccessValidationError,
    AssignmentExistsError,
    AssignmentNotFoundError,
    PolicyInUseError,
    PolicyKeyExistsError,
    PolicyNotFoundError,
    RoleInUseError,
    RoleKeyExistsError,
    RoleNotFoundError,
    SystemEntityImmutableError,
)
from accessbundle.domain import events
from accessbundle.domain.access import (
    AssignmentStatus,
    PolicyConditions,
    PolicyRecord,
    RiskLevel,
    RoleAssignmentRecord,
    RoleRecord,
    parse_risk_level,
)
from accessbundle.domain.events import EventPayload, user_actor
from accessbundle.services.authz.matching import validate_permission_patterns, validate_scope
from accessbundle.services.authz.stores import AccessAdminStore, EventSink
from accessbundle.services.bundles.generator import BundleGenerator


logger = logging.getLogger(__name__)


def _conditions(value: PolicyConditions | dict[str, Any] | None) -> PolicyConditions | None:
    if value is None or isinstance(value, PolicyConditions):
        return value
    return PolicyConditions.model_validate(value)


class AccessAdministrationService:
    """Policy, role and assignment writes.

    Every mutation publishes an audit event and then invalidates the affected
    bundles as a separate best-effort step. Assignment changes invalidate the
    user's bundles; policy and role changes invalidate the whole tenant. There
    is no transactional coupling between the write and the invalidation.
    """

    def __init__(
        self,
        store: AccessAdminStore,
        *,
        bundles: BundleGenerator | None = None,
        events: EventSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._bundles = bundles
        self._events = events
        self._clock = clock

    # Policies

    async def get_policy(self, tenant_id: str, key: str) -> PolicyRecord:
        policy = await self._store.get_policy(tenant_id, key)
        if policy is None:
            raise PolicyNotFoundError(f"Policy not found: {key}")
        return policy

    async def create_policy(
        self,
        tenant_id: str,
        *,
        key: str,
        display_name: str,
        allow: Iterable[str] = (),
        deny: Iterable[str] = (),
        risk_level: RiskLevel | str | None = None,
        conditions: PolicyConditions | dict[str, Any] | None = None,
        description: str = "",
        is_system: bool = False,
        actor_id: str | None = None,
    ) -> PolicyRecord:
        if await self._store.get_policy(tenant_id, key) is not None:
            raise PolicyKeyExistsError(f"Policy key already exists: {key}")
        policy = PolicyRecord(
            key=key,
            allow=tuple(validate_permission_patterns(allow)),
            deny=tuple(validate_permission_patterns(deny)),
            risk_level=parse_risk_level(risk_level),
            conditions=_conditions(conditions),
            display_name=display_name,
            description=description,
            is_system=is_system,
        )
        saved = await self._store.save_policy(tenant_id, policy, actor_id=actor_id, now=self._clock())
        await self._publish(events.POLICY_CREATED, tenant_id, "policy", key, "CREATE", actor_id, {"policy": key})
        return saved

    async def update_policy(
        self,
        tenant_id: str,
        key: str,
        *,
        display_name: str | None = None,
        allow: Iterable[str] | None = None,
        deny: Iterable[str] | None = None,
        risk_level: RiskLevel | str | None = None,
        conditions: PolicyConditions | dict[str, Any] | None = None,
        description: str | None = None,
        actor_id: str | None = None,
    ) -> PolicyRecord:
        current = await self.get_policy(tenant_id, key)
        if current.is_system:
            raise SystemEntityImmutableError(f"System policy cannot be modified: {key}")
        changes: dict[str, Any] = {}
        if display_name is not None:
            changes["display_name"] = display_name
        if description is not None:
            changes["description"] = description
        if allow is not None:
            changes["allow"] = tuple(validate_permission_patterns(allow))
        if deny is not None:
            changes["deny"] = tuple(validate_permission_patterns(deny))
        if risk_level is not None:
            changes["risk_level"] = parse_risk_level(risk_level)
        if conditions is not None:
            changes["conditions"] = _conditions(conditions)
        saved = await self._store.save_policy(
            tenant_id, replace(current, **changes), actor_id=actor_id, now=self._clock()
        )
        await self._publish(
            events.POLICY_UPDATED,
            tenant_id,
            "policy",
            key,
            "UPDATE",
            actor_id,
            {"policy": key, "fields": sorted(changes)},
        )
        await self._invalidate_tenant(tenant_id, f"Policy {key} updated", actor_id)
        return saved

    async def delete_policy(self, tenant_id: str, key: str, *, actor_id: str | None = None) -> None:
        current = await self.get_policy(tenant_id, key)
        if current.is_system:
            raise SystemEntityImmutableError(f"System policy cannot be deleted: {key}")
        referencing = await self._store.list_role_keys_referencing_policy(tenant_id, key)
        if referencing:
            raise PolicyInUseError(f"Policy {key} is referenced by roles: {', '.join(sorted(referencing))}")
        await self._store.remove_policy(tenant_id, key)
        await self._publish(events.POLICY_DELETED, tenant_id, "policy", key, "DELETE", actor_id, {"policy": key})
        await self._invalidate_tenant(tenant_id, f"Policy {key} deleted", actor_id)

    # Roles

    async def get_role(self, tenant_id: str, key: str) -> RoleRecord:
        role = await self._store.get_role(tenant_id, key)
        if role is None:
            raise RoleNotFoundError(f"Role not found: {key}")
        return role

    async def _require_policies(self, tenant_id: str, policy_keys: Iterable[str]) -> tuple[str, ...]:
        keys = tuple(dict.fromkeys(policy_keys))
        for policy_key in keys:
            if await self._store.get_policy(tenant_id, policy_key) is None:
                raise PolicyNotFoundError(f"Policy not found: {policy_key}")
        return keys

    async def create_role(
        self,
        tenant_id: str,
        *,
        key: str,
        display_name: str,
        policy_keys: Iterable[str],
        risk_level: RiskLevel | str | None = None,
        description: str = "",
        tags: Iterable[str] = (),
        is_system: bool = False,
        actor_id: str | None = None,
    ) -> RoleRecord:
        if await self._store.get_role(tenant_id, key) is not None:
            raise RoleKeyExistsError(f"Role key already exists: {key}")
        role = RoleRecord(
            key=key,
            policy_keys=await self._require_policies(tenant_id, policy_keys),
            risk_level=parse_risk_level(risk_level),
            display_name=display_name,
            description=description,
            tags=tuple(tags),
            is_system=is_system,
        )
        saved = await self._store.save_role(tenant_id, role, actor_id=actor_id, now=self._clock())
        await self._publish(events.ROLE_CREATED, tenant_id, "role", key, "CREATE", actor_id, {"role": key})
        return saved

    async def update_role(
        self,
        tenant_id: str,
        key: str,
        *,
        display_name: str | None = None,
        policy_keys: Iterable[str] | None = None,
        risk_level: RiskLevel | str | None = None,
        description: str | None = None,
        tags: Iterable[str] | None = None,
        actor_id: str | None = None,
    ) -> RoleRecord:
        current = await self.get_role(tenant_id, key)
        if current.is_system:
            raise SystemEntityImmutableError(f"System role cannot be modified: {key}")
        changes: dict[str, Any] = {}
        if display_name is not None:
            changes["display_name"] = display_name
        if description is not None:
            changes["description"] = description
        if policy_keys is not None:
            changes["policy_keys"] = await self._require_policies(tenant_id, policy_keys)
        if risk_level is not None:
            changes["risk_level"] = parse_risk_level(risk_level)
        if tags is not None:
            changes["tags"] = tuple(tags)
        saved = await self._store.save_role(tenant_id, replace(current, **changes), actor_id=actor_id, now=self._clock())
        await self._publish(
            events.ROLE_UPDATED,
            tenant_id,
            "role",
            key,
            "UPDATE",
            actor_id,
            {"role": key, "fields": sorted(changes)},
        )
        await self._invalidate_tenant(tenant_id, f"Role {key} updated", actor_id)
        return saved

    async def delete_role(self, tenant_id: str, key: str, *, actor_id: str | None = None) -> None:
        current = await self.get_role(tenant_id, key)
        if current.is_system:
            raise SystemEntityImmutableError(f"System role cannot be deleted: {key}")
        # The evaluator relies on never seeing a role key with live assignments but no role.
        active = await self._store.count_active_assignments_for_role(tenant_id, key, now=self._clock())
        if active:
            raise RoleInUseError(f"Role {key} has {active} active assignment(s)")
        await self._store.remove_role(tenant_id, key)
        await self._publish(events.ROLE_DELETED, tenant_id, "role", key, "DELETE", actor_id, {"role": key})
        await self._invalidate_tenant(tenant_id, f"Role {key} deleted", actor_id)

    # Assignments

    async def assign_role(
        self,
        tenant_id: str,
        *,
        user_id: str,
        role_key: str,
        scope: str,
        granted_by: str,
        expires_at: datetime | None = None,
        reason: str | None = None,
    ) -> RoleAssignmentRecord:
        validate_scope(scope)
        now = self._clock()
        if expires_at is not None and ensure_utc(expires_at) <= now:
            raise AccessValidationError("expires_at must be in the future")
        await self.get_role(tenant_id, role_key)
        duplicate = await self._store.find_active_assignment(tenant_id, user_id, role_key, scope, now=now)
        if duplicate is not None:
            raise AssignmentExistsError(
                f"Active assignment already exists for user={user_id} role={role_key} scope={scope}"
            )
        assignment = await self._store.create_assignment(
            tenant_id,
            user_id=user_id,
            role_key=role_key,
            scope=scope,
            granted_by=granted_by,
            now=now,
            expires_at=expires_at,
            reason=reason,
        )
        await self._publish(
            events.ROLE_ASSIGNED,
            tenant_id,
            "role_assignment",
            assignment.id,
            "CREATE",
            granted_by,
            {"user_id": user_id, "role_key": role_key, "scope": scope, "reason": reason},
        )
        await self._invalidate_user(tenant_id, user_id, f"Role {role_key} assigned", granted_by)
        return assignment

    async def revoke_assignment(
        self,
        tenant_id: str,
        assignment_id: str,
        *,
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> RoleAssignmentRecord:
        current = await self._store.get_assignment(tenant_id, assignment_id)
        if current is None:
            raise AssignmentNotFoundError(f"Role assignment not found: {assignment_id}")
        if current.status != AssignmentStatus.ACTIVE:
            return current
        revoked = await self._store.set_assignment_status(
            tenant_id,
            assignment_id,
            status=AssignmentStatus.REVOKED.value,
            updated_by=actor_id,
            now=self._clock(),
        )
        if revoked is None:
            raise AssignmentNotFoundError(f"Role assignment not found: {assignment_id}")
        await self._publish(
            events.ROLE_REVOKED,
            tenant_id,
            "role_assignment",
            assignment_id,
            "REVOKE",
            actor_id,
            {"user_id": current.user_id, "role_key": current.role_key, "scope": current.scope, "reason": reason},
        )
        await self._invalidate_user(tenant_id, current.user_id, f"Role {current.role_key} revoked", actor_id)
        return revoked

    async def list_user_assignments(
        self,
        tenant_id: str,
        user_id: str,
        *,
        active_only: bool = True,
    ) -> list[RoleAssignmentRecord]:
        now = self._clock()
        assignments = await self._store.list_assignments(tenant_id, user_id, now=now, active_only=active_only)
        if active_only:
            return [assignment for assignment in assignments if assignment.is_effective(now)]
        return assignments

    # Follow-up steps

    async def _publish(
        self,
        event_type: events.EventType,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: str | None,
        data: dict[str, Any],
    ) -> None:
        if self._events is None:
            return
        payload: EventPayload = {
            "tenant_id": tenant_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "data": data,
            "actor": user_actor(actor_id),
        }
        try:
            await self._events.publish(event_type, payload)
        except Exception as exc:  # noqa: BLE001 - event sink is best effort
            logger.warning("access_event_publish_failed event_type=%s tenant_id=%s", event_type, tenant_id, exc_info=exc)

    async def _invalidate_user(self, tenant_id: str, user_id: str, reason: str, actor_id: str | None) -> None:
        if self._bundles is None:
            return
        try:
            await self._bundles.invalidate_bundle(tenant_id, user_id, reason, actor_id=actor_id)
        except Exception as exc:  # noqa: BLE001 - stale bundles expire by TTL
            logger.warning(
                "bundle_invalidation_failed tenant_id=%s user_id=%s", tenant_id, user_id, exc_info=exc
            )

    async def _invalidate_tenant(self, tenant_id: str, reason: str, actor_id: str | None) -> None:
        if self._bundles is None:
            return
        try:
            await self._bundles.invalidate_tenant_bundles(tenant_id, reason, actor_id=actor_id)
        except Exception as exc:  # noqa: BLE001 - stale bundles expire by TTL
            logger.warning("bundle_invalidation_failed tenant_id=%s user_id=*", tenant_id, exc_info=exc)
