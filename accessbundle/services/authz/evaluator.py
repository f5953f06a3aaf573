from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable, Iterable

from accessbundle.core.clock import utc_now
from accessbundle.domain.access import (
    AuthorizationDecision,
    BatchAuthorizationResult,
    EffectivePermission,
    PolicyRecord,
    RoleAssignmentRecord,
    RoleRecord,
)
from accessbundle.domain.permissions import WILDCARD
from accessbundle.services.authz.matching import matches_any_pattern, scope_matches
from accessbundle.services.authz.stores import AccessStore


logger = logging.getLogger(__name__)

REASON_NO_ASSIGNMENTS = "no active role assignments"
REASON_NO_MATCH = "no matching permission found"


@dataclass(frozen=True)
class Grant:
    # One (assignment, role, policy) path reachable at the requested scope.
    assignment: RoleAssignmentRecord
    role: RoleRecord
    policy: PolicyRecord


def _is_unscoped(scope: str | None) -> bool:
    return scope is None or scope == WILDCARD


def resolve_effective_permissions(grants: Iterable[Grant]) -> list[EffectivePermission]:
    ordered = sorted(grants, key=lambda grant: (grant.role.key, grant.policy.key, grant.assignment.id))
    deny_patterns = [pattern for grant in ordered for pattern in grant.policy.deny]

    entries: dict[str, EffectivePermission] = {}
    for grant in ordered:
        for permission in grant.policy.allow:
            if permission in entries:
                continue
            entries[permission] = EffectivePermission(
                permission=permission,
                allowed=not matches_any_pattern(permission, deny_patterns),
                granted_by_role=grant.role.key,
                granted_by_policy=grant.policy.key,
                conditions=grant.policy.conditions,
            )

    # Deny always wins, whichever policy or role carried it.
    denied: set[str] = set()
    for grant in ordered:
        for permission in grant.policy.deny:
            if permission in denied:
                continue
            denied.add(permission)
            entries[permission] = EffectivePermission(
                permission=permission,
                allowed=False,
                granted_by_role=grant.role.key,
                granted_by_policy=grant.policy.key,
                explicitly_denied=True,
                conditions=grant.policy.conditions,
            )
    return [entries[key] for key in sorted(entries)]


class AuthorizationEvaluator:
    """Resolve role/policy grants into allow/deny decisions.

    Evaluation is side-effect-free: it only reads the injected store. Deny is
    global, so every reachable deny list is checked before any allow list.
    Roles or policies referenced by an assignment but missing from the store
    are skipped.
    """

    def __init__(self, store: AccessStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock

    async def _active_assignments(self, tenant_id: str, user_id: str, now: datetime) -> list[RoleAssignmentRecord]:
        assignments = await self._store.list_active_assignments(tenant_id, user_id, now=now)
        # Lazy expiry: a stale status column never grants past expires_at.
        return [assignment for assignment in assignments if assignment.is_effective(now)]

    async def _resolve_grants(
        self,
        tenant_id: str,
        assignments: Iterable[RoleAssignmentRecord],
    ) -> list[Grant]:
        roles: dict[str, RoleRecord | None] = {}
        policies: dict[str, PolicyRecord | None] = {}
        grants: list[Grant] = []
        for assignment in assignments:
            if assignment.role_key not in roles:
                roles[assignment.role_key] = await self._store.get_role(tenant_id, assignment.role_key)
            role = roles[assignment.role_key]
            if role is None:
                logger.debug(
                    "authz_role_missing tenant_id=%s role_key=%s assignment_id=%s",
                    tenant_id,
                    assignment.role_key,
                    assignment.id,
                )
                continue
            for policy_key in role.policy_keys:
                if policy_key not in policies:
                    policies[policy_key] = await self._store.get_policy(tenant_id, policy_key)
                policy = policies[policy_key]
                if policy is None:
                    logger.debug(
                        "authz_policy_missing tenant_id=%s role_key=%s policy_key=%s",
                        tenant_id,
                        role.key,
                        policy_key,
                    )
                    continue
                grants.append(Grant(assignment=assignment, role=role, policy=policy))
        return grants

    async def grants_for(
        self,
        tenant_id: str,
        user_id: str,
        scope: str | None,
        *,
        now: datetime | None = None,
    ) -> list[Grant]:
        resolved_now = now or self._clock()
        assignments = await self._active_assignments(tenant_id, user_id, resolved_now)
        if not _is_unscoped(scope):
            assignments = [a for a in assignments if scope_matches(a.scope, scope)]
        return await self._resolve_grants(tenant_id, assignments)

    async def evaluate(
        self,
        tenant_id: str,
        user_id: str,
        permission: str,
        resource_scope: str,
    ) -> AuthorizationDecision:
        now = self._clock()
        assignments = await self._active_assignments(tenant_id, user_id, now)
        if not assignments:
            return AuthorizationDecision(allowed=False, reason=REASON_NO_ASSIGNMENTS, evaluated_at=now)

        matching = [a for a in assignments if scope_matches(a.scope, resource_scope)]
        grants = await self._resolve_grants(tenant_id, matching)
        return self._decide(grants, permission, now)

    def _decide(self, grants: list[Grant], permission: str, now: datetime) -> AuthorizationDecision:
        for grant in grants:
            if matches_any_pattern(permission, grant.policy.deny):
                return AuthorizationDecision(
                    allowed=False,
                    reason=f"denied by policy {grant.policy.key}",
                    matched_policy=grant.policy.key,
                    matched_role=grant.role.key,
                    evaluated_at=now,
                )
        for grant in grants:
            if matches_any_pattern(permission, grant.policy.allow):
                return AuthorizationDecision(
                    allowed=True,
                    reason=f"allowed by policy {grant.policy.key}",
                    matched_policy=grant.policy.key,
                    matched_role=grant.role.key,
                    evaluated_at=now,
                )
        return AuthorizationDecision(allowed=False, reason=REASON_NO_MATCH, evaluated_at=now)

    async def evaluate_batch(
        self,
        tenant_id: str,
        user_id: str,
        permissions: Iterable[str],
        resource_scope: str,
    ) -> BatchAuthorizationResult:
        # Resolve grants once and reuse them for every permission in the batch.
        now = self._clock()
        requested = list(dict.fromkeys(permissions))
        assignments = await self._active_assignments(tenant_id, user_id, now)
        if not assignments:
            decision = AuthorizationDecision(allowed=False, reason=REASON_NO_ASSIGNMENTS, evaluated_at=now)
            return BatchAuthorizationResult(results={permission: decision for permission in requested})

        matching = [a for a in assignments if scope_matches(a.scope, resource_scope)]
        grants = await self._resolve_grants(tenant_id, matching)
        result = BatchAuthorizationResult(
            results={permission: self._decide(grants, permission, now) for permission in requested}
        )
        logger.debug(
            "authz_batch_evaluated tenant_id=%s user_id=%s total=%s allowed=%s",
            tenant_id,
            user_id,
            result.total,
            result.allowed,
        )
        return result

    async def get_effective_permissions(
        self,
        tenant_id: str,
        user_id: str,
        scope: str | None = None,
    ) -> list[EffectivePermission]:
        """Enumerate every pattern reachable through active, scope-matching assignments.

        ``scope`` of ``None`` or ``"*"`` applies no scope filter. Explicit deny
        entries are reported with ``explicitly_denied=True`` and override any
        allow of the same string. An allow entry covered by a reachable deny
        pattern resolves to ``allowed=False`` so the list agrees with
        :meth:`evaluate`. Provenance is the first granting (role, policy) pair
        in role-key then policy-key order.
        """
        grants = await self.grants_for(tenant_id, user_id, scope)
        return resolve_effective_permissions(grants)
