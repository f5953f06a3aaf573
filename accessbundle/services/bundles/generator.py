from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Callable, Iterable

from accessbundle.core.clock import utc_now
from accessbundle.core.config import Settings, get_settings
from accessbundle.core.errors import UserNotFoundError
from accessbundle.domain.access import EffectivePermission
from accessbundle.domain.bundle import (
    BundleMetadata,
    BundlePermissions,
    BundleProfile,
    DomainPolicies,
    FeatureAccess,
    FeaturePolicy,
    LocationActions,
    MaintenanceGroupSummary,
    UserAccessBundle,
)
from accessbundle.domain.events import BUNDLE_INVALIDATED, EventActor, EventPayload, user_actor
from accessbundle.domain.permissions import DomainPermissionKey
from accessbundle.services.authz.evaluator import AuthorizationEvaluator, resolve_effective_permissions
from accessbundle.services.authz.stores import (
    BundleCacheStore,
    CustomerDirectory,
    EventSink,
    MaintenanceGroupDirectory,
    UserDirectory,
)
from accessbundle.services.bundles.features import FeatureTable, get_feature_table


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BundleOptions:
    # None falls back to the configured default scope / TTL.
    scope: str | None = None
    use_cache: bool = True
    ttl_seconds: int | None = None
    include_domains: bool = True
    include_features: bool = True
    include_flat: bool = True


@dataclass(frozen=True)
class FeatureAccessResult:
    allowed: bool
    access: FeatureAccess


def build_domain_policies(permissions: Iterable[EffectivePermission]) -> DomainPolicies:
    """Fold allowed device/resource permissions into the nested domain tree.

    Strings in neither the ``domain.equipment.location:action`` shape nor the
    legacy all-dots shape are left out of this view; they still appear in the
    flat permission lists.
    """
    actions: dict[tuple[str, str, str], set[str]] = {}
    conditions: dict[tuple[str, str, str], Any] = {}
    for effective in permissions:
        if not effective.allowed:
            continue
        key = DomainPermissionKey.decode(effective.permission)
        if key is None:
            key = DomainPermissionKey.decode_legacy(effective.permission)
        if key is None:
            continue
        node = (key.domain, key.equipment, key.location)
        actions.setdefault(node, set()).add(key.action)
        if effective.conditions is not None and node not in conditions:
            conditions[node] = effective.conditions

    tree: DomainPolicies = {}
    for domain, equipment, location in sorted(actions):
        node = (domain, equipment, location)
        tree.setdefault(domain, {}).setdefault(equipment, {})[location] = LocationActions(
            actions=sorted(actions[node]),
            conditions=conditions.get(node),
        )
    return tree


class BundleGenerator:
    """Compile a user's effective permissions into a cached ``UserAccessBundle``.

    Reads go through the bundle cache first. Event publishing is best effort:
    a failing sink is logged and never aborts generation or invalidation.
    """

    def __init__(
        self,
        *,
        evaluator: AuthorizationEvaluator,
        users: UserDirectory,
        customers: CustomerDirectory,
        groups: MaintenanceGroupDirectory,
        cache: BundleCacheStore,
        events: EventSink | None = None,
        feature_table: FeatureTable | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._evaluator = evaluator
        self._users = users
        self._customers = customers
        self._groups = groups
        self._cache = cache
        self._events = events
        self._settings = settings or get_settings()
        self._feature_table = feature_table or get_feature_table(self._settings)
        self._clock = clock

    def _resolve_options(self, options: BundleOptions | None) -> tuple[BundleOptions, str, int]:
        resolved = options or BundleOptions()
        scope = resolved.scope or self._settings.bundle_default_scope
        ttl_seconds = resolved.ttl_seconds if resolved.ttl_seconds is not None else self._settings.bundle_default_ttl_s
        return resolved, scope, ttl_seconds

    async def generate_bundle(
        self,
        tenant_id: str,
        user_id: str,
        options: BundleOptions | None = None,
    ) -> UserAccessBundle:
        resolved, scope, ttl_seconds = self._resolve_options(options)

        if resolved.use_cache:
            cached = await self._cache.get(tenant_id, user_id, scope, now=self._clock())
            if cached is not None:
                logger.debug("bundle_cache_hit tenant_id=%s user_id=%s scope=%s", tenant_id, user_id, scope)
                return cached.bundle
            logger.debug("bundle_cache_miss tenant_id=%s user_id=%s scope=%s", tenant_id, user_id, scope)

        bundle = await self._build_bundle(tenant_id, user_id, scope, ttl_seconds, resolved)

        if resolved.use_cache:
            await self._cache.upsert(
                tenant_id,
                user_id,
                scope,
                bundle,
                checksum=bundle.metadata.checksum,
                generated_at=bundle.metadata.generated_at,
                expires_at=bundle.metadata.expires_at,
            )
        logger.info(
            "bundle_generated tenant_id=%s user_id=%s scope=%s checksum=%s",
            tenant_id,
            user_id,
            scope,
            bundle.metadata.checksum,
        )
        return bundle

    async def _build_profile(self, tenant_id: str, user_id: str, now: datetime) -> BundleProfile:
        # The user is required; customer and maintenance group are optional.
        user = await self._users.get_user(tenant_id, user_id)
        if user is None:
            raise UserNotFoundError(f"User not found: {user_id}")

        customer = None
        if user.customer_id:
            customer = await self._customers.get_customer(tenant_id, user.customer_id)
        group = await self._groups.get_user_primary_group(tenant_id, user_id, now=now)

        return BundleProfile(
            user_id=user.id,
            user_email=user.email,
            customer_id=user.customer_id,
            customer_name=customer.display_name if customer is not None else None,
            maintenance_group=(
                MaintenanceGroupSummary(id=group.id, key=group.key, name=group.name) if group is not None else None
            ),
        )

    async def _build_bundle(
        self,
        tenant_id: str,
        user_id: str,
        scope: str,
        ttl_seconds: int,
        options: BundleOptions,
    ) -> UserAccessBundle:
        now = self._clock()
        profile = await self._build_profile(tenant_id, user_id, now)
        grants = await self._evaluator.grants_for(tenant_id, user_id, scope, now=now)
        effective = resolve_effective_permissions(grants)

        allowed = sorted({entry.permission for entry in effective if entry.allowed})
        denied = sorted({entry.permission for entry in effective if entry.explicitly_denied})

        domain_policies = build_domain_policies(effective) if options.include_domains else {}
        feature_policies = (
            {
                key: FeaturePolicy(access=access)
                for key, access in self._feature_table.evaluate(set(allowed), set(denied)).items()
            }
            if options.include_features
            else {}
        )
        permissions = (
            BundlePermissions(allowed=allowed, denied=denied) if options.include_flat else BundlePermissions()
        )

        metadata = BundleMetadata(
            generated_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            ttl_seconds=ttl_seconds,
            scope=scope,
            source_roles=sorted({grant.role.key for grant in grants}),
            source_policies=sorted({grant.policy.key for grant in grants}),
        )
        bundle = UserAccessBundle(
            profile=profile,
            domain_policies=domain_policies,
            feature_policies=feature_policies,
            permissions=permissions,
            metadata=metadata,
        )
        return bundle.with_checksum(length=self._settings.bundle_checksum_length)

    async def refresh_bundle(
        self,
        tenant_id: str,
        user_id: str,
        scope: str | None = None,
        reason: str | None = None,
    ) -> UserAccessBundle:
        resolved_scope = scope or self._settings.bundle_default_scope
        await self._cache.invalidate_by_scope(tenant_id, user_id, resolved_scope, now=self._clock(), reason=reason)
        return await self.generate_bundle(tenant_id, user_id, BundleOptions(scope=resolved_scope, use_cache=True))

    async def invalidate_bundle(
        self,
        tenant_id: str,
        user_id: str,
        reason: str | None = None,
        scope: str | None = None,
        *,
        actor_id: str | None = None,
    ) -> int:
        now = self._clock()
        if scope:
            affected = int(await self._cache.invalidate_by_scope(tenant_id, user_id, scope, now=now, reason=reason))
        else:
            affected = await self._cache.invalidate(tenant_id, user_id, now=now, reason=reason)
        logger.info(
            "bundle_invalidated tenant_id=%s user_id=%s scope=%s affected=%s",
            tenant_id,
            user_id,
            scope or "all",
            affected,
        )
        # Emitted whether or not a cache row existed.
        await self._publish(
            tenant_id,
            entity_type="user_bundle",
            entity_id=user_id,
            data={"reason": reason, "scope": scope, "affected": affected},
            actor=user_actor(actor_id),
        )
        return affected

    async def invalidate_tenant_bundles(
        self,
        tenant_id: str,
        reason: str | None = None,
        *,
        actor_id: str | None = None,
    ) -> int:
        affected = await self._cache.invalidate_all_for_tenant(tenant_id, now=self._clock(), reason=reason)
        logger.info("bundle_tenant_invalidated tenant_id=%s affected=%s", tenant_id, affected)
        await self._publish(
            tenant_id,
            entity_type="tenant_bundles",
            entity_id=tenant_id,
            data={"reason": reason, "scope": "tenant:*", "affected": affected},
            actor=user_actor(actor_id),
        )
        return affected

    async def check_domain_permission(
        self,
        tenant_id: str,
        user_id: str,
        domain: str,
        equipment: str,
        location: str,
        action: str,
        scope: str | None = None,
    ) -> bool:
        # Cache-first by design; single hot-path checks should call the evaluator.
        bundle = await self.generate_bundle(tenant_id, user_id, BundleOptions(scope=scope))
        return bundle.can_access_domain(domain, equipment, location, action)

    async def check_feature_access(
        self,
        tenant_id: str,
        user_id: str,
        feature_key: str,
        scope: str | None = None,
    ) -> FeatureAccessResult:
        bundle = await self.generate_bundle(tenant_id, user_id, BundleOptions(scope=scope))
        access = bundle.feature_access(feature_key)
        return FeatureAccessResult(allowed=access.is_allowed, access=access)

    async def _publish(
        self,
        tenant_id: str,
        *,
        entity_type: str,
        entity_id: str,
        data: dict[str, Any],
        actor: EventActor,
    ) -> None:
        if self._events is None:
            return
        payload: EventPayload = {
            "tenant_id": tenant_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": "INVALIDATE",
            "data": data,
            "actor": actor,
        }
        try:
            await self._events.publish(BUNDLE_INVALIDATED, payload)
        except Exception as exc:  # noqa: BLE001 - event sink is best effort
            logger.warning(
                "bundle_event_publish_failed tenant_id=%s entity_id=%s",
                tenant_id,
                entity_id,
                exc_info=exc,
            )
