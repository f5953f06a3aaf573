"""UserAccessBundle serialization contract.

Consumers crossing a process boundary read the camelCase JSON produced by
``UserAccessBundle.to_json()``. The checksum covers ``profile``,
``domainPolicies``, ``featurePolicies`` and ``permissions`` only, so two
bundles with identical effective rights share a checksum regardless of when
they were generated.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import hashlib
import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_serializer
from pydantic.alias_generators import to_camel

from accessbundle.core.clock import ensure_utc
from accessbundle.core.config import BUNDLE_SCHEMA_VERSION
from accessbundle.domain.access import PolicyConditions


CHECKSUM_ALGORITHM = "sha256"
_CHECKSUM_FIELDS = {"profile", "domain_policies", "feature_policies", "permissions"}


class FeatureAccess(str, Enum):
    GUARANTEED = "guaranteed"
    GRANTED = "granted"
    NOT_GRANTED = "not_granted"
    DENIED = "denied"

    @property
    def is_allowed(self) -> bool:
        return self in (FeatureAccess.GUARANTEED, FeatureAccess.GRANTED)


class BundleModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _CompactModel(BundleModel):
    # Optional members are omitted from the wire shape instead of sent as null.
    @model_serializer(mode="wrap")
    def _drop_unset(self, handler: Any) -> dict[str, Any]:
        data = handler(self)
        return {key: value for key, value in data.items() if value is not None}


class MaintenanceGroupSummary(BundleModel):
    id: str
    key: str
    name: str


class BundleProfile(BundleModel):
    user_id: str
    user_email: str
    customer_id: str | None = None
    customer_name: str | None = None
    maintenance_group: MaintenanceGroupSummary | None = None


class LocationActions(_CompactModel):
    actions: list[str] = Field(default_factory=list)
    conditions: PolicyConditions | None = None


DomainPolicies = dict[str, dict[str, dict[str, LocationActions]]]


class FeaturePolicy(_CompactModel):
    access: FeatureAccess
    conditions: PolicyConditions | None = None
    expires_at: str | None = None


class BundlePermissions(BundleModel):
    allowed: list[str] = Field(default_factory=list)
    denied: list[str] = Field(default_factory=list)


class BundleMetadata(BundleModel):
    generated_at: datetime
    expires_at: datetime
    ttl_seconds: int
    scope: str
    source_roles: list[str] = Field(default_factory=list)
    source_policies: list[str] = Field(default_factory=list)
    checksum: str = ""


class UserAccessBundle(BundleModel):
    version: Literal["1.0"] = BUNDLE_SCHEMA_VERSION
    profile: BundleProfile
    domain_policies: DomainPolicies = Field(default_factory=dict)
    feature_policies: dict[str, FeaturePolicy] = Field(default_factory=dict)
    permissions: BundlePermissions = Field(default_factory=BundlePermissions)
    metadata: BundleMetadata

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> UserAccessBundle:
        return cls.model_validate(payload)

    def content_checksum(self, *, length: int = 16) -> str:
        # Metadata (timestamps, provenance) never feeds the digest.
        content = self.model_dump(mode="json", by_alias=True, include=_CHECKSUM_FIELDS)
        return compute_checksum(content, length=length)

    def with_checksum(self, *, length: int = 16) -> UserAccessBundle:
        checksum = self.content_checksum(length=length)
        metadata = self.metadata.model_copy(update={"checksum": checksum})
        return self.model_copy(update={"metadata": metadata})

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(self.metadata.expires_at) <= now

    def can_access_domain(self, domain: str, equipment: str, location: str, action: str) -> bool:
        entry = self.domain_policies.get(domain, {}).get(equipment, {}).get(location)
        return entry is not None and action in entry.actions

    def feature_access(self, feature_key: str) -> FeatureAccess:
        policy = self.feature_policies.get(feature_key)
        return policy.access if policy is not None else FeatureAccess.NOT_GRANTED

    def has_feature_access(self, feature_key: str) -> bool:
        return self.feature_access(feature_key).is_allowed


def compute_checksum(content: dict[str, Any], *, length: int = 16) -> str:
    # Canonical JSON (sorted keys, compact separators) keeps the digest stable.
    raw = json.dumps(content, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return f"{CHECKSUM_ALGORITHM}:{digest[:length]}"


@dataclass(frozen=True)
class CachedBundleEntry:
    tenant_id: str
    user_id: str
    scope: str
    bundle: UserAccessBundle
    checksum: str
    generated_at: datetime
    expires_at: datetime
    invalidated_at: datetime | None = None
    invalidation_reason: str | None = None

    def is_valid(self, now: datetime) -> bool:
        # A hit requires no invalidation mark and an expiry still in the future.
        return self.invalidated_at is None and ensure_utc(self.expires_at) > now
