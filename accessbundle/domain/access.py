from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_serializer

from accessbundle.core.clock import ensure_utc
from accessbundle.core.errors import InvalidEnumValueError


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AssignmentStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


def parse_risk_level(value: str | RiskLevel | None, *, default: RiskLevel = RiskLevel.LOW) -> RiskLevel:
    # Risk metadata is validated by enum membership only.
    if value is None:
        return default
    try:
        return RiskLevel(value)
    except ValueError as exc:
        raise InvalidEnumValueError(f"Unsupported risk level: {value}") from exc


class PolicyConditions(BaseModel):
    # Opaque to the evaluator; enforced by the session layer.
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    requires_mfa: bool | None = Field(default=None, alias="requiresMFA")
    only_business_hours: bool | None = Field(default=None, alias="onlyBusinessHours")
    allowed_device_types: list[str] | None = Field(default=None, alias="allowedDeviceTypes")
    ip_allowlist: list[str] | None = Field(default=None, alias="ipAllowlist")
    max_session_duration: int | None = Field(default=None, alias="maxSessionDuration")

    @model_serializer(mode="wrap")
    def _drop_unset(self, handler: Any) -> dict[str, Any]:
        data = handler(self)
        return {key: value for key, value in data.items() if value is not None}

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class PolicyRecord:
    key: str
    allow: tuple[str, ...] = ()
    deny: tuple[str, ...] = ()
    risk_level: RiskLevel = RiskLevel.LOW
    conditions: PolicyConditions | None = None
    display_name: str = ""
    description: str = ""
    is_system: bool = False
    id: str | None = None


@dataclass(frozen=True)
class RoleRecord:
    key: str
    policy_keys: tuple[str, ...] = ()
    risk_level: RiskLevel = RiskLevel.LOW
    display_name: str = ""
    description: str = ""
    tags: tuple[str, ...] = ()
    is_system: bool = False
    id: str | None = None


@dataclass(frozen=True)
class RoleAssignmentRecord:
    id: str
    user_id: str
    role_key: str
    scope: str
    status: AssignmentStatus
    granted_by: str
    granted_at: datetime
    expires_at: datetime | None = None
    reason: str | None = None

    def is_effective(self, now: datetime) -> bool:
        # Past expires_at counts as inactive without any write (lazy expiry).
        if self.status != AssignmentStatus.ACTIVE:
            return False
        expires_at = ensure_utc(self.expires_at)
        return expires_at is None or expires_at > now


@dataclass(frozen=True)
class UserRecord:
    id: str
    email: str
    customer_id: str | None = None


@dataclass(frozen=True)
class CustomerRecord:
    id: str
    display_name: str


@dataclass(frozen=True)
class MaintenanceGroupRecord:
    id: str
    key: str
    name: str


@dataclass(frozen=True)
class EffectivePermission:
    # A pattern reachable through the user's active, scope-matching assignments.
    permission: str
    allowed: bool
    granted_by_role: str | None = None
    granted_by_policy: str | None = None
    explicitly_denied: bool = False
    conditions: PolicyConditions | None = None


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    reason: str
    matched_policy: str | None = None
    matched_role: str | None = None
    evaluated_at: datetime | None = None


@dataclass(frozen=True)
class BatchAuthorizationResult:
    results: dict[str, AuthorizationDecision] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def allowed(self) -> int:
        return sum(1 for decision in self.results.values() if decision.allowed)

    @property
    def denied(self) -> int:
        return self.total - self.allowed

    def summary(self) -> dict[str, int]:
        return {"total": self.total, "allowed": self.allowed, "denied": self.denied}
