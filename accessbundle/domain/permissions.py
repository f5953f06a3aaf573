"""Permission-string value types.

Two permission shapes coexist and are never interchangeable:

* ``FunctionPermission`` is the 3-segment dotted form ``domain.function.action``
  used by policy allow/deny lists and by the authorization evaluator. Any
  segment of a pattern may be ``*``.
* ``DomainPermissionKey`` is the 4-part ``domain.equipment.location:action``
  form identifying a registered device/resource-scoped capability. It feeds the
  nested ``domainPolicies`` view of an access bundle. A legacy all-dots
  spelling (``domain.equipment.location.action``) is accepted on decode only.

Scopes (``<type>:<id>`` or ``<type>:*``) bound where a role grant applies.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re


WILDCARD = "*"
UNIVERSAL_PATTERN = "*.*.*"

_SEGMENT = r"[A-Za-z0-9_]+"
_DOMAIN_KEY_RE = re.compile(rf"^({_SEGMENT})\.({_SEGMENT})\.({_SEGMENT}):({_SEGMENT})$")
_LEGACY_DOMAIN_KEY_RE = re.compile(rf"^({_SEGMENT})\.({_SEGMENT})\.({_SEGMENT})\.({_SEGMENT})$")
_PATTERN_SEGMENT_RE = re.compile(rf"^(?:{_SEGMENT}|\*)$")
_SCOPE_RE = re.compile(r"^([a-z][a-z0-9_]*):(\*|[A-Za-z0-9][A-Za-z0-9_\-./]*)$")


class PermissionShape(str, Enum):
    FUNCTION = "function"
    DOMAIN = "domain"
    LEGACY_DOMAIN = "legacy_domain"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DomainPermissionKey:
    domain: str
    equipment: str
    location: str
    action: str

    def encode(self) -> str:
        return f"{self.domain}.{self.equipment}.{self.location}:{self.action}"

    def as_tuple(self) -> tuple[str, str, str, str]:
        return (self.domain, self.equipment, self.location, self.action)

    @classmethod
    def decode(cls, value: str) -> DomainPermissionKey | None:
        # Decode failure is an expected routing branch, never an error.
        if not isinstance(value, str):
            return None
        match = _DOMAIN_KEY_RE.match(value)
        if match is None:
            return None
        return cls(*match.groups())

    @classmethod
    def decode_legacy(cls, value: str) -> DomainPermissionKey | None:
        if not isinstance(value, str):
            return None
        match = _LEGACY_DOMAIN_KEY_RE.match(value)
        if match is None:
            return None
        return cls(*match.groups())


def encode_domain_permission(key: DomainPermissionKey) -> str:
    return key.encode()


def decode_domain_permission(value: str) -> DomainPermissionKey | None:
    return DomainPermissionKey.decode(value)


def is_valid_segment(value: str) -> bool:
    return bool(value) and re.fullmatch(_SEGMENT, value) is not None


@dataclass(frozen=True)
class FunctionPermission:
    domain: str
    function: str
    action: str

    def __str__(self) -> str:
        return f"{self.domain}.{self.function}.{self.action}"

    @classmethod
    def parse(cls, value: str) -> FunctionPermission | None:
        # Exactly three dot-separated segments; anything else is not this shape.
        if not isinstance(value, str):
            return None
        parts = value.split(".")
        if len(parts) != 3:
            return None
        return cls(*parts)

    def covers(self, target: FunctionPermission) -> bool:
        # Treat self as a pattern: "*" matches any value in its position.
        return all(
            pattern == WILDCARD or pattern == actual
            for pattern, actual in (
                (self.domain, target.domain),
                (self.function, target.function),
                (self.action, target.action),
            )
        )


def classify_permission(value: str) -> PermissionShape:
    # Route a policy entry to the permission shape it represents.
    if not isinstance(value, str) or not value:
        return PermissionShape.UNKNOWN
    if DomainPermissionKey.decode(value) is not None:
        return PermissionShape.DOMAIN
    if DomainPermissionKey.decode_legacy(value) is not None:
        return PermissionShape.LEGACY_DOMAIN
    parsed = FunctionPermission.parse(value)
    if parsed is not None and all(
        _PATTERN_SEGMENT_RE.match(segment) for segment in (parsed.domain, parsed.function, parsed.action)
    ):
        return PermissionShape.FUNCTION
    return PermissionShape.UNKNOWN


@dataclass(frozen=True)
class Scope:
    type: str
    id: str

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"

    @property
    def is_wildcard(self) -> bool:
        return self.id == WILDCARD

    @classmethod
    def parse(cls, value: str) -> Scope | None:
        # Malformed scopes parse to None so evaluation stays total.
        if not isinstance(value, str):
            return None
        type_, sep, id_ = value.partition(":")
        if not sep or not type_ or not id_:
            return None
        return cls(type_, id_)


TENANT_WIDE_SCOPE = "tenant:*"


def is_valid_scope(value: str) -> bool:
    # Strict write-time check; evaluation uses the lenient Scope.parse.
    return isinstance(value, str) and _SCOPE_RE.match(value) is not None
