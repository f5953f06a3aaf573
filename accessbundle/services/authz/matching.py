from __future__ import annotations

from typing import Iterable

from accessbundle.core.errors import InvalidPermissionPatternError, InvalidScopeError
from accessbundle.domain.permissions import (
    TENANT_WIDE_SCOPE,
    UNIVERSAL_PATTERN,
    FunctionPermission,
    PermissionShape,
    Scope,
    classify_permission,
    is_valid_scope,
)


def scope_matches(assignment_scope: str, resource_scope: str) -> bool:
    """Return True when a grant at ``assignment_scope`` covers ``resource_scope``.

    Containment is a string-prefix test on the id, so ``customer:cust-1`` also
    covers ``customer:cust-10``. This is a known coarse approximation of
    hierarchical ancestry and is kept for compatibility. Malformed scopes
    never raise; they only match through the tenant-wide or exact rules.
    """
    if assignment_scope == TENANT_WIDE_SCOPE:
        return True
    if assignment_scope == resource_scope:
        return True
    granted = Scope.parse(assignment_scope)
    requested = Scope.parse(resource_scope)
    if granted is None or requested is None:
        return False
    if granted.type != requested.type:
        return False
    if granted.is_wildcard:
        return True
    return requested.id.startswith(granted.id)


def matches_pattern(permission: str, pattern: str) -> bool:
    if pattern == UNIVERSAL_PATTERN or pattern == permission:
        return True
    # Only the 3-segment dotted shape participates in wildcard matching.
    parsed_pattern = FunctionPermission.parse(pattern)
    parsed_permission = FunctionPermission.parse(permission)
    if parsed_pattern is None or parsed_permission is None:
        return False
    return parsed_pattern.covers(parsed_permission)


def matches_any_pattern(permission: str, patterns: Iterable[str]) -> bool:
    return any(matches_pattern(permission, pattern) for pattern in patterns)


def validate_scope(scope: str) -> str:
    # Write-time validation; evaluation stays total over malformed scopes.
    if not is_valid_scope(scope):
        raise InvalidScopeError(f"Invalid scope: {scope!r} (expected <type>:<id> or <type>:*)")
    return scope


def validate_permission_pattern(pattern: str) -> str:
    # Wildcards are only honoured in the 3-segment shape; 4-part keys must be exact.
    if classify_permission(pattern) != PermissionShape.UNKNOWN:
        return pattern
    raise InvalidPermissionPatternError(f"Invalid permission pattern: {pattern!r}")


def validate_permission_patterns(patterns: Iterable[str]) -> list[str]:
    return [validate_permission_pattern(pattern) for pattern in patterns]
