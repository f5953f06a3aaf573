from __future__ import annotations


class AccessBundleError(Exception):
    """Base error for the access-bundle engine."""


class NotFoundError(AccessBundleError):
    """Referenced entity does not exist for the tenant."""


class UserNotFoundError(NotFoundError):
    """User lookup failed at bundle generation entry."""


class RoleNotFoundError(NotFoundError):
    """Role key or id not found."""


class PolicyNotFoundError(NotFoundError):
    """Policy key or id not found."""


class AssignmentNotFoundError(NotFoundError):
    """Role assignment not found."""


class DomainPermissionNotFoundError(NotFoundError):
    """Domain permission not found."""


class ConflictError(AccessBundleError):
    """Write rejected because it collides with existing state."""


class AssignmentExistsError(ConflictError):
    """An active assignment already binds this role to the user at this scope."""


class DomainPermissionExistsError(ConflictError):
    """The (domain, equipment, location, action) tuple is already registered."""


class RoleKeyExistsError(ConflictError):
    """Role keys are unique per tenant."""


class PolicyKeyExistsError(ConflictError):
    """Policy keys are unique per tenant."""


class RoleInUseError(ConflictError):
    """Role still has active assignments."""


class PolicyInUseError(ConflictError):
    """Policy is still referenced by at least one role."""


class ForbiddenError(AccessBundleError):
    """Operation not permitted on this entity."""


class SystemEntityImmutableError(ForbiddenError):
    """System roles and policies cannot be changed by tenant admins."""


class AccessValidationError(AccessBundleError, ValueError):
    """Malformed input rejected at write time."""


class InvalidScopeError(AccessValidationError):
    """Scope string is not of the form <type>:<id> or <type>:*."""


class InvalidPermissionPatternError(AccessValidationError):
    """Permission pattern does not match any supported permission shape."""


class InvalidEnumValueError(AccessValidationError):
    """Value is outside the allowed enumeration."""
