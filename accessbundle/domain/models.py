from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON on sqlite test databases.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# sqlite only autoincrements INTEGER primary keys.
AutoIncrementId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    __table_args__ = (Index("ix_users_tenant_customer", "tenant_id", "customer_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str] = mapped_column(String)
    # Customer binding is optional; platform operators may have none.
    customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    display_name: Mapped[str] = mapped_column(String)
    parent_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MaintenanceGroup(Base):
    __tablename__ = "maintenance_groups"
    __table_args__ = (UniqueConstraint("tenant_id", "key", name="uq_maintenance_groups_key"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    key: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MaintenanceGroupMember(Base):
    __tablename__ = "maintenance_group_members"
    __table_args__ = (
        Index("ix_maintenance_group_members_tenant_user", "tenant_id", "user_id"),
        UniqueConstraint("tenant_id", "group_id", "user_id", name="uq_maintenance_group_members"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    group_id: Mapped[str] = mapped_column(String, ForeignKey("maintenance_groups.id"), index=True)
    user_id: Mapped[str] = mapped_column(String)
    # Primary-group selection orders members by assignment time.
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DomainPermission(Base):
    __tablename__ = "domain_permissions"
    __table_args__ = (
        # Postgres treats NULL tenant ids as distinct; repos enforce global uniqueness explicitly.
        UniqueConstraint(
            "tenant_id",
            "domain",
            "equipment",
            "location",
            "action",
            name="uq_domain_permissions_tuple",
        ),
        Index("ix_domain_permissions_tuple", "domain", "equipment", "location", "action"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # NULL marks a global permission visible to every tenant.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    domain: Mapped[str] = mapped_column(String)
    equipment: Mapped[str] = mapped_column(String)
    location: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    risk_level: Mapped[str] = mapped_column(String, default="low", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AccessPolicy(Base):
    __tablename__ = "access_policies"
    __table_args__ = (UniqueConstraint("tenant_id", "key", name="uq_access_policies_key"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    key: Mapped[str] = mapped_column(String)
    display_name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    # Ordered pattern lists; deny wins over allow at evaluation time.
    allow_json: Mapped[list[str]] = mapped_column(JSONType, default=list)
    deny_json: Mapped[list[str]] = mapped_column(JSONType, default=list)
    # Session-layer conditions stored verbatim; the engine only passes them through.
    conditions_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    risk_level: Mapped[str] = mapped_column(String, default="low", nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AccessRole(Base):
    __tablename__ = "access_roles"
    __table_args__ = (UniqueConstraint("tenant_id", "key", name="uq_access_roles_key"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    key: Mapped[str] = mapped_column(String)
    display_name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    policy_keys_json: Mapped[list[str]] = mapped_column(JSONType, default=list)
    tags_json: Mapped[list[str]] = mapped_column(JSONType, default=list)
    risk_level: Mapped[str] = mapped_column(String, default="low", nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RoleAssignment(Base):
    __tablename__ = "role_assignments"
    __table_args__ = (
        Index("ix_role_assignments_tenant_user_status", "tenant_id", "user_id", "status"),
        Index("ix_role_assignments_tenant_role", "tenant_id", "role_key"),
        # At most one active assignment per (user, role, scope).
        Index(
            "uq_role_assignments_active_triple",
            "tenant_id",
            "user_id",
            "role_key",
            "scope",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    user_id: Mapped[str] = mapped_column(String)
    role_key: Mapped[str] = mapped_column(String)
    scope: Mapped[str] = mapped_column(String)
    # active | revoked | expired; past expires_at counts as inactive without a write.
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    granted_by: Mapped[str] = mapped_column(String)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserBundleCache(Base):
    __tablename__ = "user_bundle_cache"
    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", "scope", name="uq_user_bundle_cache_key"),
        Index("ix_user_bundle_cache_expires_at", "expires_at"),
        Index("ix_user_bundle_cache_invalidated_at", "invalidated_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String)
    scope: Mapped[str] = mapped_column(String)
    bundle_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    checksum: Mapped[str] = mapped_column(String)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Logical invalidation: rows stay until the cleanup pass reaps them.
    invalidated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invalidation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Allow null tenant_id for system-wide events.
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
