from __future__ import annotations

from typing import Any, Literal, TypedDict


EventType = Literal[
    "ROLE_CREATED",
    "ROLE_UPDATED",
    "ROLE_DELETED",
    "POLICY_CREATED",
    "POLICY_UPDATED",
    "POLICY_DELETED",
    "ROLE_ASSIGNED",
    "ROLE_REVOKED",
    "DOMAIN_PERMISSION_CREATED",
    "DOMAIN_PERMISSION_UPDATED",
    "DOMAIN_PERMISSION_DELETED",
    "BUNDLE_INVALIDATED",
]

ROLE_CREATED: EventType = "ROLE_CREATED"
ROLE_UPDATED: EventType = "ROLE_UPDATED"
ROLE_DELETED: EventType = "ROLE_DELETED"
POLICY_CREATED: EventType = "POLICY_CREATED"
POLICY_UPDATED: EventType = "POLICY_UPDATED"
POLICY_DELETED: EventType = "POLICY_DELETED"
ROLE_ASSIGNED: EventType = "ROLE_ASSIGNED"
ROLE_REVOKED: EventType = "ROLE_REVOKED"
DOMAIN_PERMISSION_CREATED: EventType = "DOMAIN_PERMISSION_CREATED"
DOMAIN_PERMISSION_UPDATED: EventType = "DOMAIN_PERMISSION_UPDATED"
DOMAIN_PERMISSION_DELETED: EventType = "DOMAIN_PERMISSION_DELETED"
BUNDLE_INVALIDATED: EventType = "BUNDLE_INVALIDATED"


class EventActor(TypedDict, total=False):
    user_id: str | None
    type: Literal["user", "system", "partner"]


class EventPayload(TypedDict, total=False):
    tenant_id: str
    entity_type: str
    entity_id: str
    action: str
    data: dict[str, Any]
    actor: EventActor
    correlation_id: str


SYSTEM_ACTOR: EventActor = {"user_id": None, "type": "system"}


def user_actor(user_id: str | None) -> EventActor:
    if not user_id:
        return dict(SYSTEM_ACTOR)  # type: ignore[return-value]
    return {"user_id": user_id, "type": "user"}
