from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessbundle.core.clock import utc_now
from accessbundle.core.config import get_settings
from accessbundle.domain.events import EventPayload
from accessbundle.domain.models import AuditEvent
from accessbundle.persistence.db import get_session_factory


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "ip_allowlist"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_event(
    *,
    session: AsyncSession | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str = "success",
    resource_type: str | None = None,
    resource_id: str | None = None,
    correlation_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Write audit rows in a best-effort manner to avoid breaking access flows.
    event = AuditEvent(
        occurred_at=occurred_at or utc_now(),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        correlation_id=correlation_id,
        metadata_json=sanitize_metadata(metadata or {}),
    )

    if session is None:
        factory = session_factory or get_session_factory()
        async with factory() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                if not best_effort:
                    raise
                logger.warning(
                    "audit_event_write_failed event_type=%s tenant_id=%s",
                    event_type,
                    tenant_id,
                    exc_info=exc,
                )
        return

    resolved_commit = commit if commit is not None else False
    try:
        session.add(event)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        if not best_effort:
            raise
        logger.warning(
            "audit_event_write_failed event_type=%s tenant_id=%s",
            event_type,
            tenant_id,
            exc_info=exc,
        )


class AuditEventSink:
    """Event sink that persists published events as audit rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    async def publish(self, event_type: str, payload: EventPayload) -> None:
        if not get_settings().audit_events_enabled:
            return
        actor = payload.get("actor") or {}
        await record_event(
            session_factory=self._session_factory,
            tenant_id=payload.get("tenant_id"),
            actor_type=actor.get("type") or "system",
            actor_id=actor.get("user_id"),
            event_type=event_type,
            resource_type=payload.get("entity_type"),
            resource_id=payload.get("entity_id"),
            correlation_id=payload.get("correlation_id"),
            metadata={"action": payload.get("action"), "data": payload.get("data") or {}},
        )
