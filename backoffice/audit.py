from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from backoffice.context import get_correlation_id, get_organization_id
from backoffice.platform.security.context import AuthContext

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
    organization_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "organization_id": organization_id or get_organization_id(),
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def record_status_change(
    ctx: AuthContext,
    *,
    entity_type: str,
    entity_id: uuid.UUID | str,
    organization_id: str,
    old_status: str | None,
    new_status: str,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Audit one state-machine step of a subscription or invoice."""

    after: dict[str, Any] = {"status": new_status}
    if extra:
        after.update(extra)
    return record(
        actor_user_id=ctx.user_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action="status_changed",
        before={"status": old_status} if old_status is not None else None,
        after=after,
        correlation_id=ctx.correlation_id,
        organization_id=organization_id,
    )


def entries_for(entity_type: str, entity_id: uuid.UUID | str | None = None) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type and (entity_id is None or entry["entity_id"] == str(entity_id))
    ]
