from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from backoffice import audit
from backoffice.metrics import observe_rls_denied_write
from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import OutOfScopeError


def apply_rls_filter(query: Select[Any], resource: str, ctx: AuthContext) -> Select[Any]:
    """Restrict a select to rows owned by the caller's organization."""

    if ctx.bypasses_scope or ctx.organization_id is None:
        return query

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is not None and hasattr(model, "organization_id"):
            query = query.where(getattr(model, "organization_id") == ctx.organization_id)
    return query


def validate_rls_write(
    resource: str,
    payload: dict[str, Any],
    ctx: AuthContext,
    *,
    action: str = "write",
    existing_scope: dict[str, str | None] | None = None,
) -> None:
    if ctx.bypasses_scope or ctx.organization_id is None:
        return

    organization_id = payload.get("organization_id")
    if organization_id is None and existing_scope is not None:
        organization_id = existing_scope.get("organization_id")
    if organization_id is not None and str(organization_id) != ctx.organization_id:
        _emit_rls_denied(resource=resource, action=action, organization_id=str(organization_id), ctx=ctx)
        raise OutOfScopeError(resource, str(organization_id))


def _emit_rls_denied(*, resource: str, action: str, organization_id: str, ctx: AuthContext) -> None:
    observe_rls_denied_write(resource=resource)
    audit.record(
        actor_user_id=ctx.user_id,
        entity_type="security.rls",
        entity_id="scope",
        action="rls.denied",
        before=None,
        after={
            "resource": resource,
            "action": action,
            "requested_organization_id": organization_id,
            "caller_organization_id": ctx.organization_id,
        },
        correlation_id=ctx.correlation_id,
        organization_id=ctx.organization_id,
    )
