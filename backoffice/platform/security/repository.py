from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Any, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.rls import apply_rls_filter, validate_rls_write


ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    """Organization-scoped access to one mapped model.

    Subclasses name the ``resource`` used in scope-denial metrics and audit rows and
    the ``model`` looked up by ``get_scoped``.
    """

    resource = ""
    model: type[ModelT]

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return apply_rls_filter(query, self.resource, ctx)

    def get_scoped(
        self,
        session: Session,
        ctx: AuthContext,
        record_id: uuid.UUID,
        *,
        options: Sequence[Any] = (),
    ) -> ModelT | None:
        stmt = select(self.model).where(self.model.id == record_id)  # type: ignore[attr-defined]
        if options:
            stmt = stmt.options(*options)
        return session.scalar(self.apply_scope_query(stmt, ctx))

    def validate_write_security(
        self,
        payload: dict[str, Any],
        ctx: AuthContext,
        *,
        existing_scope: dict[str, str | None] | None = None,
        action: str = "write",
    ) -> None:
        validate_rls_write(self.resource, payload, ctx, existing_scope=existing_scope, action=action)
