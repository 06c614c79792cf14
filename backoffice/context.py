from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RequestScope:
    """Ambient identifiers stamped onto log records, audit rows and events."""

    correlation_id: str | None = None
    organization_id: str | None = None


_EMPTY_SCOPE = RequestScope()
_scope_var: ContextVar[RequestScope] = ContextVar("request_scope", default=_EMPTY_SCOPE)


@contextmanager
def request_scope(correlation_id: str | None, organization_id: str | None = None) -> Iterator[RequestScope]:
    scope = RequestScope(correlation_id=correlation_id, organization_id=organization_id)
    token = _scope_var.set(scope)
    try:
        yield scope
    finally:
        _scope_var.reset(token)


def current_scope() -> RequestScope:
    return _scope_var.get()


def get_correlation_id() -> str | None:
    return _scope_var.get().correlation_id


def get_organization_id() -> str | None:
    return _scope_var.get().organization_id
