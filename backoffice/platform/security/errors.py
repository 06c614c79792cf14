from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for row-level scope failures."""


class OutOfScopeError(AuthorizationError):
    """Raised when a record belongs to an organization outside the caller's scope."""

    def __init__(self, resource: str, organization_id: str) -> None:
        self.resource = resource
        self.organization_id = organization_id
        super().__init__(f"Out-of-scope organization_id for resource '{resource}'")
