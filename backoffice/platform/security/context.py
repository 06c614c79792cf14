from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

SCOPE_BYPASS_ROLES = frozenset({"admin", "system.admin"})


@dataclass(slots=True)
class AuthContext:
    """Caller identity plus the owning organization every query is scoped to."""

    user_id: str
    organization_id: str | None = None
    correlation_id: str | None = None
    is_super_admin: bool = False
    roles: list[str] = field(default_factory=list)

    @classmethod
    def for_caller(
        cls,
        user_id: str,
        roles: Iterable[object],
        *,
        organization_id: str | None,
        correlation_id: str | None,
    ) -> AuthContext:
        role_names = [str(item) for item in roles]
        return cls(
            user_id=user_id,
            organization_id=organization_id,
            correlation_id=correlation_id,
            is_super_admin=bool({item.lower() for item in role_names} & SCOPE_BYPASS_ROLES),
            roles=role_names,
        )

    @property
    def bypasses_scope(self) -> bool:
        if self.is_super_admin:
            return True
        return bool({item.lower() for item in self.roles} & SCOPE_BYPASS_ROLES)
