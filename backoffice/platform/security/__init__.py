from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import AuthorizationError, OutOfScopeError
from backoffice.platform.security.repository import BaseRepository
from backoffice.platform.security.rls import apply_rls_filter, validate_rls_write

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "OutOfScopeError",
    "BaseRepository",
    "apply_rls_filter",
    "validate_rls_write",
]
