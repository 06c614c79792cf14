from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from backoffice.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    organization_ids: list[str] = field(default_factory=list)


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.removeprefix("Bearer ").strip() if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    organizations = payload.get("orgs", [])
    if not isinstance(organizations, list):
        organizations = []
    return AuthUser(
        sub=str(payload.get("sub", "anonymous")),
        roles=[str(role) for role in roles],
        organization_ids=[str(item) for item in organizations],
    )
