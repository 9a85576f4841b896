from __future__ import annotations

from dataclasses import dataclass, field

from fastapi.security.utils import get_authorization_scheme_param
from jose import JWTError, jwt
from starlette.requests import Request

from backoffice.core.config import get_settings

ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS


def _claim_list(payload: dict, name: str) -> list[str]:
    value = payload.get(name)
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list):
        return [str(item) for item in value]
    return []


async def get_current_user(request: Request) -> AuthUser:
    """Resolve the bearer token; missing or invalid tokens yield an anonymous guest."""
    scheme, token = get_authorization_scheme_param(request.headers.get("authorization"))
    if scheme.lower() != "bearer" or not token:
        return AuthUser(sub=ANONYMOUS, roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub=ANONYMOUS, roles=["guest"])

    roles = _claim_list(payload, "roles") + _claim_list(payload, "permissions")
    return AuthUser(sub=str(payload.get("sub") or ANONYMOUS), roles=list(dict.fromkeys(roles)))
