from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from showroom.core.config import get_settings


ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    subject = payload.get("sub")
    if not subject:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=str(subject), roles=[str(role) for role in roles])
