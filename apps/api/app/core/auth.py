from dataclasses import dataclass, field
import uuid

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings
from app.core.context import get_request_context


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    email: str | None = None
    name: str | None = None
    hub_id: uuid.UUID | None = None
    claims: dict = field(default_factory=dict)


ANONYMOUS = "anonymous"


def _parse_hub_id(raw: object) -> uuid.UUID | None:
    if raw is None:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub=ANONYMOUS, roles=[])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub=ANONYMOUS, roles=[])

    subject = str(payload.get("sub", ANONYMOUS))
    roles = payload.get("roles", [])
    if not isinstance(roles, list):
        roles = []
    hub_id = _parse_hub_id(payload.get("hub_id"))

    context = get_request_context(request)
    if context is not None:
        context.user_id = subject
        context.hub_id = str(hub_id) if hub_id else None

    return AuthUser(
        sub=subject,
        roles=[str(role) for role in roles],
        email=payload.get("email"),
        name=payload.get("name"),
        hub_id=hub_id,
        claims=payload,
    )
