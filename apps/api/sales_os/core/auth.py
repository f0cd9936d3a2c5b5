from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from sales_os.core.config import get_settings
from sales_os.core.context import get_request_context
from sales_os.errors import UnauthenticatedError
from sales_os.security.policy import Role


@dataclass
class AuthUser:
    sub: str
    role: Role
    name: str = ""
    email: str = ""


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.replace("Bearer ", "", 1).strip()
    return request.cookies.get("auth_token", "")


async def get_current_user(request: Request) -> AuthUser:
    """Resolve the authenticated (id, role) pair; token issuance happens elsewhere."""
    token = _bearer_token(request)
    if not token:
        raise UnauthenticatedError("Unauthorized")

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise UnauthenticatedError("Invalid token") from exc

    subject = payload.get("sub") or payload.get("id")
    try:
        role = Role(str(payload.get("role", "")))
    except ValueError as exc:
        raise UnauthenticatedError("Invalid token") from exc
    if not subject:
        raise UnauthenticatedError("Invalid token")

    context = get_request_context(request)
    if context is not None:
        context.bind_actor(str(subject), role.value)
    return AuthUser(
        sub=str(subject),
        role=role,
        name=str(payload.get("name", "")),
        email=str(payload.get("email", "")),
    )


def token_subject(request: Request) -> str | None:
    """Best-effort caller id for bookkeeping such as rate limiting; never raises."""
    token = _bearer_token(request)
    if not token:
        return None
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = payload.get("sub") or payload.get("id")
    return str(subject) if subject else None
