from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Depends, Header
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.config import settings
from rekber.core.exceptions import ForbiddenError, UnauthorizedError
from rekber.database import get_db

ROLE_BUYER = "buyer"
ROLE_MERCHANT = "merchant"
ROLE_ADMIN = "admin"

# Roles empowered to resolve disputes and post in arbitrase rooms
ARBITER_ROLES = frozenset({ROLE_ADMIN})


def is_arbiter(role: str | None) -> bool:
    return role in ARBITER_ROLES


@dataclass(frozen=True)
class CurrentUser:
    id: int
    username: str
    role: str

    @property
    def is_arbiter(self) -> bool:
        return is_arbiter(self.role)


def create_access_token(user_id: int, role: str) -> str:
    """Create a JWT for a user. Token issuance proper lives in the identity service."""
    expire = datetime.now(timezone.utc) + timedelta(hours=settings.jwt_expire_hours)
    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token. Returns the payload."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise UnauthorizedError("Invalid or expired token")
    if payload.get("sub") is None:
        raise UnauthorizedError("Token missing subject")
    try:
        payload["sub"] = int(payload["sub"])
    except (TypeError, ValueError):
        raise UnauthorizedError("Token subject is not a user id")
    return payload


async def load_current_user(db: AsyncSession, token: str) -> CurrentUser:
    """Resolve a bearer token to the stored user; the role comes from the store, not the token."""
    from rekber.services import identity_service

    payload = decode_token(token)
    user = await identity_service.find_user(db, payload["sub"])
    if user is None:
        raise UnauthorizedError("Invalid token - user not found")
    if not user.is_active and user.role != ROLE_BUYER:
        raise UnauthorizedError("Account is not active")
    return CurrentUser(id=user.id, username=user.username, role=user.role)


async def get_current_user(
    authorization: str = Header(None),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    """FastAPI dependency that resolves the caller from the Authorization header."""
    if not authorization:
        raise UnauthorizedError("Missing Authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthorizedError("Authorization header must be: Bearer <token>")

    return await load_current_user(db, parts[1])


def require_roles(*roles: str):
    """Dependency factory restricting a route to the given roles."""
    allowed = frozenset(roles)

    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in allowed:
            raise ForbiddenError(f"Requires one of roles: {', '.join(sorted(allowed))}")
        return user

    return _check
