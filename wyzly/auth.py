"""
Password hashing, JWT tokens and the role guards used by the API.

Handlers never read the user off a shared request object: each guard resolves
a ``Principal`` that is passed explicitly into the service call.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Cookie, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from . import config
from .errors import AuthenticationError, PermissionDenied
from .schemas import Role

# Landing page per role after login
ROLE_HOME = {
    Role.CUSTOMER: "/feed",
    Role.RESTAURANT: "/restaurants",
    Role.ADMIN: "/admin",
}


@dataclass(frozen=True)
class Principal:
    id: int
    email: str
    username: str
    role: Role

    def to_dict(self):
        data = asdict(self)
        data["role"] = self.role.value
        return data


# ============================================
# PASSWORDS & TOKENS
# ============================================
def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=12)).decode()


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    try:
        return bcrypt.checkpw(plain_password.encode(), hashed_password.encode())
    except ValueError:
        return False


def create_jwt_token(principal: Principal, expires_in: timedelta = None) -> str:
    """Create a signed token for an authenticated user"""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(principal.id),
        "email": principal.email,
        "username": principal.username,
        "role": principal.role.value,
        "iat": now,
        "exp": now + (expires_in or timedelta(days=config.TOKEN_EXPIRE_DAYS)),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_jwt_token(token: str) -> Principal:
    """Decode and verify a token, raising AuthenticationError when invalid"""
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
        return Principal(
            id=int(payload["sub"]),
            email=payload.get("email", ""),
            username=payload.get("username", ""),
            role=Role(payload["role"]),
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except (jwt.PyJWTError, KeyError, ValueError):
        raise AuthenticationError("Invalid or expired token")


def redirect_url_for(role: Role) -> str:
    return ROLE_HOME[role]


# ============================================
# DEPENDENCIES
# ============================================
security = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    token: Optional[str] = Cookie(None),
) -> Principal:
    """Resolve the caller from the bearer token, falling back to the auth cookie"""
    raw = credentials.credentials if credentials else token
    if not raw:
        raise AuthenticationError("Token required")
    return decode_jwt_token(raw)


def require_roles(*roles: Role):
    """Build a dependency admitting only the given roles"""
    allowed = frozenset(roles)

    async def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise PermissionDenied("Insufficient permissions")
        return principal

    return dependency


require_customer = require_roles(Role.CUSTOMER)
require_restaurant = require_roles(Role.RESTAURANT)
require_admin = require_roles(Role.ADMIN)
require_any = require_roles(*Role)
