"""Session tokens, password primitives and the authentication/authorization gates."""

import functools
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Settings
from database import USER_PUBLIC_PROJECTION, sanitize, to_obj_id
from errors import Forbidden, InvalidInput, InvalidToken, Unauthorized

logger = logging.getLogger(__name__)

ADMIN = "admin"
CUSTOMER = "customer"

# Cookie value written on logout
LOGGED_OUT_COOKIE = "none"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


# Passwords

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


# Password reset tokens

def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def generate_reset_token(settings: Settings) -> Tuple[str, str, datetime]:
    """Return ``(raw_token, hashed_token, expires_at)``.

    Only the hash and expiry are stored; the raw token goes out by email.
    """
    raw = secrets.token_hex(20)
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.reset_token_expire_minutes)
    return raw, hash_reset_token(raw), expires_at


# Token codec

def issue_token(user_id: str, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    to_encode = {"sub": str(user_id), "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str, settings: Settings) -> str:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise InvalidToken(str(e)) from e
    user_id = payload.get("sub")
    if not user_id:
        raise InvalidToken("Token has no subject")
    return user_id


# Authentication gate

def extract_token(authorization: Optional[str], cookie: Optional[str]) -> Optional[str]:
    """Bearer header wins over the cookie; neither means anonymous."""
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    if cookie and cookie != LOGGED_OUT_COOKIE:
        return cookie
    return None


async def authenticate(db, settings: Settings, authorization: Optional[str], cookie: Optional[str]) -> Optional[Dict]:
    token = extract_token(authorization, cookie)
    if token is None:
        return None
    try:
        user_id = verify_token(token, settings)
        user = await db["user"].find_one({"_id": to_obj_id(user_id)}, USER_PUBLIC_PROJECTION)
    except (InvalidToken, InvalidInput) as e:
        logger.warning(f"Rejected session token: {e}")
        raise Unauthorized("Not authorized to access this route")
    if not user:
        logger.warning(f"Session token for unknown user {user_id}")
        raise Unauthorized("Not authorized to access this route")
    return sanitize(user)


# Authorization gate

def require_role(user: Optional[Dict], role: str) -> None:
    if user is None or user.get("role") != role:
        current = user.get("role") if user else "anonymous"
        raise Forbidden(f"User role {current} is not authorized to access this route")


def is_admin(user: Optional[Dict]) -> bool:
    return bool(user) and user.get("role") == ADMIN


def require_owner(user: Optional[Dict], owner_id: str, allow_admin: bool = False) -> None:
    if user is None:
        raise Unauthorized()
    if allow_admin and is_admin(user):
        return
    if str(owner_id) != user["id"]:
        raise Forbidden("Not authorized to modify this resource")


@dataclass(frozen=True)
class Requirement:
    role: Optional[str] = None


def requires(role: Optional[str] = None):
    """Declare that an operation needs a logged-in user, optionally with ``role``.

    The wrapped handler takes the request context as its first argument; the
    check runs before the handler body so rejected calls never reach the store.
    """
    requirement = Requirement(role=role)

    def decorator(handler):
        @functools.wraps(handler)
        async def wrapper(ctx, *args, **kwargs):
            if ctx.user is None:
                raise Unauthorized()
            if requirement.role is not None:
                require_role(ctx.user, requirement.role)
            return await handler(ctx, *args, **kwargs)

        wrapper.requirement = requirement
        return wrapper

    return decorator
