"""
Authentication: password hashing, signed tokens and the auth dependencies
used by the routers (required user, optional user, admin).
"""
import hmac
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Header, Request
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

import errors
from config import (
    ACCESS_TOKEN_EXPIRE_DAYS,
    ADMIN_KEYS,
    ALGORITHM,
    BCRYPT_ROUNDS,
    REFRESH_TOKEN_EXPIRE_DAYS,
    SECRET_KEY,
    SUPER_ADMIN_KEY,
    TOKEN_AUDIENCE,
    TOKEN_ISSUER,
)
from database import get_db, sanitize, to_obj_id, utcnow
from ratelimit import FIFTEEN_MINUTES, RateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

AUTH_MAX_REQUESTS = 100
ADMIN_MAX_FAILURES = 5

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/users/login", auto_error=False)

TOKEN_LIFETIMES = {
    "access": timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS),
    "refresh": timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS),
    "admin": timedelta(days=1),
}


# Passwords

def validate_password_strength(password: str) -> None:
    if len(password) < 8:
        raise errors.ValidationError("Password must be at least 8 characters long")
    if not (re.search(r"[a-z]", password) and re.search(r"[A-Z]", password) and re.search(r"\d", password)):
        raise errors.ValidationError(
            "Password must contain at least one uppercase letter, one lowercase letter, and one number"
        )


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        return False


# Tokens

def issue_token(user_id: str, kind: str = "access", claims: Optional[Dict[str, Any]] = None,
                expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    to_encode = dict(claims or {})
    to_encode.update({
        "sub": str(user_id),
        "type": kind,
        "iat": now,
        "exp": now + (expires_delta if expires_delta is not None else TOKEN_LIFETIMES.get(kind, TOKEN_LIFETIMES["access"])),
        "iss": TOKEN_ISSUER,
        "aud": TOKEN_AUDIENCE,
    })
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], audience=TOKEN_AUDIENCE, issuer=TOKEN_ISSUER)
    except ExpiredSignatureError:
        raise errors.TokenExpired("Token expired - please log in again")
    except JWTError:
        raise errors.InvalidToken()


def token_pair(user: Dict[str, Any]) -> Dict[str, str]:
    user_id = str(user.get("_id") or user.get("id"))
    claims = {"ver": user.get("token_version", 0)}
    return {
        "token": issue_token(user_id, "access", claims),
        "refresh_token": issue_token(user_id, "refresh", claims),
    }


def check_token_version(payload: Dict[str, Any], user: Dict[str, Any]) -> None:
    # bumped on password change, which revokes every token issued before it
    if payload.get("ver", 0) != user.get("token_version", 0):
        raise errors.InvalidToken("Token has been revoked - please log in again")


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def load_active_user(db: Database, user_id: Optional[str]) -> Dict[str, Any]:
    if not user_id:
        raise errors.InvalidToken()
    try:
        oid = to_obj_id(user_id)
    except errors.InvalidIdFormat:
        raise errors.InvalidToken()
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise errors.UserNotFound()
    if not user.get("is_active", True):
        raise errors.AccountDeactivated()
    return user


def authenticate(db: Database, token: Optional[str]) -> Dict[str, Any]:
    if not token:
        raise errors.Unauthorized("Access token required - include a Bearer token in the Authorization header")
    payload = decode_token(token)
    if payload.get("type", "access") != "access":
        raise errors.InvalidToken("Invalid token type")
    user = load_active_user(db, payload.get("sub"))
    check_token_version(payload, user)
    return user


def refresh_tokens(db: Database, refresh_token: str) -> Dict[str, Any]:
    payload = decode_token(refresh_token)
    if payload.get("type") != "refresh":
        raise errors.InvalidToken("Invalid refresh token")
    user = load_active_user(db, payload.get("sub"))
    check_token_version(payload, user)
    return {**token_pair(user), "user": sanitize(user)}


# Dependencies

def get_current_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    db: Database = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> Dict[str, Any]:
    limit = limiter.check(f"auth:{client_ip(request)}", AUTH_MAX_REQUESTS, FIFTEEN_MINUTES)
    if not limit.allowed:
        raise errors.RateLimited("Too many authentication attempts", retry_after=limit.retry_after(limiter.now()))
    user = authenticate(db, token)
    now = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
    user["last_login"] = now
    return sanitize(user)


def optional_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: Database = Depends(get_db),
) -> Optional[Dict[str, Any]]:
    if not token:
        return None
    try:
        return sanitize(authenticate(db, token))
    except errors.ApiError:
        return None


def verify_admin_key(key: Optional[str]) -> Optional[str]:
    """Return the admin level for a valid shared key, else None."""
    if not key:
        return None
    for candidate in ADMIN_KEYS:
        if hmac.compare_digest(key.encode(), candidate.encode()):
            return "super" if hmac.compare_digest(key.encode(), SUPER_ADMIN_KEY.encode()) else "standard"
    return None


def check_admin_key(key: Optional[str], ip: str, limiter: RateLimiter) -> str:
    """Validate an admin key, counting failures against the caller's IP.

    A locked-out IP is refused before the key is compared, so a correct key
    does not get through during the lockout either.
    """
    failures_key = f"admin:{ip}"
    lockout = limiter.peek(failures_key, ADMIN_MAX_FAILURES)
    if not lockout.allowed:
        logger.warning("Admin authentication from locked out %s", ip)
        raise errors.RateLimited("Too many admin authentication attempts", retry_after=lockout.retry_after(limiter.now()))
    level = verify_admin_key(key)
    if level:
        return level
    limit = limiter.check(failures_key, ADMIN_MAX_FAILURES, FIFTEEN_MINUTES)
    logger.warning("Failed admin authentication from %s", ip)
    if not limit.allowed:
        raise errors.RateLimited("Too many admin authentication attempts", retry_after=limit.retry_after(limiter.now()))
    raise errors.Forbidden(f"Invalid admin credentials ({limit.remaining} attempts remaining)")


def require_admin(
    request: Request,
    x_admin_key: Optional[str] = Header(None),
    token: Optional[str] = Depends(oauth2_scheme),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> Dict[str, Any]:
    if not x_admin_key and token:
        try:
            payload = decode_token(token)
        except errors.ApiError:
            payload = {}
        if payload.get("type") == "admin":
            return {"is_admin": True, "level": payload.get("level", "standard")}
    level = check_admin_key(x_admin_key, client_ip(request), limiter)
    return {"is_admin": True, "level": level}
