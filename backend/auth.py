"""
Bearer token verification for the billing API.

Tokens are minted by the identity service with the shared JWT_SECRET_KEY.
Only the caller's id and role are read from them; everything else about the
user comes from the users collection (see permissions.py).
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import os

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "billing-dev-secret-change-me")
ALGORITHM = "HS256"
TOKEN_TYPE = "access"
DEFAULT_TTL = timedelta(minutes=30)

bearer_scheme = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


def create_access_token(claims: dict, ttl: Optional[timedelta] = None) -> str:
    """Sign an access token. Used by the identity service and by tests."""
    payload = dict(claims)
    payload["type"] = TOKEN_TYPE
    payload["exp"] = datetime.now(timezone.utc) + (ttl or DEFAULT_TTL)
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Access token has expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Could not validate credentials")

    if claims.get("type") != TOKEN_TYPE:
        raise _unauthorized("Not an access token")
    if not claims.get("user_id"):
        raise _unauthorized("Token carries no user id")
    return claims


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> dict:
    """Caller identity from the bearer token: user_id and the role it was issued with."""
    claims = decode_access_token(credentials.credentials)
    return {"user_id": str(claims["user_id"]), "role": claims.get("role")}
