"""Staff/system bearer-token checks for the operator routes."""
import os
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

bearer = HTTPBearer(auto_error=False)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"

STAFF_ROLES = ("staff", "manager", "admin")
SYSTEM_ROLES = ("system", "admin")


def issue_staff_token(sub: str, role: str, ttl_minutes: int = 60) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": sub,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")


def get_principal(
    creds: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer)],
) -> dict:
    if creds is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return decode_token(creds.credentials)


def require_roles(*allowed_roles: str):
    allowed = set(allowed_roles)

    def _dep(principal: Annotated[dict, Depends(get_principal)]) -> dict:
        role = principal.get("role")
        if role not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        return principal

    return _dep


def caller_identity(request: Request) -> str:
    """Throttle bucket key for unauthenticated guest/manager token routes."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
