"""
tracky/auth_context.py

Caller context for FastAPI dependency injection.

Authentication itself belongs to the external identity provider: it issues an
HS256 bearer token whose `sub` claim is the stable user id and whose `role`
claim is one of Viewer/Operator/Supervisor (legacy User/PIC/Admin accepted).
This module only verifies the token and turns it into an Actor, which the core
trusts unconditionally.
"""

from __future__ import annotations

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

try:
    from tracky.config import SECRET_KEY, ALGORITHM, IS_DEV
    from tracky.models import Actor, Role
except ModuleNotFoundError:
    from config import SECRET_KEY, ALGORITHM, IS_DEV
    from models import Actor, Role

# Security scheme for HTTPBearer
security = HTTPBearer()


def verify_token(token: str) -> dict:
    """
    Verify a bearer token and return its decoded payload.

    Raises:
        HTTPException(401): If token is expired or invalid
    """
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def actor_from_claims(payload: dict) -> Actor:
    """
    Build the caller context from verified token claims.

    Raises:
        HTTPException(401): If the token carries no user id
        HTTPException(403): If the role claim is missing or unknown
    """
    actor_id = payload.get("sub") or payload.get("uid")
    if not actor_id:
        print("[AUTH] Missing user id in token payload")
        raise HTTPException(status_code=401, detail="Invalid token payload")

    role = Role.from_claim(payload.get("role"))
    if role is None:
        print(f"[AUTH] Unknown role claim: user_id={actor_id}, role={payload.get('role')!r}")
        raise HTTPException(status_code=403, detail="Unknown role")

    return Actor(actor_id=str(actor_id), role=role)


def require_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Actor:
    """
    Auth dependency for every route.

    Usage:
        @router.get("/protected")
        def protected_route(actor: Actor = Depends(require_actor)):
            ...
    """
    actor = actor_from_claims(verify_token(credentials.credentials))

    if IS_DEV:
        print(f"[AUTH] Authenticated: user_id={actor.actor_id}, role={actor.role.value}")

    return actor
