"""Authentication helpers and FastAPI security dependencies.

This module decodes JWT tokens and provides the dependencies used by the
routes: `get_current_user` (any authenticated user) and
`require_moderator` (moderators only). Token problems raise
HTTPException(401) directly; a missing role raises HTTPException(403).
Logged-out tokens are recorded in the `revokedtoken` table until they
expire, so every worker process sees a logout.
"""

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from sqlmodel import Session
from .config import settings
from .database import engine
from . import models, repositories, services

bearer_scheme = HTTPBearer()


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    with Session(engine) as session:
        revoked = services.LogoutService(session).is_revoked(token)
    if revoked:
        raise HTTPException(status_code=401, detail='token revoked')
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail='invalid token')


def revoke_token(token: str) -> None:
    """Blacklist `token` until its `exp` claim passes."""
    payload = decode_token(token)
    with Session(engine) as session:
        services.LogoutService(session).revoke(token, int(payload.get('exp', 0)))


def get_current_user(credentials: HTTPAuthorizationCredentials = Security(bearer_scheme)) -> models.User:
    """FastAPI dependency that returns the authenticated user.

    The function extracts the bearer token from the request, decodes it
    and performs a database lookup to return the `User` object. It raises
    an HTTPException(401) for any authentication issue.
    """
    token = credentials.credentials
    payload = decode_token(token)
    user_id = payload.get('user_id')
    if not user_id:
        raise HTTPException(status_code=401, detail='invalid token payload')
    with Session(engine) as session:
        user = repositories.UserRepository(session).get(user_id)
        if not user or not user.is_active:
            raise HTTPException(status_code=401, detail='user not found')
        return user


def require_moderator(user: models.User = Depends(get_current_user)) -> models.User:
    """Dependency that only lets moderators through."""
    if not user.is_moderator:
        raise HTTPException(status_code=403, detail='moderator access required')
    return user
