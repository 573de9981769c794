"""Authentication helpers and FastAPI security dependency.

This module provides utilities to decode JWT tokens and a FastAPI
dependency `get_current_caller` that validates the bearer token and
resolves it to a `Caller` (user id plus admin flag). The services trust
that pair and perform no credential checks of their own.

Token verification raises HTTPExceptions on failure so it can be used
directly inside route dependencies.
"""

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from .config import settings
from .database import EntityStore, get_store
from .schemas import Caller
from .services import AuthService

bearer_scheme = HTTPBearer()


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail='invalid token')


def get_current_caller(
    credentials: HTTPAuthorizationCredentials = Security(bearer_scheme),
    store: EntityStore = Depends(get_store),
) -> Caller:
    """FastAPI dependency that returns the authenticated caller.

    The function extracts the bearer token from the request, decodes it
    and looks the user up so a revoked admin flag takes effect
    immediately. It raises an HTTPException(401) for any authentication
    issue.
    """
    payload = decode_token(credentials.credentials)
    user_id = payload.get('user_id')
    if not user_id:
        raise HTTPException(status_code=401, detail='invalid token payload')
    caller = AuthService(store).resolve_caller(user_id)
    if caller is None:
        raise HTTPException(status_code=401, detail='user not found')
    return caller
