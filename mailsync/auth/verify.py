"""
verify.py
---------
Purpose:
    JWT verification against the identity provider's JWKS.

Notes:
    - Keys are fetched from settings.AUTH_JWKS_URL and cached by PyJWKClient.
    - Provides `auth_dependency` for protected routes.
    - Service-to-service calls (the invocation trigger) use a shared bearer
      key instead; see `service_key_dependency`.
"""

import hmac

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from mailsync.config import settings

_jwk_client = PyJWKClient(settings.AUTH_JWKS_URL)
_security = HTTPBearer()


def verify_jwt(token: str) -> dict:
    try:
        signing_key = _jwk_client.get_signing_key_from_jwt(token)
        decoded = jwt.decode(
            token,
            signing_key.key,
            algorithms=settings.AUTH_ALGORITHMS,
            audience=settings.AUTH_AUDIENCE,
            options={"verify_exp": True},
        )
        return decoded
    except jwt.PyJWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> dict:
    token = credentials.credentials
    return verify_jwt(token)


def service_key_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> str:
    """Accept only the shared service key used by the invocation trigger."""
    if not hmac.compare_digest(credentials.credentials, settings.SYNC_SERVICE_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service key",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return "service"
