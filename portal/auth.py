# portal/auth.py
"""
Bearer-token auth for client-facing endpoints, and the internal-call guard.

Client tokens are the backend's access JWTs (HS256, user id in `sub`).

Env vars:
- AUTH_JWT_SECRET — signing secret of the auth backend
- AUTH_JWT_AUDIENCE (default: authenticated) — empty disables the audience check
- INTERNAL_API_KEY — shared key for internal-only endpoints (unset: no guard)
"""

import os
import hmac
from typing import Optional, Dict, Any

from jose import JWTError, jwt

from portal.errors import Unauthenticated, ConfigurationError, Forbidden

# Configuration
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "")
AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE", "authenticated")
AUTH_JWT_ALGORITHM = "HS256"
INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "").strip()
INTERNAL_API_KEY_HEADER = "x-internal-api-key"


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode and validate an access token. None when invalid or expired."""
    options = {"verify_aud": bool(AUTH_JWT_AUDIENCE)}
    try:
        return jwt.decode(
            token,
            AUTH_JWT_SECRET,
            algorithms=[AUTH_JWT_ALGORITHM],
            audience=AUTH_JWT_AUDIENCE or None,
            options=options,
        )
    except JWTError:
        return None


def resolve_user_id(authorization: Optional[str]) -> str:
    """
    Resolve an Authorization header to the caller's user id.

    Raises Unauthenticated for a missing or invalid credential.
    """
    token = extract_bearer_token(authorization)
    if not token:
        raise Unauthenticated("Unauthorized - Authentication required")
    if not AUTH_JWT_SECRET:
        raise ConfigurationError("Authentication is not configured")
    claims = decode_access_token(token)
    if not claims or not claims.get("sub"):
        raise Unauthenticated("Unauthorized - Invalid token")
    return str(claims["sub"])


def check_internal_key(supplied: Optional[str]) -> None:
    """Guard for internal-only endpoints. No-op when INTERNAL_API_KEY is unset."""
    if not INTERNAL_API_KEY:
        return
    if not supplied or not hmac.compare_digest(supplied.strip(), INTERNAL_API_KEY):
        raise Forbidden("Forbidden")
