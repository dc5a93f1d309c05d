"""
Utilities for validating Supabase JWT tokens and resolving the local user.

Registration happens in Supabase; this service only maps a verified token to
an existing row in the users table.
"""
import httpx
import structlog
from jose import jwt, JWTError
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from premium_api.core import config
from premium_api.core.database import get_db
from premium_api.models.user import User

logger = structlog.get_logger(__name__)

# Security scheme for FastAPI
security = HTTPBearer(auto_error=False)

# Cache for JWKS (public keys)
_jwks_cache = None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_jwks() -> dict | None:
    """
    Fetch public keys (JWKS) from Supabase for validating ES256 tokens.

    Caches the keys to avoid repeated network calls.
    """
    global _jwks_cache

    if _jwks_cache is not None:
        return _jwks_cache
    if not config.SUPABASE_URL:
        return None

    try:
        async with httpx.AsyncClient(timeout=5) as client:
            response = await client.get(f"{config.SUPABASE_URL}/auth/v1/jwks")
            response.raise_for_status()
            _jwks_cache = response.json()
            return _jwks_cache
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("jwks_fetch_failed", error=str(e))
        return None


async def decode_supabase_jwt(token: str) -> dict:
    """
    Decode and validate a JWT issued by Supabase Auth.

    Supports both HS256 (shared secret) and ES256 (JWKS) tokens.

    Args:
        token: JWT token string

    Returns:
        dict: Token payload with fields like 'sub' and 'email'

    Raises:
        HTTPException 401: If token is invalid or expired
    """
    if config.SUPABASE_JWT_SECRET:
        try:
            return jwt.decode(
                token,
                config.SUPABASE_JWT_SECRET,
                algorithms=["HS256"],
                options={"verify_aud": False}
            )
        except JWTError as e:
            logger.debug("hs256_validation_failed", error=str(e))

    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError:
        raise _unauthorized("Invalid authentication token")

    algorithm = unverified_header.get("alg", "ES256")
    kid = unverified_header.get("kid")
    if algorithm == "HS256":
        raise _unauthorized("Invalid authentication token")

    jwks = await get_jwks()
    if not jwks:
        raise _unauthorized("Invalid authentication token")

    public_key = next((key for key in jwks.get("keys", []) if key.get("kid") == kid), None)
    if not public_key:
        raise _unauthorized("Invalid authentication token")

    try:
        return jwt.decode(
            token,
            public_key,
            algorithms=[algorithm],
            options={"verify_aud": False}
        )
    except JWTError:
        raise _unauthorized("Invalid authentication token")


async def get_user_from_jwt(payload: dict, db: AsyncSession) -> User:
    """
    Resolve the local user referenced by a verified token.

    Raises:
        HTTPException 401: Token has no subject or the user is not registered
    """
    supabase_user_id = payload.get("sub")
    if not supabase_user_id:
        raise _unauthorized("Invalid token payload: missing sub")

    result = await db.execute(
        select(User).where(User.supabase_user_id == supabase_user_id)
    )
    user = result.scalar_one_or_none()
    if not user:
        logger.warning("token_for_unknown_user", supabase_user_id=supabase_user_id)
        raise _unauthorized("User not registered")
    return user


async def get_current_user_from_supabase(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User | None:
    """
    Dependency returning the user behind the bearer token, or None without one.

    Raises:
        HTTPException 401: If a token is present but invalid
    """
    if not credentials:
        return None

    payload = await decode_supabase_jwt(credentials.credentials)
    return await get_user_from_jwt(payload, db)
