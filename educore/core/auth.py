"""Bearer-token identity for the API.

Tokens are issued by the sign-in provider; this module only verifies them
and extracts the caller's user id (``sub``). Roles are not trusted from the
token: admin and teacher flags are read from the stored profile by the
route dependencies.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from pydantic import BaseModel

from educore.core.logging import get_logger
from educore.core.config import settings
from educore.domain.user import CurrentUser

logger = get_logger(__name__)

SECRET_KEY = settings.jwt_secret_key
ALGORITHM = settings.jwt_algorithm
ACCESS_TOKEN_EXPIRE_MINUTES = settings.access_token_expire_minutes

security = HTTPBearer()


class TokenData(BaseModel):
    """Claims read from a verified bearer token."""
    sub: str
    email: Optional[str] = None
    name: Optional[str] = None
    exp: datetime


def create_access_token(
    user_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed token for ``user_id``.

    Used by tooling and tests; production tokens come from the sign-in provider
    sharing ``JWT_SECRET_KEY``.
    """
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES) if expires_delta is None else expires_delta
    claims = {"sub": user_id, "email": email, "name": name, "iat": issued_at, "exp": issued_at + lifetime}
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> TokenData:
    """Verify the signature and expiry of ``token`` and return its claims.

    Raises:
        HTTPException: 401 if the token is expired, malformed or lacks ``sub``/``exp``
    """
    try:
        claims = jwt.decode(
            token, SECRET_KEY, algorithms=[ALGORITHM], options={"require": ["sub", "exp"]}
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Rejected expired bearer token")
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise _unauthorized("Invalid authentication token")

    try:
        return TokenData(
            sub=claims["sub"],
            email=claims.get("email"),
            name=claims.get("name"),
            exp=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )
    except (TypeError, ValueError) as e:
        logger.warning(f"Bearer token claims are malformed: {e}")
        raise _unauthorized("Invalid authentication token")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentUser:
    """FastAPI dependency returning the caller identity from the bearer token."""
    claims = decode_token(credentials.credentials)
    logger.debug("Bearer token accepted", extra={"user_id": claims.sub})
    return CurrentUser(id=claims.sub, email=claims.email, name=claims.name)
