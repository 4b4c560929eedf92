from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from app.config import get_settings

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)

RIDER_ROLE = "rider"
DRIVER_ROLE = "driver"
ROLES = (RIDER_ROLE, DRIVER_ROLE)


def create_access_token(data: dict) -> str:
    """Sign a JWT with the configured secret (HS256)."""
    return jwt.encode(data, settings.secret_key, algorithm=settings.jwt_algorithm)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    """Decode and validate the JWT Bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


def _principal(token_data: dict) -> tuple[str, str]:
    subject = token_data.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    # Tokens without a role claim are rider tokens; driver tokens must say so.
    role = token_data.get("role", RIDER_ROLE)
    if role not in ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown role")
    return subject, role


def _require_role(token_data: dict, required: str) -> str:
    subject, role = _principal(token_data)
    if role != required:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{required.capitalize()} token required")
    return subject


async def get_current_rider(token_data: dict = Depends(get_current_user)) -> str:
    """rider_id of a rider token; driver tokens are refused."""
    return _require_role(token_data, RIDER_ROLE)


async def get_current_driver(token_data: dict = Depends(get_current_user)) -> str:
    """driver_id of a token carrying role=driver."""
    return _require_role(token_data, DRIVER_ROLE)


async def get_current_principal(token_data: dict = Depends(get_current_user)) -> tuple[str, str]:
    """(subject, role) for endpoints both riders and drivers call."""
    return _principal(token_data)
