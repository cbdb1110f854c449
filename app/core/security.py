"""
Staff Identity
Decodes the bearer JWT minted by the platform's auth service into a
StaffContext. Credential checks and role enforcement live upstream.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from app.core.config import settings

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@dataclass
class StaffContext:
    user_id: uuid.UUID
    organization_id: Optional[uuid.UUID]
    email: Optional[str] = None
    full_name: Optional[str] = None


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token (local dev and tests)"""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def get_current_staff(token: str = Depends(oauth2_scheme)) -> StaffContext:
    """
    Get current staff member from JWT token.
    Returns 401 if the token is invalid or has no usable subject.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = uuid.UUID(str(payload.get("sub")))
        org = payload.get("organization_id") or payload.get("org")
        organization_id = uuid.UUID(str(org)) if org else None
    except JWTError as e:
        logger.warning(f"JWT decode error: {e}")
        raise credentials_exception
    except ValueError:
        logger.warning("Token subject or organization is not a UUID")
        raise credentials_exception

    return StaffContext(
        user_id=user_id,
        organization_id=organization_id,
        email=payload.get("email"),
        full_name=payload.get("name") or payload.get("full_name"),
    )
