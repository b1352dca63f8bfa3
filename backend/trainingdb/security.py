# backend/trainingdb/security.py

"""
Security helpers for trainingdb.

Responsibilities:
- JWT access token creation and decoding
- FastAPI dependencies for the current principal / admin checks

Session issuance lives in the surrounding dashboard; this service only
trusts the bearer token it receives. The `sub` claim carries the integer
user id shared with the employee directory and `role` carries the
dashboard role.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

# ---------------------------------------------------------------------------
# CONFIG
# ---------------------------------------------------------------------------

# In production, ALWAYS override these via environment variables.
SECRET_KEY = os.getenv("SECRET_KEY", "CHANGE_ME_IN_PRODUCTION")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

try:
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(
        os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60")
    )
except ValueError:
    ACCESS_TOKEN_EXPIRE_MINUTES = 60

ADMIN_ROLES = frozenset({"admin", "superuser"})

# Used by FastAPI's OAuth2 docs / OpenAPI.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


# ---------------------------------------------------------------------------
# JWT TOKENS
# ---------------------------------------------------------------------------


def create_access_token(
    *,
    data: dict,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed JWT.

    The `data` dict should already include the subject, e.g.:
        {"sub": "42", "role": "admin"}
    """
    to_encode = data.copy()

    expire = datetime.now(timezone.utc) + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})

    return jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_principal(token: str) -> Principal:
    """
    Decode a bearer token into a Principal.

    Raises HTTP 401 for anything that is not a signed token with an
    integer subject.
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise _credentials_exception()

    subject = payload.get("sub")
    try:
        user_id = int(str(subject).strip())
    except (TypeError, ValueError):
        raise _credentials_exception()

    role = str(payload.get("role") or "learner").strip().lower()
    return Principal(user_id=user_id, role=role)


# ---------------------------------------------------------------------------
# FASTAPI DEPENDENCIES
# ---------------------------------------------------------------------------


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_principal(token: str = Depends(oauth2_scheme)) -> Principal:
    return decode_principal(token)


def require_admin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """
    Dependency that enforces an admin-level role.

    Every enrollment state transition (assignment, registration decision,
    presence, synchronisation) is an admin action.
    """
    if principal.is_admin:
        return principal

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Insufficient privileges",
    )
