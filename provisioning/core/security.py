# provisioning/core/security.py
from __future__ import annotations

import re
from typing import List, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from provisioning.core.config import Settings, settings

# Access tokens are minted by the auth service; this module only checks them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

PASSWORD_MIN_LENGTH = 12


def hash_password(plain: str) -> str:
    return pwd_context.hash(plain)


def password_policy_failures(password: str) -> List[str]:
    """Names of the policy checks `password` fails; empty when it passes."""
    pw = password or ""
    failed = []
    if len(pw) < PASSWORD_MIN_LENGTH:
        failed.append("length")
    if not re.search(r"[a-z]", pw):
        failed.append("lowercase")
    if not re.search(r"[A-Z]", pw):
        failed.append("uppercase")
    if not re.search(r"\d", pw):
        failed.append("digit")
    if not re.search(r"[^A-Za-z0-9]", pw):
        failed.append("symbol")
    return failed


def _http_401(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_jwt(token: str, app_settings: Optional[Settings] = None) -> dict:
    """
    Decode JWT using jwt_secret/jwt_algorithm of `app_settings` (module
    settings when omitted). Raises 401 on any error.
    """
    s = app_settings or settings
    try:
        return jwt.decode(token, s.jwt_secret, algorithms=[s.jwt_algorithm])
    except JWTError:
        raise _http_401("Invalid or expired token")


def get_current_user_id(request: Request, token: str = Depends(oauth2_scheme)) -> str:
    """
    Resolve the caller's user id from the bearer token's `sub` claim.
    Refresh tokens are rejected.
    """
    payload = decode_jwt(token, request.app.state.settings)

    token_type = payload.get("type", "access")
    if token_type != "access":
        raise _http_401("Invalid token type")

    subject = payload.get("sub")
    if not subject:
        raise _http_401("Invalid token payload")

    return str(subject)
