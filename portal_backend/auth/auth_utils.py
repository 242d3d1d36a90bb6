# portal_backend/auth/auth_utils.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Header

from .. import config
from ..access import Account
from ..errors import Unauthorized, UpstreamUnavailable


def _secret() -> str:
    if not config.JWT_SECRET:
        raise UpstreamUnavailable("Account sessions not configured")
    return config.JWT_SECRET


def create_access_token(
    account_id: str,
    email: str,
    expires_minutes: int = 60,
) -> str:
    """Account session token as the auth provider issues it (sub + email)."""
    payload = {
        "sub": str(account_id),
        "email": email,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, _secret(), algorithm=config.JWT_ALG)


def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(
            token,
            _secret(),
            algorithms=[config.JWT_ALG],
            options={"verify_aud": False},
        )
    except jwt.PyJWTError:
        return None


def current_account(authorization: Optional[str] = Header(default=None)) -> Account:
    """FastAPI dependency: `Authorization: Bearer <account session>`."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthorized()

    claims = decode_token(token.strip())
    if not claims or not claims.get("sub") or not claims.get("email"):
        raise Unauthorized("Invalid session")
    return Account(account_id=str(claims["sub"]), email=str(claims["email"]).strip().lower())
