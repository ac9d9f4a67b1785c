"""Bearer-token auth dependency."""
from __future__ import annotations

from typing import Optional

from fastapi import Header

from mediavault.common.errors import Unauthorized
from mediavault.identity.jwt_service import AuthContext, default_jwt_service


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized("missing bearer token")
    return authorization.split(" ", 1)[1].strip()


def get_auth_context(authorization: Optional[str] = Header(default=None)) -> AuthContext:
    token = bearer_token(authorization)
    return default_jwt_service().decode_token(token)
