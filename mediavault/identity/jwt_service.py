"""Minimal HS256 JWT issue/verify for bearer-token authenticated callers."""
from __future__ import annotations

import base64
import hmac
import json
import time
from dataclasses import dataclass, field
from hashlib import sha256
from typing import Any, Callable, Dict, Optional

from mediavault.common.errors import Unauthorized
from mediavault.config import runtime_config


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("utf-8")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


@dataclass
class AuthContext:
    user_id: str
    email: str = ""
    email_verified: bool = False
    provider: str = "internal"
    claims: Dict[str, Any] = field(default_factory=dict)


class JwtService:
    def __init__(self, secret_provider: Optional[Callable[[], Optional[str]]] = None) -> None:
        self._secret_provider = secret_provider or runtime_config.get_jwt_secret

    def _get_secret(self) -> str:
        secret = self._secret_provider()
        if not secret:
            raise Unauthorized("token signing secret is not configured")
        return secret

    def issue_token(self, claims: Dict[str, object]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        secret = self._get_secret().encode("utf-8")
        signing_input = ".".join(
            [
                _b64url(json.dumps(header, separators=(",", ":"), sort_keys=True).encode()),
                _b64url(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode()),
            ]
        )
        signature = hmac.new(secret, signing_input.encode("utf-8"), sha256).digest()
        return signing_input + "." + _b64url(signature)

    def decode_token(self, token: str) -> AuthContext:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise Unauthorized("invalid token")
        secret = self._get_secret().encode("utf-8")
        signing_input = header_b64 + "." + payload_b64
        expected_sig = hmac.new(secret, signing_input.encode("utf-8"), sha256).digest()
        try:
            provided_sig = _b64url_decode(sig_b64)
            payload = json.loads(_b64url_decode(payload_b64))
        except ValueError:
            raise Unauthorized("invalid token")
        if not hmac.compare_digest(expected_sig, provided_sig):
            raise Unauthorized("invalid signature")
        if not isinstance(payload, dict) or not payload.get("sub"):
            raise Unauthorized("token has no subject")
        exp = payload.get("exp")
        if exp is not None and float(exp) < time.time():
            raise Unauthorized("token expired")
        return AuthContext(
            user_id=str(payload["sub"]),
            email=payload.get("email", ""),
            email_verified=bool(payload.get("email_verified", False)),
            claims=payload,
        )


def default_jwt_service() -> JwtService:
    return JwtService()


def verify_token(token: str, service: Optional[JwtService] = None) -> str:
    """Return the user id the token was issued for, or raise Unauthorized."""
    if not token:
        raise Unauthorized("missing token")
    return (service or default_jwt_service()).decode_token(token).user_id
