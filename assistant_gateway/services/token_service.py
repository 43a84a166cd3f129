"""
Widget Session Token Service.

Issues and validates short-lived HS256 JWTs that bind one client
connection to exactly one widget session. Both socket gateways and the
session REST endpoints authorize through ``validate_for_session``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

import jwt

from assistant_gateway.errors import AuthError
from assistant_gateway.logging_config import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS256"
TOKEN_PURPOSE = "widget"


@dataclass(frozen=True)
class TokenPayload:
    session_id: str
    app_id: str
    purpose: str
    issued_at: int
    expires_at: int


class TokenService:
    def __init__(self, secret: str, ttl_seconds: int = 3600) -> None:
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret
        self._ttl = ttl_seconds

    def issue(self, session_id: str, app_id: str, now: Optional[int] = None) -> str:
        """Sign a token for ``session_id``, valid for the configured TTL."""
        issued_at = int(now if now is not None else time.time())
        claims = {
            "sessionId": session_id,
            "appId": app_id,
            "purpose": TOKEN_PURPOSE,
            "iat": issued_at,
            "exp": issued_at + self._ttl,
        }
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    def validate(self, token: str) -> TokenPayload:
        """
        Decode and verify a token.

        Raises:
            AuthError: if the token is malformed, tampered with, expired,
                or not a widget token.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "iat", "sessionId", "appId", "purpose"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthError("Session token expired") from e
        except jwt.PyJWTError as e:
            raise AuthError("Invalid session token") from e

        if claims.get("purpose") != TOKEN_PURPOSE:
            raise AuthError("Token was not issued for widget sessions")

        return TokenPayload(
            session_id=str(claims["sessionId"]),
            app_id=str(claims["appId"]),
            purpose=claims["purpose"],
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
        )

    def validate_for_session(self, token: str, session_id: str) -> bool:
        """True iff ``token`` is valid, unexpired and was issued for ``session_id``."""
        if not token or not session_id:
            return False
        try:
            payload = self.validate(token)
        except AuthError as e:
            logger.info("token_rejected", reason=e.message)
            return False
        return payload.session_id == session_id

    def extract_session_id(self, token: str) -> str | None:
        try:
            return self.validate(token).session_id
        except AuthError:
            return None
