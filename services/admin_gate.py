"""
============================================================================
ChangeWLD Exchange - Admin Gate
============================================================================

Reliability Level: L5 High
Input Constraints: Configured OPERATOR_PIN and SESSION_SECRET
Side Effects: Logs login attempts (never the PIN or the token)

Privileged operations (listing every order, changing status, confirming
transfers) require a signed admin session token:

    login(pin)            -> SessionToken, or InvalidPinError (401)
    authorize(header)     -> bool, never raises

The PIN is only ever exchanged for a token; it is not accepted on
privileged endpoints directly.

============================================================================
"""

import hmac
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from app.auth.security import (
    TokenVerificationError,
    decode_session_token,
    encode_session_token,
    extract_bearer_token,
)
from services.exchange_errors import InvalidPinError

# Configure module logger
logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"
ADMIN_SUBJECT = "operator"


@dataclass
class SessionToken:
    token: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "token_type": "bearer",
            "expires_at": self.expires_at.isoformat(),
        }


class AdminGate:
    """
    Issues and checks admin session tokens.

    Reliability Level: L5 High
    Input Constraints: secret >= 32 chars, ttl_seconds > 0
    Side Effects: None beyond logging
    """

    def __init__(
        self,
        pin: str,
        secret: str,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pin = pin
        self._secret = secret
        self._ttl = ttl_seconds
        self._clock = clock

    def login(self, pin: Optional[str]) -> SessionToken:
        """
        Exchange the operator PIN for a session token.

        Raises:
            InvalidPinError: PIN mismatch, or no PIN configured
        """
        if not self._pin or not pin:
            logger.warning("[ADMIN-GATE] Login rejected | reason=missing_pin")
            raise InvalidPinError("Invalid PIN")

        if not hmac.compare_digest(pin.encode("utf-8"), self._pin.encode("utf-8")):
            logger.warning("[ADMIN-GATE] Login rejected | reason=pin_mismatch")
            raise InvalidPinError("Invalid PIN")

        issued_at = int(self._clock())
        expires_at = issued_at + self._ttl
        session_id = str(uuid.uuid4())
        token = encode_session_token(
            {
                "sub": ADMIN_SUBJECT,
                "role": ADMIN_ROLE,
                "iat": issued_at,
                "exp": expires_at,
                "jti": session_id,
            },
            self._secret,
        )
        logger.info(f"[ADMIN-GATE] Session issued | session_id={session_id} | exp={expires_at}")
        return SessionToken(
            token=token,
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
        )

    def authorize(self, authorization: Optional[str]) -> bool:
        """True only for a valid, unexpired token carrying the admin role."""
        token = extract_bearer_token(authorization)
        if token is None:
            return False
        try:
            claims = decode_session_token(token, self._secret, now=self._clock())
        except TokenVerificationError as e:
            logger.info(f"[ADMIN-GATE] Token rejected | error_code={e.error_code}")
            return False
        if claims.get("role") != ADMIN_ROLE:
            logger.info("[ADMIN-GATE] Token rejected | reason=wrong_role")
            return False
        return True


__all__ = ["AdminGate", "SessionToken", "ADMIN_ROLE"]
