"""
============================================================================
ChangeWLD Exchange
Security Module - HMAC-SHA256 Signed Session Tokens
============================================================================

Reliability Level: L5 High
Input Constraints: Token string, signing secret (>= 32 chars)
Side Effects: None (pure signing and verification)

TOKEN FORMAT:
    <base64url(JSON claims)>.<hex HMAC-SHA256(base64url part)>

    claims = {"sub": ..., "role": ..., "iat": <epoch>, "exp": <epoch>, "jti": ...}

Signature comparison is constant-time. Verification failures raise
TokenVerificationError with a specific code; callers that need a boolean
answer catch it.

Error Codes:
    SEC-001: Missing token
    SEC-002: Missing or invalid secret key
    SEC-003: Signature mismatch
    SEC-004: Malformed token
    SEC-005: Token expired

============================================================================
"""

import base64
import hmac
import hashlib
import json
import time
from typing import Any, Dict, Optional


# ============================================================================
# CONSTANTS
# ============================================================================

MIN_SECRET_LENGTH = 32
BEARER_PREFIX = "bearer "
HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


# ============================================================================
# EXCEPTIONS
# ============================================================================

class TokenVerificationError(Exception):
    """Raised when a session token cannot be trusted."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# ============================================================================
# HMAC PRIMITIVES
# ============================================================================

def _check_secret(secret_key: str) -> None:
    if not secret_key or len(secret_key) < MIN_SECRET_LENGTH:
        raise TokenVerificationError(
            "SEC-002",
            f"Signing secret must be at least {MIN_SECRET_LENGTH} characters."
        )


def compute_hmac_signature(payload: bytes, secret_key: str) -> str:
    """Hexadecimal HMAC-SHA256 of payload."""
    signature = hmac.new(
        key=secret_key.encode("utf-8"),
        msg=payload,
        digestmod=hashlib.sha256
    )
    return signature.hexdigest()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


# ============================================================================
# SESSION TOKENS
# ============================================================================

def encode_session_token(claims: Dict[str, Any], secret_key: str) -> str:
    """Serialize and sign claims."""
    _check_secret(secret_key)
    body = _b64encode(
        json.dumps(claims, sort_keys=True, separators=(",", ":")).encode("utf-8")
    )
    return f"{body}.{compute_hmac_signature(body.encode('ascii'), secret_key)}"


def decode_session_token(
    token: Optional[str],
    secret_key: str,
    now: Optional[float] = None
) -> Dict[str, Any]:
    """
    Verify a token and return its claims.

    Raises:
        TokenVerificationError: On any failure (SEC-001 to SEC-005)
    """
    if not token:
        raise TokenVerificationError("SEC-001", "Missing session token.")

    _check_secret(secret_key)

    parts = token.strip().split(".")
    if len(parts) != 2 or not parts[0] or len(parts[1]) != 64:
        raise TokenVerificationError("SEC-004", "Malformed session token.")
    body, provided_signature = parts

    if any(c not in HEX_DIGITS for c in provided_signature):
        raise TokenVerificationError("SEC-004", "Session token signature is not hexadecimal.")
    try:
        body_bytes = body.encode("ascii")
    except UnicodeEncodeError as e:
        raise TokenVerificationError("SEC-004", "Malformed session token.") from e

    expected_signature = compute_hmac_signature(body_bytes, secret_key)
    if not hmac.compare_digest(expected_signature, provided_signature.lower()):
        raise TokenVerificationError("SEC-003", "Session token signature mismatch.")

    try:
        claims = json.loads(_b64decode(body).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise TokenVerificationError("SEC-004", "Session token body is not valid JSON.") from e

    if not isinstance(claims, dict):
        raise TokenVerificationError("SEC-004", "Session token claims must be an object.")

    expires_at = claims.get("exp")
    if not isinstance(expires_at, (int, float)) or isinstance(expires_at, bool):
        raise TokenVerificationError("SEC-004", "Session token has no expiry.")

    current = time.time() if now is None else now
    if current >= expires_at:
        raise TokenVerificationError("SEC-005", "Session token expired.")

    return claims


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Token from an "Authorization: Bearer <token>" header value."""
    if not authorization:
        return None
    value = authorization.strip()
    if value.lower().startswith(BEARER_PREFIX):
        token = value[len(BEARER_PREFIX):].strip()
        return token or None
    return None


# ============================================================================
# END OF SECURITY MODULE
# ============================================================================
