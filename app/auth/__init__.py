# ============================================================================
# ChangeWLD Exchange
# Authentication & Security Module
# ============================================================================

from app.auth.security import (
    TokenVerificationError,
    encode_session_token,
    decode_session_token,
    extract_bearer_token,
)

__all__ = [
    "TokenVerificationError",
    "encode_session_token",
    "decode_session_token",
    "extract_bearer_token",
]
