# ============================================================================
# ChangeWLD Exchange
# Pydantic Schemas - Request Validation Layer
# ============================================================================

from app.schemas.order import (
    OrderCreateRequest,
    StatusUpdateRequest,
    ConfirmTransferRequest,
)
from app.schemas.identity import VerifyIdentityRequest, LinkWalletRequest
from app.schemas.admin import AdminLoginRequest

__all__ = [
    "OrderCreateRequest",
    "StatusUpdateRequest",
    "ConfirmTransferRequest",
    "VerifyIdentityRequest",
    "LinkWalletRequest",
    "AdminLoginRequest",
]
