"""
============================================================================
ChangeWLD Exchange
Identity Endpoints - World ID verification, wallet link, balance
============================================================================

Reliability Level: L5 High
Input Constraints: MiniKit verify payloads, 0x-prefixed wallet addresses
Side Effects: World ID API calls, World Chain RPC reads, identity writes

ERROR CODES:
    - EXC-400: InvalidProof / NotVerified / malformed body
    - ORD-404: Unknown identity or no wallet linked
    - UPS-500: Verifier or RPC unreachable
    - UPS-501: Verifier misconfigured (APP_ID missing)

============================================================================
"""

import logging
import uuid

from fastapi import APIRouter, Depends

from app.api.dependencies import ExchangeServices, get_services
from app.schemas.identity import LinkWalletRequest, VerifyIdentityRequest
from services.exchange_errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/verify-identity",
    summary="Verify World ID Proof",
    description=(
        "Checks a MiniKit proof-of-personhood payload against the World ID "
        "verifier. On success the nullifier hash becomes the identity handle "
        "used on orders."
    ),
    responses={
        200: {"description": "Proof verified"},
        400: {"description": "Incomplete or rejected proof (EXC-400)"},
        500: {"description": "Verifier misconfigured or unreachable (UPS-500/501)"},
    },
)
async def verify_identity(
    body: VerifyIdentityRequest,
    services: ExchangeServices = Depends(get_services),
):
    correlation_id = str(uuid.uuid4())
    if not body.payload.complete:
        raise ValidationError(
            "Proof payload is incomplete or was not successful",
            error="InvalidProof",
        )
    if body.signal and not body.signal_hash:
        raise ValidationError(
            "A non-empty signal must be sent with its signal_hash",
            error="InvalidProof",
        )

    result = await services.verifier.verify(
        body.payload.model_dump(),
        action=body.action or services.config.world_id_action,
        signal_hash=body.signal_hash,
        correlation_id=correlation_id,
    )
    if not result.verified:
        raise ValidationError(
            "Proof was not accepted by the verifier",
            error="NotVerified",
            detail={"code": result.error_code, **result.detail},
        )

    record = await services.identity_store.record_verified(result.identity_handle)
    logger.info(
        f"[IDENTITY-VERIFIED] level={result.verification_level} | "
        f"correlation_id={correlation_id}"
    )
    return {
        "ok": True,
        "verified": True,
        "identity_handle": record.identity_handle,
        "verification_level": result.verification_level,
    }


@router.post(
    "/identity/link-wallet",
    summary="Link Wallet",
    description="Associates a World Chain wallet address with an identity handle.",
)
async def link_wallet(
    body: LinkWalletRequest,
    services: ExchangeServices = Depends(get_services),
):
    record = await services.identity_store.link_wallet(
        body.identity_handle, body.wallet_address
    )
    return {"ok": True, "identity": record.to_dict()}


@router.get(
    "/identity/{identity_handle}/balance",
    summary="Linked Wallet Balance",
    description="WLD balance of the wallet linked to the identity, truncated to 4 decimals.",
    responses={
        404: {"description": "Identity unknown or no wallet linked (ORD-404)"},
        500: {"description": "World Chain RPC unreachable (UPS-500)"},
    },
)
async def wallet_balance(
    identity_handle: str,
    services: ExchangeServices = Depends(get_services),
):
    record = await services.identity_store.get(identity_handle)
    if record is None or not record.wallet_address:
        raise NotFoundError(
            f"No wallet linked to identity {identity_handle}",
            error="WalletNotLinked",
        )
    balance = await services.chain_client.get_wld_balance(record.wallet_address)
    return {
        "ok": True,
        "identity_handle": identity_handle,
        "wallet_address": record.wallet_address,
        "balance_wld": str(balance),
    }
