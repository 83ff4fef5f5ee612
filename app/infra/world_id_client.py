"""
============================================================================
ChangeWLD Exchange
World ID Client - Identity Verification Gateway
============================================================================

Reliability Level: L4 Standard
Input Constraints: MiniKit proof payload with status == "success"
Side Effects: HTTP POST to the World ID developer API

Cloud verification of a World ID proof:

    POST {WORLD_ID_API_BASE}/api/v2/verify/{APP_ID}
    {nullifier_hash, merkle_root, proof, verification_level, action, signal_hash?}

A 200 response means the person is verified; the nullifier hash is the
identity handle used for orders. Any other response means not verified.

ERROR CODES:
    - UPS-501: APP_ID not configured
    - UPS-500: Verifier timeout or unreachable

============================================================================
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from services.exchange_errors import (
    ExchangeErrorCode,
    UpstreamUnavailableError,
)

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://developer.worldcoin.org"
DEFAULT_TIMEOUT_SECONDS = 5.0


@dataclass
class VerificationResult:
    verified: bool
    identity_handle: Optional[str] = None
    verification_level: Optional[str] = None
    error_code: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verified": self.verified,
            "identity_handle": self.identity_handle,
            "verification_level": self.verification_level,
            "error_code": self.error_code,
            "detail": self.detail,
        }


class WorldIdClient:
    """Opaque verifier: proof in, verified flag and nullifier out."""

    def __init__(
        self,
        app_id: str,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._app_id = app_id
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._app_id)

    async def verify(
        self,
        proof: Dict[str, Any],
        action: str,
        signal_hash: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> VerificationResult:
        """
        Verify a proof.

        Args:
            proof: nullifier_hash, merkle_root, proof, verification_level
            action: Incognito action the proof was generated for
            signal_hash: Pre-hashed signal, omitted for the empty signal

        Raises:
            UpstreamUnavailableError: Misconfigured (UPS-501) or unreachable
        """
        if not self.configured:
            logger.error(f"[{ExchangeErrorCode.VERIFIER_MISCONFIGURED}] APP_ID not configured")
            raise UpstreamUnavailableError(
                "APP_ID is not configured on the backend",
                error="VerifierMisconfigured",
                error_code=ExchangeErrorCode.VERIFIER_MISCONFIGURED,
            )

        body = {
            "nullifier_hash": proof.get("nullifier_hash"),
            "merkle_root": proof.get("merkle_root"),
            "proof": proof.get("proof"),
            "verification_level": proof.get("verification_level"),
            "action": action,
        }
        if signal_hash:
            body["signal_hash"] = signal_hash

        url = f"{self._api_base}/api/v2/verify/{self._app_id}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=body)
        except httpx.TimeoutException as e:
            logger.warning(f"[WORLD-ID-TIMEOUT] correlation_id={correlation_id}")
            raise UpstreamUnavailableError("World ID verifier timed out") from e
        except httpx.HTTPError as e:
            logger.warning(
                f"[WORLD-ID-CONNECT-ERROR] error={str(e)[:100]} | correlation_id={correlation_id}"
            )
            raise UpstreamUnavailableError("World ID verifier unreachable") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code == 200:
            logger.info(
                f"[WORLD-ID-VERIFIED] level={body['verification_level']} | "
                f"correlation_id={correlation_id}"
            )
            return VerificationResult(
                verified=True,
                identity_handle=payload.get("nullifier_hash") or body["nullifier_hash"],
                verification_level=body["verification_level"],
            )

        if response.status_code >= 500:
            logger.warning(
                f"[WORLD-ID-SERVER-ERROR] status={response.status_code} | "
                f"correlation_id={correlation_id}"
            )
            raise UpstreamUnavailableError(
                f"World ID verifier returned {response.status_code}"
            )

        logger.info(
            f"[WORLD-ID-REJECTED] status={response.status_code} | "
            f"code={payload.get('code')} | correlation_id={correlation_id}"
        )
        return VerificationResult(
            verified=False,
            error_code=payload.get("code"),
            detail={"status": response.status_code, "detail": payload.get("detail")},
        )


__all__ = ["WorldIdClient", "VerificationResult"]
