"""
============================================================================
ChangeWLD Exchange
Identity Schemas - World ID proof and wallet link bodies
============================================================================
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"


class WorldIdProof(BaseModel):
    """
    MiniKit verify command payload.

    MiniKit adds fields over time (version, ...), so extras are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    status: str = Field(..., description='"success" when the user completed the proof')
    proof: Optional[str] = Field(None, max_length=4096)
    merkle_root: Optional[str] = Field(None, max_length=128)
    nullifier_hash: Optional[str] = Field(None, max_length=128)
    verification_level: Optional[str] = Field(None, max_length=32)

    @property
    def complete(self) -> bool:
        return (
            self.status == "success"
            and bool(self.proof)
            and bool(self.merkle_root)
            and bool(self.nullifier_hash)
            and bool(self.verification_level)
        )


class VerifyIdentityRequest(BaseModel):
    """Body of POST /verify-identity."""

    model_config = ConfigDict(extra="forbid")

    payload: WorldIdProof
    action: Optional[str] = Field(None, max_length=128)
    signal: Optional[str] = Field(None, max_length=512)
    signal_hash: Optional[str] = Field(None, pattern=r"^0x[a-fA-F0-9]{1,64}$")


class LinkWalletRequest(BaseModel):
    """Body of POST /identity/link-wallet."""

    model_config = ConfigDict(extra="forbid")

    identity_handle: str = Field(..., min_length=1, max_length=256)
    wallet_address: str = Field(..., pattern=ADDRESS_PATTERN)


__all__ = ["WorldIdProof", "VerifyIdentityRequest", "LinkWalletRequest"]
