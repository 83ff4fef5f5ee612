"""
============================================================================
ChangeWLD Exchange
Order Schemas - Pydantic Models for Order Endpoints
============================================================================

Reliability Level: L5 High
Input Constraints: Amounts parsed as Decimal via str(), never float math
Side Effects: None (pure validation)

Request bodies are validated before they reach the lifecycle engine.
Unknown fields are rejected. The field names of the original mini app
(banco, titular, numero, montoWLD, montoCOP, nullifier, estado) are
accepted as aliases.

Range rules that carry business meaning (minimum amount, permitted banks,
status values) are left to the engine so they surface with their own
error names.

============================================================================
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)

from services.order_models import OrderInput


# ============================================================================
# CONSTANTS
# ============================================================================

TX_HASH_PATTERN = r"^0x[a-fA-F0-9]{64}$"
MAX_DECIMAL_PLACES = 18


# ============================================================================
# CUSTOM VALIDATORS
# ============================================================================

def parse_amount(value: Any, field_name: str) -> Decimal:
    """
    Convert a JSON number or numeric string to Decimal.

    Non-finite values pass through so the engine can refuse them with
    its own error. Booleans and non-numeric types are rejected here.
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"{field_name} must be a number")
    if isinstance(value, Decimal):
        decimal_value = value
    elif isinstance(value, (int, float, str)):
        try:
            decimal_value = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"{field_name} is not a valid decimal number: {value!r}")
    else:
        raise ValueError(f"{field_name} must be a number, got {type(value).__name__}")

    if decimal_value.is_finite():
        exponent = decimal_value.as_tuple().exponent
        if isinstance(exponent, int) and exponent < -MAX_DECIMAL_PLACES:
            raise ValueError(
                f"{field_name} exceeds {MAX_DECIMAL_PLACES} decimal places"
            )
    return decimal_value


# ============================================================================
# ORDER INPUT SCHEMAS
# ============================================================================

class OrderCreateRequest(BaseModel):
    """Body of POST /orders."""

    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "identity_handle": "0x1a2b3c",
                "verified": True,
                "bank_destination": "Nequi",
                "account_holder": "Ana Gomez",
                "account_number": "3001234567",
                "amount_source": "10",
                "amount_target": "20426.75",
            }
        },
    )

    identity_handle: str = Field(
        ...,
        min_length=1,
        max_length=256,
        validation_alias=AliasChoices("identity_handle", "nullifier"),
        description="World ID nullifier hash of the verified person",
    )
    verified: bool = Field(
        ...,
        description="Result of the World ID verification step",
    )
    bank_destination: str = Field(
        ...,
        min_length=1,
        max_length=64,
        validation_alias=AliasChoices("bank_destination", "banco"),
    )
    account_holder: str = Field(
        ...,
        min_length=1,
        max_length=256,
        validation_alias=AliasChoices("account_holder", "titular"),
    )
    account_number: str = Field(
        ...,
        min_length=1,
        max_length=64,
        validation_alias=AliasChoices("account_number", "numero"),
    )
    amount_source: Decimal = Field(
        ...,
        allow_inf_nan=True,
        validation_alias=AliasChoices("amount_source", "montoWLD"),
        description="WLD sold",
    )
    amount_target: Decimal = Field(
        ...,
        allow_inf_nan=True,
        validation_alias=AliasChoices("amount_target", "montoCOP"),
        description="COP expected",
    )
    onchain_reference: Optional[str] = Field(
        None,
        pattern=TX_HASH_PATTERN,
        validation_alias=AliasChoices("onchain_reference", "tx_hash"),
        description="World Chain transaction hash of the WLD transfer",
    )

    @field_validator("amount_source", mode="before")
    @classmethod
    def validate_amount_source(cls, v: Any) -> Decimal:
        return parse_amount(v, "amount_source")

    @field_validator("amount_target", mode="before")
    @classmethod
    def validate_amount_target(cls, v: Any) -> Decimal:
        return parse_amount(v, "amount_target")

    @field_validator("account_holder", "account_number", "bank_destination", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    def to_input(self) -> OrderInput:
        return OrderInput(
            identity_handle=self.identity_handle,
            verified=self.verified,
            bank_destination=self.bank_destination,
            account_holder=self.account_holder,
            account_number=self.account_number,
            amount_source=self.amount_source,
            amount_target=self.amount_target,
            onchain_reference=self.onchain_reference,
        )


class StatusUpdateRequest(BaseModel):
    """Body of PUT /orders/{id}/status."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    status: str = Field(
        ...,
        min_length=1,
        max_length=32,
        validation_alias=AliasChoices("status", "estado"),
        description="Target status",
    )
    force: bool = Field(
        False,
        description="Accept a transition outside the table, flagged as an anomaly",
    )
    onchain_reference: Optional[str] = Field(
        None,
        pattern=TX_HASH_PATTERN,
        validation_alias=AliasChoices("onchain_reference", "tx_hash"),
    )


class ConfirmTransferRequest(BaseModel):
    """Body of POST /orders/{id}/confirm-transfer."""

    model_config = ConfigDict(extra="forbid")

    tx_hash: Optional[str] = Field(None, pattern=TX_HASH_PATTERN)


__all__ = [
    "OrderCreateRequest",
    "StatusUpdateRequest",
    "ConfirmTransferRequest",
    "parse_amount",
    "TX_HASH_PATTERN",
]
