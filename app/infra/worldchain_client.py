"""
============================================================================
ChangeWLD Exchange
World Chain Client - WLD balance and transfer receipt oracle
============================================================================

Reliability Level: L4 Standard
Input Constraints: 0x-prefixed addresses (40 hex) and tx hashes (64 hex)
Side Effects: JSON-RPC POST calls to WORLDCHAIN_RPC_URL

Two read-only questions are asked of the chain:

- get_wld_balance(address): ERC-20 balanceOf through eth_call, returned in
  WLD truncated to 4 decimals.
- get_transfer_info(tx_hash, recipient): eth_getTransactionReceipt, classified as
    pending      no receipt yet
    failed       receipt status != 1
    no-transfer  no WLD Transfer log in the receipt
    confirmed    WLD Transfer log to recipient, else the first (from, to, value in wei)

ERROR CODES:
    - CHAIN-001: RPC not configured
    - CHAIN-002: RPC timeout or transport failure
    - CHAIN-003: RPC returned an error object or malformed result

============================================================================
"""

import itertools
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from app.exchange.decimal_gateway import get_decimal_gateway
from services.exchange_errors import (
    ExchangeErrorCode,
    UpstreamUnavailableError,
    ValidationError,
)

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
TX_HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")

# keccak256("balanceOf(address)")[:4]
BALANCE_OF_SELECTOR = "0x70a08231"
# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

DEFAULT_TIMEOUT_SECONDS = 5.0


class ChainErrorCode:
    NOT_CONFIGURED = "CHAIN-001"
    TRANSPORT = "CHAIN-002"
    BAD_RESPONSE = "CHAIN-003"


class TransferStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"
    NO_TRANSFER = "no-transfer"
    CONFIRMED = "confirmed"


@dataclass
class TransferInfo:
    tx_hash: str
    status: TransferStatus
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    value_wei: Optional[int] = None

    @property
    def value_wld(self) -> Optional[Decimal]:
        if self.value_wei is None:
            return None
        return get_decimal_gateway().wei_to_wld(self.value_wei)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "status": self.status.value,
            "from": self.from_address,
            "to": self.to_address,
            "value_wei": str(self.value_wei) if self.value_wei is not None else None,
            "value_wld": str(self.value_wld) if self.value_wei is not None else None,
        }


def is_valid_address(address: Optional[str]) -> bool:
    return bool(address) and ADDRESS_PATTERN.match(address) is not None


def is_valid_tx_hash(tx_hash: Optional[str]) -> bool:
    return bool(tx_hash) and TX_HASH_PATTERN.match(tx_hash) is not None


def _topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def _hex_to_int(value: Any) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ValueError(f"Not a hex quantity: {value!r}")
    return int(value, 16) if len(value) > 2 else 0


# ============================================================================
# CLIENT
# ============================================================================

class WorldChainClient:
    """Minimal JSON-RPC client for the WLD token on World Chain."""

    def __init__(
        self,
        rpc_url: str,
        token_address: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._token_address = (token_address or "").lower()
        self._timeout = timeout
        self._transport = transport
        self._ids = itertools.count(1)

        if not rpc_url or not token_address:
            logger.warning(
                f"[{ChainErrorCode.NOT_CONFIGURED}] World Chain RPC or token address not configured"
            )

    @property
    def configured(self) -> bool:
        return bool(self._rpc_url and self._token_address)

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        if not self.configured:
            raise UpstreamUnavailableError(
                "World Chain is not configured on the backend",
                error_code=ChainErrorCode.NOT_CONFIGURED,
            )

        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._rpc_url, json=payload)
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException as e:
            logger.warning(f"[{ChainErrorCode.TRANSPORT}] RPC timeout | method={method}")
            raise UpstreamUnavailableError(
                "World Chain RPC timed out", error_code=ChainErrorCode.TRANSPORT
            ) from e
        except httpx.HTTPError as e:
            logger.warning(
                f"[{ChainErrorCode.TRANSPORT}] RPC failed | method={method} | error={str(e)[:100]}"
            )
            raise UpstreamUnavailableError(
                "World Chain RPC unreachable", error_code=ChainErrorCode.TRANSPORT
            ) from e
        except ValueError as e:
            raise UpstreamUnavailableError(
                "World Chain RPC returned invalid JSON", error_code=ChainErrorCode.BAD_RESPONSE
            ) from e

        if not isinstance(body, dict) or body.get("error"):
            error = body.get("error") if isinstance(body, dict) else body
            logger.warning(f"[{ChainErrorCode.BAD_RESPONSE}] RPC error | method={method} | error={error}")
            raise UpstreamUnavailableError(
                "World Chain RPC returned an error",
                error_code=ChainErrorCode.BAD_RESPONSE,
                detail=error,
            )
        return body.get("result")

    async def get_wld_balance(self, address: str) -> Decimal:
        """WLD balance of address, truncated to 4 decimals."""
        if not is_valid_address(address):
            raise ValidationError(
                "Invalid wallet address", error="InvalidAddress",
                error_code=ExchangeErrorCode.VALIDATION,
            )

        data = BALANCE_OF_SELECTOR + address[2:].lower().rjust(64, "0")
        result = await self._rpc(
            "eth_call",
            [{"to": self._token_address, "data": data}, "latest"],
        )
        try:
            raw = _hex_to_int(result)
        except ValueError as e:
            raise UpstreamUnavailableError(
                "Malformed balanceOf result", error_code=ChainErrorCode.BAD_RESPONSE
            ) from e

        gateway = get_decimal_gateway()
        return gateway.truncate_balance(gateway.wei_to_wld(raw))

    async def get_transfer_info(
        self,
        tx_hash: str,
        recipient: Optional[str] = None,
    ) -> TransferInfo:
        """
        Classify a transaction by its receipt.

        Every WLD Transfer log is scanned. With a recipient, the first log
        paying that address is reported; otherwise (or when none pays it)
        the first Transfer log is.
        """
        if not is_valid_tx_hash(tx_hash):
            raise ValidationError(
                "Invalid transaction hash", error="InvalidTxHash",
                error_code=ExchangeErrorCode.VALIDATION,
            )

        receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        if receipt is None:
            return TransferInfo(tx_hash=tx_hash, status=TransferStatus.PENDING)

        try:
            status = _hex_to_int(receipt.get("status"))
        except (AttributeError, ValueError) as e:
            raise UpstreamUnavailableError(
                "Malformed transaction receipt", error_code=ChainErrorCode.BAD_RESPONSE
            ) from e
        if status != 1:
            return TransferInfo(tx_hash=tx_hash, status=TransferStatus.FAILED)

        transfers: List[TransferInfo] = []
        for log in receipt.get("logs") or []:
            topics = log.get("topics") or []
            if (
                str(log.get("address", "")).lower() == self._token_address
                and len(topics) >= 3
                and str(topics[0]).lower() == TRANSFER_TOPIC
            ):
                try:
                    value = _hex_to_int(log.get("data"))
                except ValueError as e:
                    raise UpstreamUnavailableError(
                        "Malformed Transfer log", error_code=ChainErrorCode.BAD_RESPONSE
                    ) from e
                transfers.append(TransferInfo(
                    tx_hash=tx_hash,
                    status=TransferStatus.CONFIRMED,
                    from_address=_topic_to_address(topics[1]),
                    to_address=_topic_to_address(topics[2]),
                    value_wei=value,
                ))

        if not transfers:
            return TransferInfo(tx_hash=tx_hash, status=TransferStatus.NO_TRANSFER)
        if recipient:
            wanted = recipient.lower()
            for transfer in transfers:
                if transfer.to_address == wanted:
                    return transfer
        return transfers[0]


__all__ = [
    "WorldChainClient",
    "TransferInfo",
    "TransferStatus",
    "ChainErrorCode",
    "is_valid_address",
    "is_valid_tx_hash",
    "TRANSFER_TOPIC",
    "BALANCE_OF_SELECTOR",
]
