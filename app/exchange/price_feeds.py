"""
============================================================================
ChangeWLD Exchange
Price Feeds - WLD/USD and USD/COP upstreams
============================================================================

Reliability Level: L4 Standard
Input Constraints: Reachable public price APIs
Side Effects: HTTP GET calls with a bounded timeout

PROVIDERS:
    - split: Binance WLDUSDT ticker for WLD->USD and open.er-api.com for
      USD->COP. The two legs are fetched concurrently and fail independently.
    - coingecko: one simple/price call returning WLD in USD and COP; the
      USD->COP leg is derived as cop / usd.

A feed never raises on upstream failure. Each leg comes back either with a
finite Decimal value or with an error string; deciding on fallbacks is the
rate cache's job.

ERROR CODES:
    - FEED-001: Upstream timeout
    - FEED-002: Upstream connection or HTTP error
    - FEED-003: Unexpected payload shape

============================================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import httpx

from app.exchange.decimal_gateway import get_decimal_gateway

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

BINANCE_TICKER_URL = "https://api.binance.com/api/v3/ticker/price"
BINANCE_SYMBOL = "WLDUSDT"
ER_API_URL = "https://open.er-api.com/v6/latest/USD"
COINGECKO_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"
COINGECKO_ID = "worldcoin-wld"

DEFAULT_TIMEOUT_SECONDS = 5.0


class FeedErrorCode:
    TIMEOUT = "FEED-001"
    HTTP_ERROR = "FEED-002"
    BAD_PAYLOAD = "FEED-003"


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass
class LegResult:
    """One leg of the rate: a value or the reason it is missing."""
    value: Optional[Decimal] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None


@dataclass
class FeedQuote:
    source_usd: LegResult
    target_per_usd: LegResult
    provider: str


class FeedError(Exception):
    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# ============================================================================
# BASE FEED
# ============================================================================

class PriceFeed(ABC):
    """Base class wrapping httpx with the shared timeout and error mapping."""

    name = "base"

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            response = await client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            raise FeedError(FeedErrorCode.TIMEOUT, f"Timeout calling {url}") from e
        except httpx.HTTPError as e:
            raise FeedError(
                FeedErrorCode.HTTP_ERROR, f"{url} failed: {str(e)[:100]}"
            ) from e
        except ValueError as e:
            raise FeedError(FeedErrorCode.BAD_PAYLOAD, f"{url} returned invalid JSON") from e

    @staticmethod
    def _leg(value: Any, label: str) -> LegResult:
        parsed = get_decimal_gateway().parse_finite(value)
        if parsed is None:
            return LegResult(error=f"[{FeedErrorCode.BAD_PAYLOAD}] {label} missing or not finite")
        return LegResult(value=parsed)

    @abstractmethod
    async def fetch(self, correlation_id: Optional[str] = None) -> FeedQuote:
        ...


# ============================================================================
# PROVIDERS
# ============================================================================

class SplitPriceFeed(PriceFeed):
    """Binance for WLD/USD, ER-API for USD/COP."""

    name = "split"

    async def fetch(self, correlation_id: Optional[str] = None) -> FeedQuote:
        async with self._client() as client:
            source, target = await asyncio.gather(
                self._fetch_source(client),
                self._fetch_target(client),
            )

        for label, leg in (("WLD_USD", source), ("USD_COP", target)):
            if not leg.ok:
                logger.warning(
                    f"[FEED-LEG-FAILED] provider={self.name} | leg={label} | "
                    f"error={leg.error} | correlation_id={correlation_id}"
                )

        return FeedQuote(source_usd=source, target_per_usd=target, provider=self.name)

    async def _fetch_source(self, client: httpx.AsyncClient) -> LegResult:
        try:
            payload = await self._get_json(
                client, BINANCE_TICKER_URL, params={"symbol": BINANCE_SYMBOL}
            )
        except FeedError as e:
            return LegResult(error=str(e))
        if not isinstance(payload, dict):
            return LegResult(error=f"[{FeedErrorCode.BAD_PAYLOAD}] Binance payload not an object")
        return self._leg(payload.get("price"), "Binance price")

    async def _fetch_target(self, client: httpx.AsyncClient) -> LegResult:
        try:
            payload = await self._get_json(client, ER_API_URL)
        except FeedError as e:
            return LegResult(error=str(e))
        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            return LegResult(error=f"[{FeedErrorCode.BAD_PAYLOAD}] ER-API payload has no rates")
        return self._leg(rates.get("COP"), "ER-API COP rate")


class CoinGeckoPriceFeed(PriceFeed):
    """Single CoinGecko call for both legs."""

    name = "coingecko"

    async def fetch(self, correlation_id: Optional[str] = None) -> FeedQuote:
        source, target = await self._fetch_legs()
        if not (source.ok and target.ok):
            logger.warning(
                f"[FEED-LEG-FAILED] provider={self.name} | "
                f"source_error={source.error} | target_error={target.error} | "
                f"correlation_id={correlation_id}"
            )
        return FeedQuote(source_usd=source, target_per_usd=target, provider=self.name)

    async def _fetch_legs(self) -> Tuple[LegResult, LegResult]:
        try:
            async with self._client() as client:
                payload = await self._get_json(
                    client,
                    COINGECKO_PRICE_URL,
                    params={"ids": COINGECKO_ID, "vs_currencies": "usd,cop"},
                )
        except FeedError as e:
            return LegResult(error=str(e)), LegResult(error=str(e))

        data = payload.get(COINGECKO_ID) if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            error = f"[{FeedErrorCode.BAD_PAYLOAD}] CoinGecko payload has no {COINGECKO_ID}"
            return LegResult(error=error), LegResult(error=error)

        source = self._leg(data.get("usd"), "CoinGecko usd")
        cop = self._leg(data.get("cop"), "CoinGecko cop")
        if not cop.ok:
            return source, cop
        if not source.ok or source.value == 0:
            return source, LegResult(
                error=f"[{FeedErrorCode.BAD_PAYLOAD}] USD_COP not derivable without usd price"
            )
        return source, LegResult(value=cop.value / source.value)


def create_price_feed(
    provider: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PriceFeed:
    """Factory keyed by the RATE_PROVIDER setting."""
    if provider == CoinGeckoPriceFeed.name:
        return CoinGeckoPriceFeed(timeout=timeout, transport=transport)
    if provider == SplitPriceFeed.name:
        return SplitPriceFeed(timeout=timeout, transport=transport)
    raise ValueError(f"Unknown rate provider: {provider}")


__all__ = [
    "LegResult",
    "FeedQuote",
    "FeedError",
    "FeedErrorCode",
    "PriceFeed",
    "SplitPriceFeed",
    "CoinGeckoPriceFeed",
    "create_price_feed",
]
