# ============================================================================
# ChangeWLD Exchange
# Exchange Module - Currency Precision and Price Feeds
# ============================================================================
#
# Components:
#   - DecimalGateway: Decimal conversion for COP and WLD values
#   - SplitPriceFeed: Binance WLD/USD + ER-API USD/COP
#   - CoinGeckoPriceFeed: Combined WLD/USD and WLD/COP quote
#
# ============================================================================

from app.exchange.decimal_gateway import DecimalGateway, get_decimal_gateway
from app.exchange.price_feeds import (
    PriceFeed,
    SplitPriceFeed,
    CoinGeckoPriceFeed,
    FeedQuote,
    LegResult,
    create_price_feed,
)

__all__ = [
    "DecimalGateway",
    "get_decimal_gateway",
    "PriceFeed",
    "SplitPriceFeed",
    "CoinGeckoPriceFeed",
    "FeedQuote",
    "LegResult",
    "create_price_feed",
]
