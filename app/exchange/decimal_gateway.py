# ============================================================================
# ChangeWLD Exchange
# Decimal Gateway - Currency Precision
# ============================================================================
#
# Reliability Level: L5 High
# Purpose: Ensures all money values use decimal.Decimal
#
# PRECISION RULES:
#   - Token amounts convert exactly between wei and WLD (18 decimals)
#   - WLD to wei rounds ROUND_HALF_EVEN to the nearest wei
#   - Displayed WLD balances are truncated to 4 decimal places (ROUND_DOWN)
#   - Upstream JSON numbers pass through str() before Decimal()
#
# ============================================================================

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, InvalidOperation
from typing import Optional, Any

WLD_DECIMALS = 18
WEI_PER_WLD = Decimal(10) ** WLD_DECIMALS


class DecimalGateway:
    """
    Central conversion layer for currency values.

    Example Usage:
        gateway = DecimalGateway()

        price = gateway.parse_finite(payload["price"])   # None if not finite
        wld = gateway.wei_to_wld(1_500_000_000_000_000_000)   # Decimal('1.5')
        shown = gateway.truncate_balance(wld)
    """

    BALANCE_DISPLAY_PRECISION = Decimal('0.0001')

    def parse_finite(self, value: Any) -> Optional[Decimal]:
        """
        Parse an upstream number without rounding.

        Returns None for anything that is not a finite number: missing
        values, booleans, NaN, infinities and unparseable strings.
        """
        if value is None or isinstance(value, bool):
            return None
        try:
            decimal_value = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            return None
        if not decimal_value.is_finite():
            return None
        return decimal_value

    def wei_to_wld(self, wei: int) -> Decimal:
        """Exact conversion of an 18-decimal token amount."""
        return Decimal(wei) / WEI_PER_WLD

    def wld_to_wei(self, amount: Decimal) -> int:
        return int((amount * WEI_PER_WLD).to_integral_value(rounding=ROUND_HALF_EVEN))

    def truncate_balance(self, amount: Decimal) -> Decimal:
        return amount.quantize(self.BALANCE_DISPLAY_PRECISION, rounding=ROUND_DOWN)


# ============================================================================
# Module-level singleton for convenience
# ============================================================================

_gateway_instance: Optional[DecimalGateway] = None


def get_decimal_gateway() -> DecimalGateway:
    global _gateway_instance
    if _gateway_instance is None:
        _gateway_instance = DecimalGateway()
    return _gateway_instance
