"""
Property-Based Tests for Rates, Quota and Order Transitions

Python 3.8 Compatible

Properties:
- net rate is always gross * (1 - margin) and never above gross
- exactly min(k, N) of k same-day orders succeed under a limit of N
- strict transitions succeed exactly for pairs in the table, and a refused
  transition leaves the history untouched
- profit margin is margin / (1 - margin) of the COP amount
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_EVEN

import pytest
from hypothesis import given, settings, strategies as st

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.exchange.price_feeds import FeedQuote, LegResult
from services.exchange_config import ExchangeConfig
from services.exchange_errors import InvalidTransitionError, QuotaExceededError
from services.order_lifecycle import OrderLifecycleEngine, compute_profit_margin
from services.order_models import OrderInput, OrderStatus, VALID_TRANSITIONS
from services.order_store import InMemoryOrderStore
from services.rate_cache import RateCache

TX_HASH = "0x" + "e" * 64
START = datetime(2024, 6, 3, 15, 0, tzinfo=timezone.utc)


def run(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class ConstantFeed:
    name = "constant"

    def __init__(self, source, target):
        self.source = source
        self.target = target

    async def fetch(self, correlation_id=None):
        return FeedQuote(
            source_usd=LegResult(value=self.source),
            target_per_usd=LegResult(value=self.target),
            provider=self.name,
        )


def order_input(identity="0xproperty"):
    return OrderInput(
        identity_handle=identity,
        verified=True,
        bank_destination="Nequi",
        account_holder="Ana Gomez",
        account_number="3001234567",
        amount_source=Decimal("3"),
        amount_target=Decimal("7500"),
    )


# =============================================================================
# Strategies
# =============================================================================

source_strategy = st.decimals(
    min_value=Decimal("0.01"), max_value=Decimal("100"), places=4,
    allow_nan=False, allow_infinity=False,
)
target_strategy = st.decimals(
    min_value=Decimal("1000"), max_value=Decimal("10000"), places=2,
    allow_nan=False, allow_infinity=False,
)
margin_strategy = st.decimals(
    min_value=Decimal("0"), max_value=Decimal("0.99"), places=2,
    allow_nan=False, allow_infinity=False,
)
status_strategy = st.sampled_from(list(OrderStatus))


# =============================================================================
# Rate Properties
# =============================================================================

class TestNetRateProperty:

    @settings(max_examples=100)
    @given(source=source_strategy, target=target_strategy, margin=margin_strategy)
    def test_net_rate_applies_margin(self, source, target, margin):
        """Net rate equals gross * (1 - margin) and never exceeds gross."""
        cache = RateCache(ConstantFeed(source, target), margin=margin)

        snapshot = run(cache.get_rate())

        assert snapshot.gross_rate == source * target
        assert snapshot.net_rate == snapshot.gross_rate * (Decimal("1") - margin)
        assert snapshot.net_rate <= snapshot.gross_rate
        assert not snapshot.source_from_fallback
        assert not snapshot.target_from_fallback


# =============================================================================
# Quota Properties
# =============================================================================

class TestQuotaProperty:

    @settings(max_examples=50, deadline=None)
    @given(limit=st.integers(min_value=1, max_value=5), attempts=st.integers(min_value=0, max_value=8))
    def test_exactly_limit_orders_accepted(self, limit, attempts):
        """k same-day attempts under limit N yield min(k, N) orders."""
        config = ExchangeConfig(session_secret="x" * 64, daily_order_limit=limit)
        engine = OrderLifecycleEngine(config, InMemoryOrderStore(), clock=lambda: START)

        async def scenario():
            accepted = 0
            refused = 0
            for _ in range(attempts):
                try:
                    await engine.create_order(order_input())
                    accepted += 1
                except QuotaExceededError:
                    refused += 1
            return accepted, refused

        accepted, refused = run(scenario())

        assert accepted == min(attempts, limit)
        assert refused == max(0, attempts - limit)

    @settings(max_examples=50, deadline=None)
    @given(minutes=st.integers(min_value=0, max_value=60 * 24 * 3))
    def test_window_is_local_calendar_day(self, minutes):
        """An order created before local midnight never counts the next day."""
        config = ExchangeConfig(session_secret="x" * 64, daily_order_limit=1)
        now = {"value": START}
        engine = OrderLifecycleEngine(config, InMemoryOrderStore(), clock=lambda: now["value"])

        async def scenario():
            await engine.create_order(order_input())
            now["value"] = START + timedelta(minutes=minutes)
            try:
                await engine.create_order(order_input())
                return True
            except QuotaExceededError:
                return False

        second_accepted = run(scenario())

        local_offset = timedelta(hours=-5)
        same_local_day = (START + local_offset).date() == (now["value"] + local_offset).date()
        assert second_accepted is (not same_local_day)


# =============================================================================
# Transition Properties
# =============================================================================

class TestTransitionProperty:

    @settings(max_examples=100, deadline=None)
    @given(current=status_strategy, target=status_strategy)
    def test_strict_engine_follows_table(self, current, target):
        """Accepted iff (current, target) is in the table; refusals leave no trace."""
        config = ExchangeConfig(session_secret="x" * 64)
        engine = OrderLifecycleEngine(config, InMemoryOrderStore(), clock=lambda: START)

        async def scenario():
            order = await engine.create_order(order_input())
            if current != OrderStatus.PENDING:
                await engine.set_status(order.id, current.value, force=True, onchain_reference=TX_HASH)
            before = await engine.get_order(order.id)
            try:
                await engine.set_status(order.id, target.value, onchain_reference=TX_HASH)
                accepted = True
            except InvalidTransitionError:
                accepted = False
            return before, await engine.get_order(order.id), accepted

        before, after, accepted = run(scenario())

        assert accepted is (target in VALID_TRANSITIONS[current])
        if accepted:
            assert after.status == target
            assert len(after.status_history) == len(before.status_history) + 1
            assert after.status_history[-1].anomaly is False
        else:
            assert after.status == current
            assert after.status_history == before.status_history


# =============================================================================
# Economics Properties
# =============================================================================

class TestProfitMarginProperty:

    @settings(max_examples=100)
    @given(
        amount=st.decimals(min_value=Decimal("1"), max_value=Decimal("100000000"), places=2),
        margin=margin_strategy,
    )
    def test_profit_margin_formula(self, amount, margin):
        expected = (margin / (Decimal("1") - margin) * amount).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_EVEN
        )
        assert compute_profit_margin(amount, margin) == expected
        assert compute_profit_margin(amount, margin) >= 0
