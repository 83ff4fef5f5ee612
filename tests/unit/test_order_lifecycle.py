"""
Unit Tests for the Order Lifecycle Engine

Python 3.8 Compatible

Tests order creation (bank, identity and amount checks, daily quota,
inventory date, profit margin), status transitions (strict table,
forced anomalies, paid reference rule) and on-chain transfer confirmation.
"""

import os
import sys
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.infra.worldchain_client import TransferInfo, TransferStatus
from services.exchange_config import ExchangeConfig
from services.exchange_errors import (
    InternalError,
    InvalidTransitionError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from services.identity_store import InMemoryIdentityStore
from services.order_lifecycle import (
    SIMULATED_REFERENCE_PREFIX,
    OrderLifecycleEngine,
    compute_profit_margin,
)
from services.order_models import OrderInput, OrderStatus
from services.order_store import InMemoryOrderStore

PAYOUT_WALLET = "0x" + "b" * 40
TX_HASH = "0x" + "a" * 64


class FakeClock:
    """Mutable UTC clock. Starts Monday 2024-06-03 10:00 local (UTC-5)."""

    def __init__(self):
        self.now = datetime(2024, 6, 3, 15, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeChain:
    def __init__(self, transfer):
        self.transfer = transfer
        self.calls = []
        self.recipients = []

    async def get_transfer_info(self, tx_hash, recipient=None):
        self.calls.append(tx_hash)
        self.recipients.append(recipient)
        return self.transfer


def make_input(identity="0xnullifier", **overrides):
    fields = dict(
        identity_handle=identity,
        verified=True,
        bank_destination="Nequi",
        account_holder="Ana Gomez",
        account_number="3001234567",
        amount_source=Decimal("10"),
        amount_target=Decimal("20426.75"),
    )
    fields.update(overrides)
    return OrderInput(**fields)


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return ExchangeConfig(session_secret="x" * 64, payout_wallet=PAYOUT_WALLET)


@pytest.fixture
def store(clock):
    return InMemoryOrderStore(clock=clock)


@pytest.fixture
def engine(config, store, clock):
    return OrderLifecycleEngine(config, store, clock=clock)


# =============================================================================
# Creation
# =============================================================================

class TestCreateOrder:

    @pytest.mark.asyncio
    async def test_creates_pending_order_with_history(self, engine, clock):
        order = await engine.create_order(make_input())

        assert order.id == 1
        assert order.status == OrderStatus.PENDING
        assert len(order.status_history) == 1
        assert order.status_history[0].to == OrderStatus.PENDING
        assert order.status_history[0].at == clock.now
        assert order.created_at == clock.now
        assert order.has_anomaly is False

    @pytest.mark.asyncio
    async def test_profit_margin_and_inventory_date(self, engine):
        """margin 0.25 on 20426.75 COP keeps 6808.92 COP."""
        order = await engine.create_order(make_input())

        assert order.profit_margin == Decimal("6808.92")
        assert order.inventory_date == date(2024, 6, 3)

    @pytest.mark.asyncio
    async def test_after_cutoff_settles_next_day(self, engine, clock):
        clock.advance(hours=8)  # 18:00 local
        order = await engine.create_order(make_input())
        assert order.inventory_date == date(2024, 6, 4)

    @pytest.mark.asyncio
    async def test_unknown_bank_rejected_without_consuming_id(self, engine, store):
        with pytest.raises(ValidationError) as exc_info:
            await engine.create_order(make_input(bank_destination="UnknownBank"))

        assert exc_info.value.error == "InvalidBank"
        assert exc_info.value.http_status == 400
        assert await store.list_all() == []
        assert (await engine.create_order(make_input())).id == 1

    @pytest.mark.asyncio
    async def test_unverified_identity_rejected(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            await engine.create_order(make_input(verified=False))
        assert exc_info.value.error == "UnverifiedIdentity"

    @pytest.mark.parametrize("amount", [Decimal("0.5"), Decimal("0"), Decimal("-3"), Decimal("NaN"), Decimal("Infinity")])
    @pytest.mark.asyncio
    async def test_amount_below_minimum_rejected(self, engine, amount):
        with pytest.raises(ValidationError) as exc_info:
            await engine.create_order(make_input(amount_source=amount))
        assert exc_info.value.error == "BelowMinimum"

    @pytest.mark.asyncio
    async def test_minimum_amount_is_accepted(self, engine):
        order = await engine.create_order(make_input(amount_source=Decimal("1")))
        assert order.amount_source == Decimal("1")

    @pytest.mark.asyncio
    async def test_non_positive_target_rejected(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            await engine.create_order(make_input(amount_target=Decimal("0")))
        assert exc_info.value.error == "InvalidAmount"

    @pytest.mark.parametrize("field,value", [
        ("amount_target", Decimal("1e30")),
        ("amount_source", Decimal("1e16")),
    ])
    @pytest.mark.asyncio
    async def test_oversized_amount_rejected_without_consuming_id(self, engine, store, field, value):
        with pytest.raises(ValidationError) as exc_info:
            await engine.create_order(make_input(**{field: value}))

        assert exc_info.value.error == "InvalidAmount"
        assert exc_info.value.http_status == 400
        assert exc_info.value.detail["field"] == field
        assert await store.list_all() == []
        assert (await engine.create_order(make_input())).id == 1

    @pytest.mark.asyncio
    async def test_largest_amounts_accepted(self, engine):
        order = await engine.create_order(make_input(
            amount_source=Decimal("1e15"), amount_target=Decimal("1e15"),
        ))
        assert order.amount_target == Decimal("1e15")

    @pytest.mark.asyncio
    async def test_recorded_identity_required_when_configured(self, store, clock):
        config = ExchangeConfig(session_secret="x" * 64, require_recorded_identity=True)
        identities = InMemoryIdentityStore()
        engine = OrderLifecycleEngine(config, store, identity_store=identities, clock=clock)

        with pytest.raises(ValidationError):
            await engine.create_order(make_input())

        await identities.record_verified("0xnullifier")
        order = await engine.create_order(make_input())
        assert order.id == 1


# =============================================================================
# Daily Quota
# =============================================================================

class TestDailyQuota:

    @pytest.mark.asyncio
    async def test_fourth_order_same_day_rejected(self, engine, store):
        for _ in range(3):
            await engine.create_order(make_input())

        with pytest.raises(QuotaExceededError) as exc_info:
            await engine.create_order(make_input())

        assert exc_info.value.http_status == 429
        assert exc_info.value.detail["limit"] == 3
        assert len(await store.list_all()) == 3

    @pytest.mark.asyncio
    async def test_quota_is_per_identity(self, engine):
        for _ in range(3):
            await engine.create_order(make_input())
        order = await engine.create_order(make_input(identity="0xsomeone-else"))
        assert order.id == 4

    @pytest.mark.asyncio
    async def test_quota_resets_at_local_midnight(self, engine, clock):
        for _ in range(3):
            await engine.create_order(make_input())

        clock.now = datetime(2024, 6, 4, 4, 59, tzinfo=timezone.utc)  # 23:59 local
        with pytest.raises(QuotaExceededError):
            await engine.create_order(make_input())

        clock.now = datetime(2024, 6, 4, 5, 0, tzinfo=timezone.utc)  # 00:00 local
        order = await engine.create_order(make_input())
        assert order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_rejected_orders_still_count(self, engine):
        for _ in range(3):
            order = await engine.create_order(make_input())
            await engine.set_status(order.id, "rejected")

        with pytest.raises(QuotaExceededError):
            await engine.create_order(make_input())

    @pytest.mark.asyncio
    async def test_custom_limit(self, store, clock):
        config = ExchangeConfig(session_secret="x" * 64, daily_order_limit=1)
        engine = OrderLifecycleEngine(config, store, clock=clock)
        await engine.create_order(make_input())
        with pytest.raises(QuotaExceededError):
            await engine.create_order(make_input())


# =============================================================================
# Transitions
# =============================================================================

class TestSetStatus:

    @pytest.mark.asyncio
    async def test_valid_transition_appends_history(self, engine):
        order = await engine.create_order(make_input())

        updated = await engine.set_status(order.id, "sent")

        assert updated.status == OrderStatus.SENT
        assert [e.to for e in updated.status_history] == [OrderStatus.PENDING, OrderStatus.SENT]
        assert updated.status_history[-1].anomaly is False

    @pytest.mark.asyncio
    async def test_invalid_transition_refused_and_order_unchanged(self, engine):
        order = await engine.create_order(make_input())

        with pytest.raises(InvalidTransitionError) as exc_info:
            await engine.set_status(order.id, "paid", onchain_reference=TX_HASH)

        assert exc_info.value.http_status == 409
        assert exc_info.value.detail["from"] == "pending"
        stored = await engine.get_order(order.id)
        assert stored.status == OrderStatus.PENDING
        assert len(stored.status_history) == 1
        assert stored.onchain_reference is None

    @pytest.mark.asyncio
    async def test_terminal_state_refuses_moves(self, engine):
        order = await engine.create_order(make_input())
        await engine.set_status(order.id, "rejected")
        with pytest.raises(InvalidTransitionError):
            await engine.set_status(order.id, "pending")

    @pytest.mark.asyncio
    async def test_forced_transition_flagged_as_anomaly(self, engine):
        order = await engine.create_order(make_input())
        await engine.set_status(order.id, "rejected")

        updated = await engine.set_status(order.id, "pending", force=True)

        assert updated.status == OrderStatus.PENDING
        assert updated.status_history[-1].anomaly is True
        assert updated.status_history[-1].forced is True
        assert updated.has_anomaly is True

    @pytest.mark.asyncio
    async def test_lenient_mode_accepts_and_flags(self, store, clock):
        config = ExchangeConfig(session_secret="x" * 64, strict_transitions=False)
        engine = OrderLifecycleEngine(config, store, clock=clock)
        order = await engine.create_order(make_input())

        updated = await engine.set_status(order.id, "paid", onchain_reference=TX_HASH)

        assert updated.status == OrderStatus.PAID
        assert updated.status_history[-1].anomaly is True
        assert updated.status_history[-1].forced is False

    @pytest.mark.asyncio
    async def test_unknown_status_rejected(self, engine):
        order = await engine.create_order(make_input())
        with pytest.raises(ValidationError) as exc_info:
            await engine.set_status(order.id, "teleported")
        assert exc_info.value.error == "InvalidStatus"

    @pytest.mark.asyncio
    async def test_unknown_order_not_found(self, engine):
        with pytest.raises(NotFoundError):
            await engine.set_status(404, "sent")

    @pytest.mark.asyncio
    async def test_updated_at_moves_with_transition(self, engine, clock):
        order = await engine.create_order(make_input())
        clock.advance(minutes=5)
        updated = await engine.set_status(order.id, "sent")
        assert updated.updated_at == clock.now
        assert updated.created_at == order.created_at


# =============================================================================
# Reads
# =============================================================================

class TestListForIdentity:

    @pytest.mark.asyncio
    async def test_status_filter_applies_to_identity_listing(self, engine):
        first = await engine.create_order(make_input())
        second = await engine.create_order(make_input())
        await engine.create_order(make_input(identity="0xother"))
        await engine.set_status(first.id, "rejected")

        rejected = await engine.list_for_identity("0xnullifier", status="rejected")
        everything = await engine.list_for_identity("0xnullifier")

        assert [o.id for o in rejected] == [first.id]
        assert [o.id for o in everything] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_unknown_status_filter_rejected(self, engine):
        await engine.create_order(make_input())
        with pytest.raises(ValidationError) as exc_info:
            await engine.list_for_identity("0xnullifier", status="lost")
        assert exc_info.value.error == "InvalidStatus"


# =============================================================================
# Paid Reference Rule
# =============================================================================

class TestPaidReference:

    async def _received(self, engine):
        order = await engine.create_order(make_input())
        await engine.set_status(order.id, "asset_received")
        return order

    @pytest.mark.asyncio
    async def test_paid_without_reference_refused(self, engine):
        order = await self._received(engine)

        with pytest.raises(ValidationError) as exc_info:
            await engine.set_status(order.id, "paid")

        assert exc_info.value.error == "MissingOnchainReference"
        assert (await engine.get_order(order.id)).status == OrderStatus.ASSET_RECEIVED

    @pytest.mark.asyncio
    async def test_paid_with_reference(self, engine):
        order = await self._received(engine)
        updated = await engine.set_status(order.id, "paid", onchain_reference=TX_HASH)
        assert updated.onchain_reference == TX_HASH

    @pytest.mark.asyncio
    async def test_simulation_mode_synthesizes_reference(self, store, clock):
        config = ExchangeConfig(session_secret="x" * 64, simulation_mode=True)
        engine = OrderLifecycleEngine(config, store, clock=clock)
        order = await self._received(engine)

        updated = await engine.set_status(order.id, "paid")

        assert updated.onchain_reference.startswith(SIMULATED_REFERENCE_PREFIX)


# =============================================================================
# Transfer Confirmation
# =============================================================================

class TestConfirmTransfer:

    def _engine(self, config, store, clock, transfer):
        chain = FakeChain(transfer)
        return OrderLifecycleEngine(config, store, chain_client=chain, clock=clock), chain

    @pytest.mark.asyncio
    async def test_matching_transfer_moves_to_asset_received(self, config, store, clock):
        transfer = TransferInfo(
            tx_hash=TX_HASH,
            status=TransferStatus.CONFIRMED,
            to_address=PAYOUT_WALLET,
            value_wei=10 * 10 ** 18,
        )
        engine, chain = self._engine(config, store, clock, transfer)
        order = await engine.create_order(make_input(onchain_reference=TX_HASH))

        check = await engine.confirm_transfer(order.id)

        assert check.matched is True
        assert check.order.status == OrderStatus.ASSET_RECEIVED
        assert check.order.onchain_reference == TX_HASH
        assert chain.calls == [TX_HASH]

    @pytest.mark.asyncio
    async def test_short_transfer_not_matched(self, config, store, clock):
        transfer = TransferInfo(
            tx_hash=TX_HASH,
            status=TransferStatus.CONFIRMED,
            to_address=PAYOUT_WALLET,
            value_wei=9 * 10 ** 18,
        )
        engine, _ = self._engine(config, store, clock, transfer)
        order = await engine.create_order(make_input())

        check = await engine.confirm_transfer(order.id, tx_hash=TX_HASH)

        assert check.matched is False
        assert check.reason == "insufficient-amount"
        assert (await engine.get_order(order.id)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_wrong_recipient_not_matched(self, config, store, clock):
        transfer = TransferInfo(
            tx_hash=TX_HASH,
            status=TransferStatus.CONFIRMED,
            to_address="0x" + "c" * 40,
            value_wei=10 * 10 ** 18,
        )
        engine, _ = self._engine(config, store, clock, transfer)
        order = await engine.create_order(make_input())

        check = await engine.confirm_transfer(order.id, tx_hash=TX_HASH)

        assert check.reason == "wrong-recipient"

    @pytest.mark.asyncio
    async def test_payout_wallet_passed_as_recipient(self, config, store, clock):
        transfer = TransferInfo(
            tx_hash=TX_HASH,
            status=TransferStatus.CONFIRMED,
            to_address=PAYOUT_WALLET,
            value_wei=10 * 10 ** 18,
        )
        engine, chain = self._engine(config, store, clock, transfer)
        order = await engine.create_order(make_input())

        await engine.confirm_transfer(order.id, tx_hash=TX_HASH)

        assert chain.recipients == [PAYOUT_WALLET]

    @pytest.mark.asyncio
    async def test_same_transaction_confirms_only_one_order(self, config, store, clock):
        transfer = TransferInfo(
            tx_hash=TX_HASH,
            status=TransferStatus.CONFIRMED,
            to_address=PAYOUT_WALLET,
            value_wei=10 * 10 ** 18,
        )
        engine, _ = self._engine(config, store, clock, transfer)
        first = await engine.create_order(make_input(onchain_reference=TX_HASH))
        second = await engine.create_order(make_input(onchain_reference=TX_HASH))

        assert (await engine.confirm_transfer(first.id)).matched is True
        check = await engine.confirm_transfer(second.id)

        assert check.matched is False
        assert check.reason == "already-used"
        assert (await engine.get_order(second.id)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_used_transaction_cannot_be_cited_by_explicit_hash(self, config, store, clock):
        transfer = TransferInfo(
            tx_hash=TX_HASH,
            status=TransferStatus.CONFIRMED,
            to_address=PAYOUT_WALLET,
            value_wei=10 * 10 ** 18,
        )
        engine, _ = self._engine(config, store, clock, transfer)
        first = await engine.create_order(make_input())
        second = await engine.create_order(make_input())

        await engine.confirm_transfer(first.id, tx_hash=TX_HASH)
        check = await engine.confirm_transfer(second.id, tx_hash=TX_HASH)

        assert check.reason == "already-used"

    @pytest.mark.asyncio
    async def test_reconfirming_same_order_is_matched(self, config, store, clock):
        transfer = TransferInfo(
            tx_hash=TX_HASH,
            status=TransferStatus.CONFIRMED,
            to_address=PAYOUT_WALLET,
            value_wei=10 * 10 ** 18,
        )
        engine, _ = self._engine(config, store, clock, transfer)
        order = await engine.create_order(make_input(onchain_reference=TX_HASH))

        await engine.confirm_transfer(order.id)
        check = await engine.confirm_transfer(order.id)

        assert check.matched is True
        assert check.order.status == OrderStatus.ASSET_RECEIVED

    @pytest.mark.asyncio
    async def test_linked_wallet_must_be_sender(self, config, store, clock):
        linked = "0x" + "d" * 40
        transfer = TransferInfo(
            tx_hash=TX_HASH,
            status=TransferStatus.CONFIRMED,
            from_address="0x" + "e" * 40,
            to_address=PAYOUT_WALLET,
            value_wei=10 * 10 ** 18,
        )
        identities = InMemoryIdentityStore()
        await identities.link_wallet("0xnullifier", linked)
        chain = FakeChain(transfer)
        engine = OrderLifecycleEngine(
            config, store, identity_store=identities, chain_client=chain, clock=clock
        )
        order = await engine.create_order(make_input())

        check = await engine.confirm_transfer(order.id, tx_hash=TX_HASH)
        assert check.matched is False
        assert check.reason == "wrong-sender"

        chain.transfer = TransferInfo(
            tx_hash=TX_HASH,
            status=TransferStatus.CONFIRMED,
            from_address=linked.upper().replace("0X", "0x"),
            to_address=PAYOUT_WALLET,
            value_wei=10 * 10 ** 18,
        )
        check = await engine.confirm_transfer(order.id, tx_hash=TX_HASH)
        assert check.matched is True

    @pytest.mark.asyncio
    async def test_pending_receipt_reported(self, config, store, clock):
        transfer = TransferInfo(tx_hash=TX_HASH, status=TransferStatus.PENDING)
        engine, _ = self._engine(config, store, clock, transfer)
        order = await engine.create_order(make_input())

        check = await engine.confirm_transfer(order.id, tx_hash=TX_HASH)

        assert check.matched is False
        assert check.reason == "pending"

    @pytest.mark.asyncio
    async def test_no_reference_refused(self, config, store, clock):
        engine, _ = self._engine(config, store, clock, None)
        order = await engine.create_order(make_input())
        with pytest.raises(ValidationError) as exc_info:
            await engine.confirm_transfer(order.id)
        assert exc_info.value.error == "MissingOnchainReference"

    @pytest.mark.asyncio
    async def test_without_chain_client_is_internal_error(self, engine):
        order = await engine.create_order(make_input())
        with pytest.raises(InternalError):
            await engine.confirm_transfer(order.id, tx_hash=TX_HASH)


class TestProfitMargin:

    @pytest.mark.parametrize("target,margin,expected", [
        (Decimal("20426.75"), Decimal("0.25"), Decimal("6808.92")),
        (Decimal("1000"), Decimal("0"), Decimal("0.00")),
        (Decimal("900"), Decimal("0.1"), Decimal("100.00")),
    ])
    def test_margin_formula(self, target, margin, expected):
        assert compute_profit_margin(target, margin) == expected
