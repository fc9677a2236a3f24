"""Tests for commission attribution.

Tests verify:
1. Commission math and split method choice
2. Idempotency per originating payment (including a concurrent insert)
3. Hold period floor on the stored deadline
4. Skips for unknown links and inactive affiliates
5. Notification failures never undo the settlement
6. A failed balance credit leaves nothing behind, so the retry credits once
"""

from datetime import timedelta

import pytest

from commission_engine.models.settlement import (
    AffiliateConfig,
    AffiliateSettlement,
    AffiliateStatus,
    ApprovedPayment,
    SettlementStatus,
    SplitMethod,
    StripeConnectStatus,
)
from commission_engine.services.attribution import (
    AttributionStatus,
    CommissionAttributionService,
    compute_commission,
)
from commission_engine.services.notifications import AffiliateNotifier
from commission_engine.services.storage import StorageError

from conftest import T0, RecordingSender


def payment(code="ana123", amount=10000, payment_id="pay-1", **kwargs):
    return ApprovedPayment(
        originating_payment_id=payment_id,
        affiliate_link_code=code,
        sale_amount=amount,
        **kwargs,
    )


class TestCommissionMath:
    @pytest.mark.parametrize("sale,percent,expected", [
        (10000, 30, 3000),
        (999, 30, 299),       # floor
        (10000, 0, 0),
        (10000, 100, 10000),
        (10000, 150, 10000),  # clamped
        (10000, -5, 0),
    ])
    def test_commission_bounded_by_sale(self, sale, percent, expected):
        commission = compute_commission(sale, percent)
        assert commission == expected
        assert 0 <= commission <= sale


class TestAttributeSale:
    async def test_creates_automated_settlement(self, attribution, store, sender):
        """Affiliate with MP account and auto-pay on gets mp_marketplace."""
        affiliate = store.add_affiliate(mp_user_id="mp-user-1")
        link = store.add_link(affiliate)

        result = await attribution.attribute_sale(payment(mp_payment_id="mp-pay-1"))

        assert result.status == AttributionStatus.CREATED
        settlement = result.settlement
        assert settlement.commission_amount == 3000
        assert settlement.commission_percent == 30
        assert settlement.split_method == SplitMethod.MP_MARKETPLACE
        assert settlement.status == SettlementStatus.PENDING_PAYOUT
        assert settlement.payout_scheduled_at == T0 + timedelta(days=7)
        assert settlement.mp_payment_id == "mp-pay-1"

        refreshed = store.affiliates[affiliate.id]
        assert refreshed.pending_amount == 3000
        assert refreshed.total_earnings == 3000
        assert store.links[link.id].conversions == 1

        assert len(sender.events) == 1
        assert sender.events[0]["name"] == "affiliate/sale.attributed"
        assert sender.events[0]["data"]["commission_amount"] == 3000

    async def test_stripe_split_when_connect_connected(self, attribution, store):
        affiliate = store.add_affiliate(
            stripe_connect_account_id="acct_1",
            stripe_connect_status=StripeConnectStatus.CONNECTED,
        )
        store.add_link(affiliate)

        result = await attribution.attribute_sale(payment(stripe_payment_intent_id="pi_1"))

        assert result.settlement.split_method == SplitMethod.STRIPE_CONNECT
        assert result.settlement.status == SettlementStatus.PENDING_PAYOUT

    async def test_manual_split_when_connect_pending(self, attribution, store):
        affiliate = store.add_affiliate(
            stripe_connect_account_id="acct_1",
            stripe_connect_status=StripeConnectStatus.PENDING,
        )
        store.add_link(affiliate)

        result = await attribution.attribute_sale(payment())

        assert result.settlement.split_method == SplitMethod.MANUAL
        assert result.settlement.status == SettlementStatus.PENDING

    async def test_manual_split_when_auto_pay_disabled(self, attribution, store):
        store.config = AffiliateConfig(auto_pay_enabled=False)
        affiliate = store.add_affiliate(mp_user_id="mp-user-1")
        store.add_link(affiliate)

        result = await attribution.attribute_sale(payment())

        assert result.settlement.split_method == SplitMethod.MANUAL

    async def test_affiliate_override_percent(self, attribution, store):
        affiliate = store.add_affiliate(commission_percent=50)
        store.add_link(affiliate)

        result = await attribution.attribute_sale(payment(amount=999))

        assert result.settlement.commission_amount == 499
        assert result.settlement.commission_percent == 50

    async def test_zero_percent_override_is_respected(self, attribution, store):
        """0 is a valid override, not a fallback to the default."""
        affiliate = store.add_affiliate(commission_percent=0)
        store.add_link(affiliate)

        result = await attribution.attribute_sale(payment())

        assert result.status == AttributionStatus.CREATED
        assert result.settlement.commission_amount == 0

    async def test_short_configured_hold_is_floored(self, attribution, store):
        store.config = AffiliateConfig(hold_days=2)
        affiliate = store.add_affiliate()
        store.add_link(affiliate)

        result = await attribution.attribute_sale(payment())

        assert result.settlement.payout_scheduled_at == T0 + timedelta(days=7)

    async def test_replayed_webhook_is_idempotent(self, attribution, store, sender):
        affiliate = store.add_affiliate()
        link = store.add_link(affiliate)

        first = await attribution.attribute_sale(payment())
        second = await attribution.attribute_sale(payment())

        assert second.status == AttributionStatus.DUPLICATE
        assert second.settlement.id == first.settlement.id
        assert len(store.settlements) == 1
        assert store.affiliates[affiliate.id].pending_amount == 3000
        assert store.links[link.id].conversions == 1
        assert len(sender.events) == 1

    async def test_failed_credit_is_completed_by_the_retry(self, attribution, store, sender):
        """The credit runs in the insert transaction, so a step retry is not a duplicate."""
        affiliate = store.add_affiliate()
        link = store.add_link(affiliate)
        store.fail_credit_once = True

        with pytest.raises(StorageError):
            await attribution.attribute_sale(payment())
        assert store.settlements == {}

        retried = await attribution.attribute_sale(payment())
        replayed = await attribution.attribute_sale(payment())

        assert retried.status == AttributionStatus.CREATED
        assert replayed.status == AttributionStatus.DUPLICATE
        refreshed = store.affiliates[affiliate.id]
        assert refreshed.pending_amount == 3000
        assert refreshed.total_earnings == 3000
        assert len(store.balance_calls) == 1
        assert store.links[link.id].conversions == 1
        assert len(sender.events) == 1

    async def test_created_at_comes_from_the_same_clock_as_the_deadline(self, attribution, store, clock):
        clock.advance(seconds=0.04)
        affiliate = store.add_affiliate()
        store.add_link(affiliate)

        result = await attribution.attribute_sale(payment())

        settlement = store.settlements[result.settlement.id]
        assert settlement.created_at == clock()
        assert settlement.payout_scheduled_at == settlement.created_at + timedelta(days=7)

    async def test_concurrent_insert_returns_existing_row(self, attribution, store):
        """Unique violation on insert resolves to the row the other writer created."""
        affiliate = store.add_affiliate()
        store.add_link(affiliate)
        winner = AffiliateSettlement(
            id="winner",
            affiliate_id=affiliate.id,
            originating_payment_id="pay-1",
            sale_amount=10000,
            commission_amount=3000,
            status=SettlementStatus.PENDING,
            created_at=T0,
        )
        store.race_on_create = winner

        result = await attribution.attribute_sale(payment())

        assert result.status == AttributionStatus.DUPLICATE
        assert result.settlement.id == "winner"
        assert store.balance_calls == []

    async def test_unknown_link_is_skipped(self, attribution, store):
        result = await attribution.attribute_sale(payment(code="nope"))

        assert result.status == AttributionStatus.SKIPPED
        assert store.settlements == {}

    @pytest.mark.parametrize("status", [
        AffiliateStatus.PENDING, AffiliateStatus.INACTIVE, AffiliateStatus.SUSPENDED,
    ])
    async def test_inactive_affiliate_is_skipped(self, attribution, store, status):
        affiliate = store.add_affiliate(status=status)
        store.add_link(affiliate)

        result = await attribution.attribute_sale(payment())

        assert result.status == AttributionStatus.SKIPPED
        assert store.settlements == {}
        assert store.balance_calls == []

    async def test_notification_failure_keeps_settlement(self, store, clock):
        service = CommissionAttributionService(
            store, notifier=AffiliateNotifier(RecordingSender(fail=True)), clock=clock
        )
        affiliate = store.add_affiliate()
        store.add_link(affiliate)

        result = await service.attribute_sale(payment())

        assert result.status == AttributionStatus.CREATED
        assert len(store.settlements) == 1
        assert store.affiliates[affiliate.id].pending_amount == 3000
