"""Settlement engine test fixtures: in-memory store, fake gateways, fixed clock."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

import pytest

from commission_engine.gateways import GatewayRegistry
from commission_engine.gateways.base import TransferResult, VerificationResult
from commission_engine.models.settlement import (
    Affiliate,
    AffiliateConfig,
    AffiliateLink,
    AffiliateSettlement,
    AffiliateStatus,
    AffiliateWithdrawal,
    NewSettlement,
    NewWithdrawal,
    SettlementStatus,
    SplitMethod,
    StripeConnectStatus,
    WithdrawalStatus,
)
from commission_engine.services.attribution import CommissionAttributionService
from commission_engine.services.notifications import AffiliateNotifier
from commission_engine.services.settlement_pipeline import SettlementPipeline
from commission_engine.services.storage import BalanceDelta, DuplicateSettlementError, StorageError
from commission_engine.services.withdrawal_service import WithdrawalService

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class InMemorySettlementStore:
    """SettlementStore fake with the same clamping as adjust_affiliate_balances().

    create_settlement() mirrors create_affiliate_settlement(): the insert, the
    pending credit and the conversion count either all happen or none does.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.affiliates: Dict[str, Affiliate] = {}
        self.links: Dict[str, AffiliateLink] = {}
        self.settlements: Dict[str, AffiliateSettlement] = {}
        self.withdrawals: Dict[str, AffiliateWithdrawal] = {}
        self.config: Optional[AffiliateConfig] = None
        self.secrets: Dict[str, str] = {
            "MERCADOPAGO_ACCESS_TOKEN": "mp-token",
            "STRIPE_SECRET_KEY": "sk_test_123",
        }
        self.balance_calls: List[BalanceDelta] = []
        self.settlement_updates: List[Dict[str, Any]] = []
        # Simulates a concurrent webhook winning the insert
        self.race_on_create: Optional[AffiliateSettlement] = None
        self.fail_listing = False
        # Simulates the balance credit failing inside the insert transaction
        self.fail_credit_once = False

    # Affiliates

    async def get_affiliate_by_id(self, affiliate_id):
        return self.affiliates.get(affiliate_id)

    async def update_affiliate(self, affiliate_id, fields):
        affiliate = self.affiliates.get(affiliate_id)
        if not affiliate:
            return None
        self.affiliates[affiliate_id] = affiliate.model_copy(update=fields)
        return self.affiliates[affiliate_id]

    async def adjust_affiliate_balances(self, affiliate_id, delta):
        self.balance_calls.append(delta)
        affiliate = self.affiliates.get(affiliate_id)
        if not affiliate:
            return
        self.affiliates[affiliate_id] = affiliate.model_copy(update={
            "pending_amount": max(0, affiliate.pending_amount + delta.pending),
            "available_amount": max(0, affiliate.available_amount + delta.available),
            "paid_amount": max(0, affiliate.paid_amount + delta.paid),
            "total_earnings": max(0, affiliate.total_earnings + delta.total_earnings),
        })

    # Links

    async def get_affiliate_link_by_code(self, code):
        return next((link for link in self.links.values() if link.code == code), None)

    async def list_affiliate_links(self, affiliate_id):
        return [link for link in self.links.values() if link.affiliate_id == affiliate_id]

    # Settlements

    async def get_settlement_by_id(self, settlement_id):
        return self.settlements.get(settlement_id)

    async def get_settlement_by_originating_payment_id(self, originating_payment_id):
        return next(
            (s for s in self.settlements.values() if s.originating_payment_id == originating_payment_id),
            None,
        )

    async def create_settlement(self, data: NewSettlement):
        if self.race_on_create is not None:
            self.settlements[self.race_on_create.id] = self.race_on_create
            self.race_on_create = None
        if await self.get_settlement_by_originating_payment_id(data.originating_payment_id):
            raise DuplicateSettlementError(data.originating_payment_id)
        if self.fail_credit_once:
            # Rolled back: no row, no credit, no conversion
            self.fail_credit_once = False
            raise StorageError("adjust_affiliate_balances failed: connection reset")

        settlement = AffiliateSettlement(id=str(uuid4()), **data.model_dump())
        self.settlements[settlement.id] = settlement
        await self.adjust_affiliate_balances(
            settlement.affiliate_id,
            BalanceDelta(pending=settlement.commission_amount, total_earnings=settlement.commission_amount),
        )
        if settlement.affiliate_link_id in self.links:
            link = self.links[settlement.affiliate_link_id]
            self.links[link.id] = link.model_copy(update={"conversions": link.conversions + 1})
        return settlement

    async def update_settlement(self, settlement_id, fields, expected_status=None):
        settlement = self.settlements.get(settlement_id)
        if not settlement:
            return None
        if expected_status is not None and settlement.status != expected_status:
            return None
        self.settlement_updates.append({"id": settlement_id, **fields})
        updated = settlement.model_copy(update={**fields, "updated_at": self.clock()})
        self.settlements[settlement_id] = updated
        return updated

    async def list_settlements_due_for_payout(self, now):
        if self.fail_listing:
            raise RuntimeError("database unavailable")
        return [
            s for s in self.settlements.values()
            if s.split_method.is_automated
            and s.status in (SettlementStatus.PENDING_PAYOUT, SettlementStatus.PENDING, SettlementStatus.APPROVED)
            and (s.payout_scheduled_at is None or s.payout_scheduled_at <= now)
        ]

    async def list_settlements_ready_for_availability(self, now):
        if self.fail_listing:
            raise RuntimeError("database unavailable")
        return [
            s for s in self.settlements.values()
            if s.split_method == SplitMethod.MANUAL
            and s.status == SettlementStatus.PENDING
            and (s.payout_scheduled_at is None or s.payout_scheduled_at <= now)
        ]

    async def list_settlements_by_affiliate(self, affiliate_id, start_date=None, end_date=None):
        return [
            s for s in self.settlements.values()
            if s.affiliate_id == affiliate_id
            and (start_date is None or s.created_at >= start_date)
            and (end_date is None or s.created_at <= end_date)
        ]

    # Withdrawals

    async def create_withdrawal(self, data: NewWithdrawal):
        withdrawal = AffiliateWithdrawal(id=str(uuid4()), created_at=self.clock(), **data.model_dump())
        self.withdrawals[withdrawal.id] = withdrawal
        return withdrawal

    async def get_withdrawal_by_id(self, withdrawal_id):
        return self.withdrawals.get(withdrawal_id)

    async def list_withdrawals(self):
        return sorted(self.withdrawals.values(), key=lambda w: w.requested_at, reverse=True)

    async def list_withdrawals_by_affiliate(self, affiliate_id):
        return [w for w in await self.list_withdrawals() if w.affiliate_id == affiliate_id]

    async def list_pending_withdrawals(self):
        return sorted(
            (w for w in self.withdrawals.values() if w.status == WithdrawalStatus.PENDING),
            key=lambda w: w.requested_at,
        )

    async def update_withdrawal(self, withdrawal_id, fields, expected_status=None):
        withdrawal = self.withdrawals.get(withdrawal_id)
        if not withdrawal:
            return None
        if expected_status is not None and withdrawal.status != expected_status:
            return None
        updated = withdrawal.model_copy(update={**fields, "updated_at": self.clock()})
        self.withdrawals[withdrawal_id] = updated
        return updated

    # Config & secrets

    async def get_affiliate_config(self):
        return self.config

    async def upsert_affiliate_config(self, fields):
        self.config = AffiliateConfig.model_validate(fields)
        return self.config

    async def get_secret(self, key):
        return self.secrets.get(key)

    # Helpers

    def add_affiliate(self, **overrides) -> Affiliate:
        data = {"id": str(uuid4()), "status": AffiliateStatus.ACTIVE, "name": "Ana", "email": "ana@example.com"}
        data.update(overrides)
        affiliate = Affiliate(**data)
        self.affiliates[affiliate.id] = affiliate
        return affiliate

    def add_link(self, affiliate: Affiliate, code: str = "ana123", **overrides) -> AffiliateLink:
        link = AffiliateLink(id=str(uuid4()), affiliate_id=affiliate.id, code=code, **overrides)
        self.links[link.id] = link
        return link

    def add_withdrawal(self, affiliate: Affiliate, **overrides) -> AffiliateWithdrawal:
        data = {
            "id": str(uuid4()),
            "affiliate_id": affiliate.id,
            "amount": 5000,
            "pix_key": "ana@example.com",
            "pix_key_type": "email",
            "status": WithdrawalStatus.PENDING,
            "requested_at": self.clock(),
        }
        data.update(overrides)
        withdrawal = AffiliateWithdrawal(**data)
        self.withdrawals[withdrawal.id] = withdrawal
        return withdrawal

    def add_settlement(self, affiliate: Affiliate, **overrides) -> AffiliateSettlement:
        data = {
            "id": str(uuid4()),
            "affiliate_id": affiliate.id,
            "originating_payment_id": f"pay-{uuid4().hex[:8]}",
            "sale_amount": 10000,
            "commission_amount": 3000,
            "commission_percent": 30,
            "status": SettlementStatus.PENDING_PAYOUT,
            "split_method": SplitMethod.MP_MARKETPLACE,
            "mp_payment_id": "mp-pay-1",
            "created_at": T0,
            "payout_scheduled_at": T0 + timedelta(days=7),
        }
        data.update(overrides)
        settlement = AffiliateSettlement(**data)
        self.settlements[settlement.id] = settlement
        return settlement


class FakeGateway:
    """PayoutGateway fake that records calls."""

    def __init__(self, name: str):
        self.gateway_name = name
        self.verification = VerificationResult.valid()
        self.transfer_results: List[TransferResult] = []
        self.verify_calls: List[Dict[str, str]] = []
        self.transfer_calls: List[Dict[str, Any]] = []

    async def verify_not_refunded(self, payment_ref, credentials):
        self.verify_calls.append({"payment_ref": payment_ref, "credentials": credentials})
        return self.verification

    async def transfer(self, settlement, affiliate, credentials):
        self.transfer_calls.append({
            "settlement_id": settlement.id,
            "idempotency_key": f"{settlement.id}-{settlement.payout_attempts}",
            "amount": settlement.commission_amount,
            "credentials": credentials,
        })
        if self.transfer_results:
            return self.transfer_results.pop(0)
        return TransferResult.ok(f"{self.gateway_name}-tr-{len(self.transfer_calls)}")


class RecordingSender:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events: List[Dict[str, Any]] = []

    async def __call__(self, name, data):
        if self.fail:
            raise RuntimeError("inngest unreachable")
        self.events.append({"name": name, "data": data})
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemorySettlementStore(clock)


@pytest.fixture
def mp_gateway():
    return FakeGateway("mercadopago")


@pytest.fixture
def stripe_gateway():
    return FakeGateway("stripe")


@pytest.fixture
def gateways(mp_gateway, stripe_gateway):
    return GatewayRegistry(mercadopago=mp_gateway, stripe_connect=stripe_gateway)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def pipeline(store, gateways, clock, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return SettlementPipeline(store, gateways, clock=clock, sleep=fake_sleep)


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def attribution(store, sender, clock):
    return CommissionAttributionService(store, notifier=AffiliateNotifier(sender), clock=clock)


@pytest.fixture
def active_affiliate(store):
    return store.add_affiliate(
        mp_user_id="mp-user-1",
        pending_amount=3000,
        total_earnings=3000,
    )


@pytest.fixture
def stripe_affiliate(store):
    return store.add_affiliate(
        stripe_connect_account_id="acct_123",
        stripe_connect_status=StripeConnectStatus.CONNECTED,
        pending_amount=3000,
        total_earnings=3000,
    )


@pytest.fixture
def withdrawal_service(store, sender, clock):
    return WithdrawalService(store, notifier=AffiliateNotifier(sender), clock=clock)


@pytest.fixture
def manual_affiliate(store):
    """Manual-split affiliate with released commissions and a PIX key on file."""
    return store.add_affiliate(
        pix_key="ana@example.com",
        pix_key_type="email",
        available_amount=12000,
        total_earnings=12000,
    )
