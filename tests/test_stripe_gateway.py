"""Tests for the Stripe Connect gateway adapter (stripe SDK calls faked)."""

from types import SimpleNamespace

import pytest
import stripe

from commission_engine.gateways.base import TransferFailureKind, VerificationOutcome
from commission_engine.gateways.stripe_connect import StripeConnectGateway
from commission_engine.models.settlement import (
    Affiliate,
    AffiliateSettlement,
    SplitMethod,
    StripeConnectStatus,
)

from conftest import T0


class FakeStripe:
    """Stands in for the stripe module's resource classes."""

    def __init__(self, intent_status="succeeded", charges=None, transfer_error=None):
        self.calls = []
        self.intent_status = intent_status
        self.charges = charges or []
        self.transfer_error = transfer_error
        self.PaymentIntent = SimpleNamespace(retrieve=self._retrieve)
        self.Charge = SimpleNamespace(list=self._list_charges)
        self.Transfer = SimpleNamespace(create=self._create_transfer)

    def _retrieve(self, payment_intent_id, api_key=None):
        self.calls.append(("retrieve", payment_intent_id, api_key))
        if isinstance(self.intent_status, Exception):
            raise self.intent_status
        return SimpleNamespace(id=payment_intent_id, status=self.intent_status)

    def _list_charges(self, payment_intent=None, api_key=None):
        self.calls.append(("charges", payment_intent, api_key))
        if isinstance(self.charges, Exception):
            raise self.charges
        return SimpleNamespace(data=self.charges)

    def _create_transfer(self, **kwargs):
        self.calls.append(("transfer", kwargs))
        if self.transfer_error:
            raise self.transfer_error
        return SimpleNamespace(id="tr_123")


def make_gateway(fake):
    gateway = StripeConnectGateway(currency="brl")
    gateway.stripe = fake
    return gateway


@pytest.fixture
def settlement():
    return AffiliateSettlement(
        id="set-1",
        affiliate_id="aff-1",
        originating_payment_id="pay-1",
        sale_amount=10000,
        commission_amount=3000,
        split_method=SplitMethod.STRIPE_CONNECT,
        stripe_payment_intent_id="pi_1",
        payout_attempts=1,
        created_at=T0,
    )


@pytest.fixture
def affiliate():
    return Affiliate(
        id="aff-1",
        status="active",
        stripe_connect_account_id="acct_1",
        stripe_connect_status=StripeConnectStatus.CONNECTED,
    )


class TestVerifyNotRefunded:
    async def test_succeeded_without_refunds_is_valid(self):
        fake = FakeStripe(charges=[SimpleNamespace(id="ch_1", refunded=False, amount_refunded=0)])

        result = await make_gateway(fake).verify_not_refunded("pi_1", "sk_test")

        assert result.outcome == VerificationOutcome.VALID
        assert fake.calls[0] == ("retrieve", "pi_1", "sk_test")
        assert fake.calls[1] == ("charges", "pi_1", "sk_test")

    async def test_canceled_intent_is_refunded(self):
        result = await make_gateway(FakeStripe(intent_status="canceled")).verify_not_refunded("pi_1", "sk_test")

        assert result.outcome == VerificationOutcome.REFUNDED

    async def test_partial_refund_is_refunded(self):
        fake = FakeStripe(charges=[SimpleNamespace(id="ch_1", refunded=False, amount_refunded=100)])

        result = await make_gateway(fake).verify_not_refunded("pi_1", "sk_test")

        assert result.outcome == VerificationOutcome.REFUNDED

    async def test_unsucceeded_intent_fails_verification(self):
        result = await make_gateway(FakeStripe(intent_status="processing")).verify_not_refunded("pi_1", "sk_test")

        assert result.outcome == VerificationOutcome.VERIFICATION_FAILED

    async def test_stripe_error_fails_verification(self):
        fake = FakeStripe(intent_status=stripe.APIConnectionError("network down"))

        result = await make_gateway(fake).verify_not_refunded("pi_1", "sk_test")

        assert result.outcome == VerificationOutcome.VERIFICATION_FAILED

    async def test_charge_listing_error_fails_verification(self):
        fake = FakeStripe(charges=stripe.APIConnectionError("network down"))

        result = await make_gateway(fake).verify_not_refunded("pi_1", "sk_test")

        assert result.outcome == VerificationOutcome.VERIFICATION_FAILED


class TestTransfer:
    async def test_transfer_uses_idempotency_key(self, settlement, affiliate):
        fake = FakeStripe()

        result = await make_gateway(fake).transfer(settlement, affiliate, "sk_test")

        assert result.success
        assert result.transfer_id == "tr_123"
        _, kwargs = fake.calls[0]
        assert kwargs["amount"] == 3000
        assert kwargs["currency"] == "brl"
        assert kwargs["destination"] == "acct_1"
        assert kwargs["idempotency_key"] == "set-1-1"
        assert kwargs["api_key"] == "sk_test"
        assert kwargs["metadata"] == {
            "settlement_id": "set-1",
            "affiliate_id": "aff-1",
            "originating_payment_id": "pay-1",
        }

    async def test_unconnected_account_is_missing_account(self, settlement):
        fake = FakeStripe()
        affiliate = Affiliate(
            id="aff-1",
            status="active",
            stripe_connect_account_id="acct_1",
            stripe_connect_status=StripeConnectStatus.PENDING,
        )

        result = await make_gateway(fake).transfer(settlement, affiliate, "sk_test")

        assert result.failure_kind == TransferFailureKind.MISSING_ACCOUNT
        assert result.retryable is False
        assert fake.calls == []

    @pytest.mark.parametrize("error,kind,retryable", [
        (stripe.PermissionError("not allowed"), TransferFailureKind.PERMISSION, True),
        (stripe.AuthenticationError("bad key"), TransferFailureKind.PERMISSION, True),
        (
            stripe.InvalidRequestError("Account lacks capabilities", "destination", code="insufficient_capabilities_for_transfer"),
            TransferFailureKind.UNAVAILABLE,
            True,
        ),
        (
            stripe.InvalidRequestError("Insufficient funds", "amount", code="balance_insufficient"),
            TransferFailureKind.VALIDATION,
            True,
        ),
        (stripe.APIConnectionError("network down"), TransferFailureKind.NETWORK, True),
    ])
    async def test_failure_classification(self, settlement, affiliate, error, kind, retryable):
        result = await make_gateway(FakeStripe(transfer_error=error)).transfer(settlement, affiliate, "sk_test")

        assert not result.success
        assert result.failure_kind == kind
        assert result.retryable is retryable

    async def test_validation_message_includes_code_and_param(self, settlement, affiliate):
        error = stripe.InvalidRequestError("Insufficient funds", "amount", code="balance_insufficient")

        result = await make_gateway(FakeStripe(transfer_error=error)).transfer(settlement, affiliate, "sk_test")

        assert "code: balance_insufficient" in result.message
        assert "param: amount" in result.message
