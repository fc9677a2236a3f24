"""
Payout gateway adapters.

- mercadopago: Mercado Pago marketplace (split method mp_marketplace)
- stripe_connect: Stripe Connect (split method stripe_connect)
"""

from typing import Dict, Optional, Tuple

from commission_engine.config import MERCADOPAGO_ACCESS_TOKEN_KEY, STRIPE_SECRET_KEY_KEY
from commission_engine.models.settlement import AffiliateSettlement, SplitMethod

from .base import (
    PayoutGateway,
    TransferFailureKind,
    TransferResult,
    VerificationOutcome,
    VerificationResult,
    idempotency_key,
)
from .mercadopago import MercadoPagoGateway
from .stripe_connect import StripeConnectGateway


class GatewayRegistry:
    """Looks up the adapter (and its credential key) for a settlement."""

    def __init__(
        self,
        mercadopago: Optional[PayoutGateway] = None,
        stripe_connect: Optional[PayoutGateway] = None,
    ):
        self.mercadopago = mercadopago or MercadoPagoGateway()
        self.stripe_connect = stripe_connect or StripeConnectGateway()
        self._by_split: Dict[SplitMethod, Tuple[PayoutGateway, str]] = {
            SplitMethod.MP_MARKETPLACE: (self.mercadopago, MERCADOPAGO_ACCESS_TOKEN_KEY),
            SplitMethod.STRIPE_CONNECT: (self.stripe_connect, STRIPE_SECRET_KEY_KEY),
        }

    def for_split_method(self, split_method: SplitMethod) -> Optional[Tuple[PayoutGateway, str]]:
        """Transfer gateway and secret key for an automated split method."""
        return self._by_split.get(split_method)

    def for_verification(self, settlement: AffiliateSettlement) -> Optional[Tuple[PayoutGateway, str, str]]:
        """Gateway, secret key and payment ref for the originating payment.

        Mercado Pago references win when both are present. Returns None when
        the settlement carries no gateway reference at all.
        """
        if settlement.mp_payment_id:
            return self.mercadopago, MERCADOPAGO_ACCESS_TOKEN_KEY, settlement.mp_payment_id
        if settlement.stripe_payment_intent_id:
            return self.stripe_connect, STRIPE_SECRET_KEY_KEY, settlement.stripe_payment_intent_id
        return None


__all__ = [
    "GatewayRegistry",
    "MercadoPagoGateway",
    "PayoutGateway",
    "StripeConnectGateway",
    "TransferFailureKind",
    "TransferResult",
    "VerificationOutcome",
    "VerificationResult",
    "idempotency_key",
]
