"""
Stripe Connect Gateway

Refund verification of PaymentIntents and Connect transfers to affiliates'
connected accounts. The secret key is passed per call (api_key=...) since
credentials are read from storage on every run.
"""

import asyncio
import functools
import logging
from typing import Any, Callable

import stripe

from commission_engine.config import SETTLEMENT_CURRENCY
from commission_engine.gateways.base import (
    MANUAL_PAYOUT_REQUIRED,
    RETRY_SCHEDULED,
    TransferFailureKind,
    TransferResult,
    VerificationResult,
    idempotency_key,
)
from commission_engine.models.settlement import Affiliate, AffiliateSettlement

logger = logging.getLogger(__name__)

# InvalidRequestError codes meaning "this account cannot receive transfers at all"
UNAVAILABLE_ERROR_CODES = {
    "account_invalid",
    "transfers_not_allowed",
    "insufficient_capabilities_for_transfer",
}


async def _run_sync(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a blocking Stripe SDK call without stalling the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


class StripeConnectGateway:
    """Stripe adapter (PaymentIntent/Charge verification + Connect transfer)."""

    gateway_name = "stripe"

    def __init__(self, currency: str = SETTLEMENT_CURRENCY):
        self.currency = currency
        self.stripe = stripe

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    async def verify_not_refunded(self, payment_ref: str, credentials: str) -> VerificationResult:
        try:
            payment_intent = await _run_sync(
                self.stripe.PaymentIntent.retrieve, payment_ref, api_key=credentials
            )
        except stripe.StripeError as e:
            logger.error(f"Error fetching Stripe payment {payment_ref}: {e}")
            return VerificationResult.failed(f"Stripe PaymentIntent lookup failed: {e}")
        except Exception as e:
            logger.error(f"Error verifying Stripe payment {payment_ref}: {e}")
            return VerificationResult.failed(f"Stripe request failed: {e}")

        status = getattr(payment_intent, "status", None)
        if status == "canceled":
            logger.info(f"Stripe payment {payment_ref} was cancelled")
            return VerificationResult.refunded("Stripe PaymentIntent canceled")

        try:
            charges = await _run_sync(
                self.stripe.Charge.list, payment_intent=payment_ref, api_key=credentials
            )
        except Exception as e:
            logger.error(f"Error listing charges for Stripe payment {payment_ref}: {e}")
            return VerificationResult.failed(f"Stripe charge listing failed: {e}")

        for charge in getattr(charges, "data", None) or []:
            amount_refunded = getattr(charge, "amount_refunded", 0) or 0
            if getattr(charge, "refunded", False) or amount_refunded > 0:
                logger.info(f"Stripe payment {payment_ref} was refunded (charge {charge.id})")
                return VerificationResult.refunded(
                    f"Stripe charge {charge.id} refunded {amount_refunded}"
                )

        if status != "succeeded":
            return VerificationResult.failed(f"Stripe PaymentIntent not succeeded (status: {status})")

        return VerificationResult.valid()

    # =========================================================================
    # TRANSFER
    # =========================================================================

    async def transfer(
        self,
        settlement: AffiliateSettlement,
        affiliate: Affiliate,
        credentials: str,
    ) -> TransferResult:
        if not affiliate.has_stripe_connect:
            logger.error(f"Affiliate {affiliate.id} has no connected Stripe Connect account")
            return TransferResult.failure(
                TransferFailureKind.MISSING_ACCOUNT,
                f"Affiliate has no connected Stripe account. {MANUAL_PAYOUT_REQUIRED}",
                retryable=False,
            )

        try:
            transfer = await _run_sync(
                self.stripe.Transfer.create,
                amount=settlement.commission_amount,
                currency=self.currency,
                destination=affiliate.stripe_connect_account_id,
                metadata={
                    "settlement_id": settlement.id,
                    "affiliate_id": affiliate.id,
                    "originating_payment_id": settlement.originating_payment_id,
                },
                description="Affiliate commission payout",
                api_key=credentials,
                idempotency_key=idempotency_key(settlement),
            )
        except stripe.StripeError as e:
            result = self._classify_failure(e)
            logger.error(f"Stripe transfer failed for settlement {settlement.id}: {result.message}")
            return result
        except Exception as e:
            logger.error(f"Unexpected error creating Stripe transfer for settlement {settlement.id}: {e}")
            return TransferResult.failure(
                TransferFailureKind.NETWORK,
                f"Stripe transfer failed unexpectedly: {e}. {RETRY_SCHEDULED}",
            )

        logger.info(
            f"Created transfer {transfer.id} for affiliate {affiliate.id}, "
            f"amount={settlement.commission_amount} cents"
        )
        return TransferResult.ok(transfer.id)

    @staticmethod
    def _classify_failure(error: "stripe.StripeError") -> TransferResult:
        message = getattr(error, "user_message", None) or str(error)

        if isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
            return TransferResult.failure(
                TransferFailureKind.PERMISSION,
                f"Stripe refused the transfer (permission error: {message}). {MANUAL_PAYOUT_REQUIRED}",
            )

        if isinstance(error, stripe.InvalidRequestError):
            code = getattr(error, "code", None)
            if code in UNAVAILABLE_ERROR_CODES or "capabilit" in message.lower():
                return TransferResult.failure(
                    TransferFailureKind.UNAVAILABLE,
                    f"Stripe transfers are not available for this connected account ({message}). "
                    f"{MANUAL_PAYOUT_REQUIRED}",
                )
            details = ", ".join(
                f"{name}: {value}"
                for name, value in (("code", code), ("param", getattr(error, "param", None)))
                if value
            )
            detail = f"{message} [{details}]" if details else message
            return TransferResult.failure(
                TransferFailureKind.VALIDATION,
                f"Stripe rejected the transfer: {detail}. {RETRY_SCHEDULED}",
            )

        return TransferResult.failure(
            TransferFailureKind.NETWORK,
            f"Stripe network/system error: {message}. {RETRY_SCHEDULED}",
        )
