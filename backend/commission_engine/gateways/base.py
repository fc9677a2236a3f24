"""Base protocol and result types for payout gateways.

Each payment processor has one adapter implementing PayoutGateway. The
settlement pipeline uses adapters without knowing processor details, and
adapters never raise: every error becomes a result value.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from commission_engine.models.settlement import Affiliate, AffiliateSettlement


class VerificationOutcome(str, Enum):
    VALID = "valid"
    REFUNDED = "refunded"
    VERIFICATION_FAILED = "verification_failed"


@dataclass(frozen=True)
class VerificationResult:
    """Answer to "is the originating payment still good?"."""

    outcome: VerificationOutcome
    reason: str = ""

    @classmethod
    def valid(cls, reason: str = "") -> "VerificationResult":
        return cls(VerificationOutcome.VALID, reason)

    @classmethod
    def refunded(cls, reason: str) -> "VerificationResult":
        return cls(VerificationOutcome.REFUNDED, reason)

    @classmethod
    def failed(cls, reason: str) -> "VerificationResult":
        return cls(VerificationOutcome.VERIFICATION_FAILED, reason)

    @property
    def is_valid(self) -> bool:
        return self.outcome == VerificationOutcome.VALID

    @property
    def is_refunded(self) -> bool:
        return self.outcome == VerificationOutcome.REFUNDED


class TransferFailureKind(str, Enum):
    MISSING_ACCOUNT = "missing_account"
    PERMISSION = "permission"
    UNAVAILABLE = "unavailable"
    VALIDATION = "validation"
    NETWORK = "network"


@dataclass(frozen=True)
class TransferResult:
    """Result of a transfer attempt."""

    success: bool
    transfer_id: Optional[str] = None
    failure_kind: Optional[TransferFailureKind] = None
    message: str = ""
    retryable: bool = True

    @classmethod
    def ok(cls, transfer_id: str) -> "TransferResult":
        return cls(success=True, transfer_id=transfer_id)

    @classmethod
    def failure(
        cls,
        kind: TransferFailureKind,
        message: str,
        retryable: bool = True,
    ) -> "TransferResult":
        return cls(success=False, failure_kind=kind, message=message, retryable=retryable)


# User-facing messages, one per failure kind
MANUAL_PAYOUT_REQUIRED = "Manual payout required."
RETRY_SCHEDULED = "The payout will be retried automatically."


def idempotency_key(settlement: AffiliateSettlement) -> str:
    """Same attempt count → same key; a new attempt after a failure gets a fresh key."""
    return f"{settlement.id}-{settlement.payout_attempts}"


class PayoutGateway(Protocol):
    """Protocol for payment processor adapters."""

    gateway_name: str

    async def verify_not_refunded(self, payment_ref: str, credentials: str) -> VerificationResult:
        """Check the originating payment has not been refunded or charged back.

        Args:
            payment_ref: Gateway payment identifier of the originating sale
            credentials: Gateway secret (access token / secret key)

        Returns:
            VerificationResult; transport and API errors map to
            VERIFICATION_FAILED, never to REFUNDED.
        """
        ...

    async def transfer(
        self,
        settlement: AffiliateSettlement,
        affiliate: Affiliate,
        credentials: str,
    ) -> TransferResult:
        """Move settlement.commission_amount to the affiliate's connected account.

        Sends idempotency_key(settlement) so a resend with the same attempt
        count cannot create a second transfer.
        """
        ...
